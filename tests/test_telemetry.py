"""Tests for report decoding and snapshot reconciliation."""

from __future__ import annotations

import pytest

from printbridge.models import TelemetrySnapshot, classifyModel
from printbridge.telemetry import (
    decodeExternalSpools,
    decodeFilament,
    decodeNozzles,
    decodePackedTemperature,
    encodePackedTemperature,
    mergeReport,
    mergeReports,
)


def printingSnapshot(**overrides):
    values = dict(
        online=True,
        gcodeState="RUNNING",
        printProgress=42,
        remainingTime=37,
        nozzleTemp=218,
        nozzleTargetTemp=220,
        nozzleTemp2=205,
        nozzleTargetTemp2=210,
        bedTemp=58,
        bedTargetTemp=60,
        chamberTemp=35,
        chamberTargetTemp=40,
        hms=({"attr": 1, "code": 2},),
    )
    values.update(overrides)
    return TelemetrySnapshot(**values)


class TestPackedTemperature:
    def test_splits_low_and_high_half(self):
        assert decodePackedTemperature(0x00E10096) == (150, 225)
        assert decodePackedTemperature(0x00C80087) == (135, 200)

    @pytest.mark.parametrize("value", [0, None, "garbage"])
    def test_zero_or_missing_decodes_to_zero(self, value):
        assert decodePackedTemperature(value) == (0, 0)

    @pytest.mark.parametrize("current,target", [(0, 1), (65535, 65535), (23, 0), (1234, 4321)])
    def test_encode_inverts_decode(self, current, target):
        assert decodePackedTemperature(encodePackedTemperature(current, target)) == (current, target)


class TestNozzleDecoding:
    def test_dual_nozzle_extruder_array(self):
        report = {
            "print": {
                "nozzle_temper": 999,
                "nozzle_target_temper": 999,
                "device": {"extruder": {"info": [{"temp": 0x00E10096}, {"temp": 0x00C80087}]}},
            }
        }

        snapshot = mergeReport(None, report, "H2D")

        assert snapshot.nozzleTemp == 150
        assert snapshot.nozzleTargetTemp == 225
        assert snapshot.nozzleTemp2 == 135
        assert snapshot.nozzleTargetTemp2 == 200

    def test_dual_nozzle_ignores_legacy_fields(self):
        reading = decodeNozzles({"nozzle_temper": 210, "nozzle_target_temper": 215}, classifyModel("H2D"))

        assert reading.nozzleTemp is None
        assert reading.nozzleTargetTemp is None

    def test_single_nozzle_uses_legacy_fields(self):
        snapshot = mergeReport(None, {"print": {"nozzle_temper": 210.5, "nozzle_target_temper": 215}}, "P1S")

        assert snapshot.nozzleTemp == 210.5
        assert snapshot.nozzleTargetTemp == 215
        assert snapshot.nozzleTemp2 is None

    def test_older_dual_nozzle_array_path(self):
        report = {"extruder": {"info": [{"temp": encodePackedTemperature(100, 200)}, {"temp": encodePackedTemperature(90, 180)}]}}

        reading = decodeNozzles(report, classifyModel("H2D"))

        assert (reading.nozzleTemp, reading.nozzleTargetTemp) == (100, 200)
        assert (reading.nozzleTemp2, reading.nozzleTargetTemp2) == (90, 180)

    def test_absent_array_keeps_previous_nozzles(self):
        previous = mergeReport(
            None,
            {"print": {"device": {"extruder": {"info": [{"temp": 0x00E10096}, {"temp": 0x00C80087}]}}}},
            "H2D",
        )

        snapshot = mergeReport(previous, {"print": {"mc_percent": 3}}, "H2D")

        assert snapshot.nozzleTemp == 150
        assert snapshot.nozzleTemp2 == 135


class TestChamber:
    def test_common_field_wins(self):
        report = {"print": {"chamber_temper": 31, "device": {"ctc": {"info": {"temp": encodePackedTemperature(40, 45)}}}}}

        snapshot = mergeReport(None, report, "X1C")

        assert snapshot.chamberTemp == 31
        assert snapshot.chamberTargetTemp == 45

    def test_alternate_module_is_masked(self):
        report = {"print": {"device": {"ctc": {"info": {"temp": encodePackedTemperature(38, 50)}}}}}

        snapshot = mergeReport(None, report, "H2S")

        assert snapshot.chamberTemp == 38
        assert snapshot.chamberTargetTemp == 50

    def test_dual_nozzle_info_temp_is_masked(self):
        report = {"print": {"info": {"temp": 0x12340021}}}

        snapshot = mergeReport(None, report, "H2D")

        assert snapshot.chamberTemp == 0x21


class TestLifecycleCleanup:
    def test_idle_transition_zeroes_progress_targets_and_hazards(self):
        snapshot = mergeReport(printingSnapshot(), {"print": {"gcode_state": "IDLE"}}, "H2D")

        assert snapshot.gcodeState == "IDLE"
        assert snapshot.printProgress == 0
        assert snapshot.remainingTime == 0
        assert snapshot.nozzleTargetTemp == 0
        assert snapshot.nozzleTargetTemp2 == 0
        assert snapshot.bedTargetTemp == 0
        assert snapshot.chamberTargetTemp == 0
        assert snapshot.hms == ()

    def test_idle_transition_resets_actuals_once(self):
        snapshot = mergeReport(printingSnapshot(), {"print": {"gcode_state": "FINISH"}}, "H2D")

        assert snapshot.nozzleTemp == 0
        assert snapshot.nozzleTemp2 == 0
        assert snapshot.bedTemp == 0
        assert snapshot.chamberTemp == 0

        later = mergeReport(snapshot, {"print": {"gcode_state": "FINISH", "bed_temper": 41}}, "H2D")

        assert later.bedTemp == 41

    def test_actuals_in_the_same_report_win(self):
        snapshot = mergeReport(
            printingSnapshot(),
            {"print": {"gcode_state": "IDLE", "bed_temper": 55, "nozzle_temper": 190}},
            "P1S",
        )

        assert snapshot.bedTemp == 55
        assert snapshot.nozzleTemp == 190

    def test_single_nozzle_second_nozzle_stays_absent(self):
        previous = printingSnapshot(nozzleTemp2=None, nozzleTargetTemp2=None)

        snapshot = mergeReport(previous, {"print": {"gcode_state": "IDLE"}}, "P1S")

        assert snapshot.nozzleTemp2 is None

    def test_active_error_is_preserved(self):
        report = {"print": {"gcode_state": "IDLE", "print_error": 50348044, "mc_print_error_code": "32778", "hms": [{"attr": 7}]}}

        snapshot = mergeReport(printingSnapshot(), report, "P1S")

        assert snapshot.printError == 50348044
        assert snapshot.printErrorCode == "32778"
        assert snapshot.hms == ({"attr": 7},)
        assert snapshot.printProgress == 0

    def test_running_report_keeps_progress(self):
        snapshot = mergeReport(
            printingSnapshot(),
            {"print": {"gcode_state": "RUNNING", "mc_percent": 43, "mc_remaining_time": 35}},
            "P1S",
        )

        assert snapshot.printProgress == 43
        assert snapshot.remainingTime == 35
        assert snapshot.nozzleTargetTemp == 220


class TestFilamentSystem:
    fullReport = {
        "print": {
            "ams": {
                "ams_humidity": "4",
                "tray_now": "1",
                "ams": [
                    {
                        "id": "0",
                        "temp": "24.5",
                        "humidity": "4",
                        "humidity_raw": "38",
                        "tray": [
                            {"id": "0", "tray_type": "PLA", "tray_color": "FF0000FF", "tray_sub_brands": "PLA Basic", "remain": 80},
                            {"id": "1", "tray_type": "", "tray_color": "00000000"},
                            {"id": "2", "tray_type": "", "tray_color": "00FF00FF"},
                            {"id": "3"},
                        ],
                    },
                    {"id": "1", "temp": "22", "humidity": "3", "tray": [{"id": "0", "tray_type": "PETG", "tray_color": "FFFFFFFF"}]},
                ],
            }
        }
    }

    def test_full_array_rebuilds_units_and_populated_slots(self):
        snapshot = mergeReport(None, self.fullReport, "P1S")
        filament = snapshot.filament

        assert [unit.id for unit in filament.units] == [0, 1]
        assert [(slot.unitId, slot.slot, slot.id) for slot in filament.slots] == [(0, 0, 0), (0, 2, 2), (1, 0, 4)]
        assert filament.slots[0].name == "PLA Basic"
        assert filament.slots[0].remain == 80
        assert filament.slots[1].remain == -1
        assert filament.trayNow == "1"

    def test_exact_humidity_is_preferred_over_index(self):
        units = decodeFilament(self.fullReport["print"]["ams"]).units

        assert units[0].humidity == 38
        assert units[0].humidityIndex == 4
        assert units[1].humidity == 3

    def test_partial_report_keeps_previous_slots(self):
        previous = mergeReport(None, self.fullReport, "P1S")

        snapshot = mergeReport(previous, {"print": {"ams": {"tray_now": "4"}}}, "P1S")

        assert snapshot.filament.slots == previous.filament.slots
        assert snapshot.filament.trayNow == "4"

    def test_report_without_feeder_keeps_everything(self):
        previous = mergeReport(None, self.fullReport, "P1S")

        snapshot = mergeReport(previous, {"print": {"mc_percent": 5}}, "P1S")

        assert snapshot.filament == previous.filament

    def test_payload_shape(self):
        payload = mergeReport(None, self.fullReport, "P1S").toStatusPayload("id-1", "SERIAL")

        assert set(payload["ams"]) == {"humidity", "trayNow", "units", "trays"}
        assert payload["ams"]["trays"][0]["type"] == "PLA"
        assert payload["ams"]["units"][1]["humidity"] == 3


class TestExternalSpools:
    def test_legacy_single_slot(self):
        primary, spools = decodeExternalSpools({"vt_tray": {"tray_type": "TPU", "tray_color": "000000FF"}})

        assert primary.type == "TPU"
        assert primary.id is None
        assert len(spools) == 1

    def test_multi_slot_takes_precedence(self):
        report = {
            "vt_tray": {"tray_type": "PLA"},
            "vir_slot": [
                {"id": "254", "tray_type": "", "tray_color": "00000000"},
                {"id": "253", "tray_type": "PETG", "tray_color": "FFFFFFFF"},
            ],
        }

        primary, spools = decodeExternalSpools(report)

        assert primary.type == "PETG"
        assert primary.id == 253
        assert [spool.id for spool in spools] == [253]

    def test_empty_spools_keep_previous(self):
        previous = mergeReport(None, {"print": {"vt_tray": {"tray_type": "ABS"}}}, "X1C")

        snapshot = mergeReport(previous, {"print": {"vt_tray": {"tray_type": "", "tray_color": "00000000"}}}, "X1C")

        assert snapshot.externalSpool.type == "ABS"


class TestMergeSemantics:
    def test_reports_without_print_object_are_ignored(self):
        previous = printingSnapshot()

        assert mergeReport(previous, {"info": {"command": "get_version"}}, "P1S") is previous
        assert mergeReport(previous, "not a dict", "P1S") is previous

    def test_applying_same_report_twice_is_idempotent(self):
        report = {
            "print": {
                "gcode_state": "RUNNING",
                "mc_percent": 12,
                "bed_temper": 60,
                "lights_report": [{"node": "chamber_light", "mode": "on"}],
                "ams": TestFilamentSystem.fullReport["print"]["ams"],
            }
        }

        once = mergeReport(None, report, "P1S")
        twice = mergeReport(once, report, "P1S")

        assert once == twice

    def test_missing_fields_fall_back_to_defaults(self):
        snapshot = mergeReport(None, {"print": {"wifi_signal": "-45dBm"}}, "A1")

        assert snapshot.online is True
        assert snapshot.gcodeState == "IDLE"
        assert snapshot.printProgress == 0
        assert snapshot.currentFile == ""
        assert snapshot.wifiSignal == "-45dBm"

    def test_lights_report(self):
        snapshot = mergeReport(None, {"print": {"lights_report": [{"node": "chamber_light", "mode": "off"}, {"node": "work_light", "mode": "on"}]}}, "A1")

        assert snapshot.chamberLight is False
        assert snapshot.workLight is True

    def test_merge_reports_folds_in_order(self):
        snapshot = mergeReports(
            None,
            [{"print": {"mc_percent": 10, "gcode_state": "RUNNING"}}, {"print": {"mc_percent": 20}}],
            "P1S",
        )

        assert snapshot.printProgress == 20
        assert snapshot.gcodeState == "RUNNING"

"""Telemetry reconciliation: previous snapshot + partial device report -> new snapshot.

Device reports are deltas. A field missing from a report keeps its previous
value, and a field never seen falls back to the documented default on
:class:`~printbridge.models.TelemetrySnapshot`. Decoding happens in two steps:
:func:`decodeReport` turns the raw ``print`` object into a typed
:class:`DecodedReport` using the strategy selected by the model profile, and
:func:`reconcile` folds that record into the previous snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from .models import (
    ACTIVE_STATES,
    EMPTY_TRAY_COLOR,
    RESTING_STATES,
    ExternalSpool,
    FeederUnit,
    FilamentSlot,
    FilamentSystem,
    LifecycleState,
    ModelProfile,
    TelemetrySnapshot,
    classifyModel,
)

log = logging.getLogger(__name__)

DEFAULT_EXTERNAL_SPOOL_ID = 254
SLOTS_PER_UNIT = 4


def decodePackedTemperature(value: Any) -> Tuple[int, int]:
    """Split a packed temperature into ``(current, target)``.

    The low 16 bits carry the current reading and the next 16 bits the target.
    ``0`` and missing values decode to ``(0, 0)``.
    """

    if value is None or value == 0:
        return 0, 0
    try:
        packed = int(value)
    except (TypeError, ValueError):
        return 0, 0
    return packed & 0xFFFF, (packed >> 16) & 0xFFFF


def encodePackedTemperature(current: int, target: int) -> int:
    return ((int(target) & 0xFFFF) << 16) | (int(current) & 0xFFFF)


def _dig(source: Any, *path: str) -> Any:
    current = source
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _toInt(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _toFloat(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _hasMaterial(tray: Any) -> bool:
    if not isinstance(tray, Mapping):
        return False
    color = tray.get("tray_color")
    return bool(tray.get("tray_type") or (color and color != EMPTY_TRAY_COLOR))


@dataclass(frozen=True)
class NozzleReading:
    nozzleTemp: Optional[float] = None
    nozzleTargetTemp: Optional[float] = None
    nozzleTemp2: Optional[float] = None
    nozzleTargetTemp2: Optional[float] = None


@dataclass(frozen=True)
class FilamentUpdate:
    """Feeder fields found in one report; ``units``/``slots`` are set only for a full list."""
    humidity: Any = None
    trayNow: Any = None
    units: Optional[Tuple[FeederUnit, ...]] = None
    slots: Optional[Tuple[FilamentSlot, ...]] = None


@dataclass(frozen=True)
class DecodedReport:
    """Typed view of one ``print`` report. ``None`` means "not present in this report"."""

    gcodeState: Optional[str] = None
    printProgress: Optional[int] = None
    remainingTime: Optional[int] = None
    currentFile: Optional[str] = None
    layer: Optional[int] = None
    totalLayers: Optional[int] = None
    nozzles: NozzleReading = NozzleReading()
    bedTemp: Optional[float] = None
    bedTargetTemp: Optional[float] = None
    chamberTemp: Optional[float] = None
    chamberTargetTemp: Optional[float] = None
    partFan: Any = None
    auxFan: Any = None
    chamberFan: Any = None
    chamberLight: Optional[bool] = None
    workLight: Optional[bool] = None
    speedLevel: Optional[int] = None
    speedMagnitude: Optional[int] = None
    filament: Optional[FilamentUpdate] = None
    externalSpool: Optional[ExternalSpool] = None
    externalSpools: Optional[Tuple[ExternalSpool, ...]] = None
    wifiSignal: Optional[str] = None
    printType: Optional[str] = None
    printError: Optional[int] = None
    printErrorCode: Any = None
    printStage: Any = None
    hms: Optional[Tuple[Any, ...]] = None


def _legacyNozzles(printReport: Mapping[str, Any]) -> NozzleReading:
    return NozzleReading(
        nozzleTemp=printReport.get("nozzle_temper"),
        nozzleTargetTemp=printReport.get("nozzle_target_temper"),
        nozzleTemp2=printReport.get("nozzle_temper_2"),
        nozzleTargetTemp2=printReport.get("nozzle_target_temper_2"),
    )


def _extruderEntryTemperature(entries: List[Any], index: int) -> Tuple[int, int]:
    entry = entries[index]
    return decodePackedTemperature(entry.get("temp") if isinstance(entry, Mapping) else None)


def _applyExtruderArray(reading: NozzleReading, printReport: Mapping[str, Any]) -> NozzleReading:
    """Overlay packed per-extruder temperatures onto *reading* when the report has them."""

    extruders = _dig(printReport, "device", "extruder", "info")
    if isinstance(extruders, list) and len(extruders) >= 1:
        leftCurrent, leftTarget = _extruderEntryTemperature(extruders, 0)
        reading = replace(reading, nozzleTemp=leftCurrent, nozzleTargetTemp=leftTarget)
        if len(extruders) >= 2:
            rightCurrent, rightTarget = _extruderEntryTemperature(extruders, 1)
            reading = replace(reading, nozzleTemp2=rightCurrent, nozzleTargetTemp2=rightTarget)
        return reading

    # Older dual-nozzle firmware
    legacyArray = _dig(printReport, "extruder", "info")
    if isinstance(legacyArray, list) and len(legacyArray) >= 2:
        leftCurrent, leftTarget = _extruderEntryTemperature(legacyArray, 0)
        rightCurrent, rightTarget = _extruderEntryTemperature(legacyArray, 1)
        reading = NozzleReading(leftCurrent, leftTarget, rightCurrent, rightTarget)
    return reading


def decodeNozzles(printReport: Mapping[str, Any], profile: ModelProfile) -> NozzleReading:
    """Dual-nozzle models never trust the legacy single-nozzle fields."""

    reading = NozzleReading() if profile.dualNozzle else _legacyNozzles(printReport)
    return _applyExtruderArray(reading, printReport)


def _decodeChamber(
    printReport: Mapping[str, Any], profile: ModelProfile
) -> Tuple[Optional[float], Optional[float]]:
    chamber = printReport.get("chamber_temper")
    target: Optional[float] = None

    ctcTemp = _dig(printReport, "device", "ctc", "info", "temp")
    ctcCurrent: Optional[int] = None
    if ctcTemp is not None:
        ctcCurrent, target = decodePackedTemperature(ctcTemp)

    if chamber is None and profile.dualNozzle:
        infoTemp = _dig(printReport, "info", "temp")
        if infoTemp is not None:
            chamber = _toInt(infoTemp) & 0xFFFF
    if chamber is None:
        chamber = ctcCurrent
    return chamber, target


def _decodeLights(printReport: Mapping[str, Any]) -> Tuple[Optional[bool], Optional[bool]]:
    lights = printReport.get("lights_report")
    if not isinstance(lights, list):
        return None, None
    modes = {}
    for entry in lights:
        if isinstance(entry, Mapping) and entry.get("node") not in modes:
            modes[entry.get("node")] = entry.get("mode")
    chamberLight = modes.get("chamber_light") == "on"
    workLight = any(modes.get(node) == "on" for node in ("chamber_light", "chamber_light2", "work_light"))
    return chamberLight, workLight


def _decodeUnit(unitIndex: int, unit: Mapping[str, Any]) -> FeederUnit:
    rawHumidity = unit.get("humidity_raw")
    humidityIndex = _toInt(unit.get("humidity"))
    humidity: Optional[int] = None
    index: Optional[int] = None
    if rawHumidity is not None and rawHumidity != "":
        humidity = _toInt(rawHumidity)
        index = humidityIndex
    elif unit.get("humidity") not in (None, "") and humidityIndex > 0:
        humidity = humidityIndex
        index = humidityIndex
    return FeederUnit(id=unitIndex, temp=_toFloat(unit.get("temp")), humidity=humidity, humidityIndex=index)


def _decodeSlot(unitIndex: int, slotIndex: int, tray: Mapping[str, Any]) -> FilamentSlot:
    return FilamentSlot(
        id=unitIndex * SLOTS_PER_UNIT + slotIndex,
        unitId=unitIndex,
        slot=slotIndex,
        type=tray.get("tray_type") or "",
        color=tray.get("tray_color") or "",
        name=tray.get("tray_sub_brands") or tray.get("tray_type") or "",
        remain=_toInt(tray.get("remain"), -1) if tray.get("remain") is not None else -1,
        k=tray.get("k") or 0,
        nozzleTempMin=tray.get("nozzle_temp_min") or 0,
        nozzleTempMax=tray.get("nozzle_temp_max") or 0,
        trayInfoIdx=tray.get("tray_info_idx") or "",
        tagUid=tray.get("tag_uid") or "",
        trayUuid=tray.get("tray_uuid") or "",
        trayWeight=_toInt(tray.get("tray_weight")) if tray.get("tray_weight") else 0,
        dryingTemp=_toInt(tray.get("drying_temp")) if tray.get("drying_temp") else 0,
        dryingTime=_toInt(tray.get("drying_time")) if tray.get("drying_time") else 0,
    )


def decodeFilament(ams: Any) -> Optional[FilamentUpdate]:
    """Decode the ``ams`` node. Units and slots are rebuilt only from a full unit list."""

    if not isinstance(ams, Mapping):
        return None
    update = FilamentUpdate(humidity=ams.get("ams_humidity"), trayNow=ams.get("tray_now"))
    unitList = ams.get("ams")
    if not isinstance(unitList, list):
        return update

    units: List[FeederUnit] = []
    slots: List[FilamentSlot] = []
    for unitIndex, unit in enumerate(unitList):
        if not isinstance(unit, Mapping):
            continue
        units.append(_decodeUnit(unitIndex, unit))
        trays = unit.get("tray")
        if isinstance(trays, list):
            for slotIndex, tray in enumerate(trays):
                if _hasMaterial(tray):
                    slots.append(_decodeSlot(unitIndex, slotIndex, tray))
    return replace(update, units=tuple(units), slots=tuple(slots))


def _decodeSpool(slot: Mapping[str, Any], spoolId: Optional[int]) -> ExternalSpool:
    return ExternalSpool(
        id=spoolId,
        type=slot.get("tray_type") or "",
        color=slot.get("tray_color") or "",
        name=slot.get("tray_sub_brands") or "",
        remain=_toInt(slot.get("remain"), -1) if slot.get("remain") is not None else -1,
        k=slot.get("k") or 0,
        nozzleTempMin=slot.get("nozzle_temp_min") or 0,
        nozzleTempMax=slot.get("nozzle_temp_max") or 0,
        trayInfoIdx=slot.get("tray_info_idx") or "",
        tagUid=slot.get("tag_uid") or "",
        trayWeight=_toInt(slot.get("tray_weight")) if slot.get("tray_weight") else 0,
    )


def decodeExternalSpools(printReport: Mapping[str, Any]) -> Tuple[Optional[ExternalSpool], Optional[Tuple[ExternalSpool, ...]]]:
    """Return ``(primary, all)``; both ``None`` when the report carries no populated spool.

    The multi-slot ``vir_slot`` list (ids 254 left / 253 right) takes precedence
    over the legacy single ``vt_tray`` object.
    """

    virtualSlots = printReport.get("vir_slot")
    spools: List[ExternalSpool] = []
    if isinstance(virtualSlots, list) and virtualSlots:
        for slot in virtualSlots:
            if _hasMaterial(slot):
                rawId = slot.get("id")
                spoolId = _toInt(rawId, DEFAULT_EXTERNAL_SPOOL_ID) if rawId is not None else DEFAULT_EXTERNAL_SPOOL_ID
                spools.append(_decodeSpool(slot, spoolId))
    elif isinstance(printReport.get("vt_tray"), Mapping) and _hasMaterial(printReport["vt_tray"]):
        spools.append(_decodeSpool(printReport["vt_tray"], None))

    if not spools:
        return None, None
    return spools[0], tuple(spools)


def decodeReport(printReport: Mapping[str, Any], profile: ModelProfile) -> DecodedReport:
    chamberTemp, chamberTargetTemp = _decodeChamber(printReport, profile)
    chamberLight, workLight = _decodeLights(printReport)
    externalSpool, externalSpools = decodeExternalSpools(printReport)
    hms = printReport.get("hms")

    return DecodedReport(
        gcodeState=printReport.get("gcode_state"),
        printProgress=printReport.get("mc_percent"),
        remainingTime=printReport.get("mc_remaining_time"),
        currentFile=printReport.get("gcode_file") or printReport.get("subtask_name") or None,
        layer=printReport.get("layer_num"),
        totalLayers=printReport.get("total_layer_num"),
        nozzles=decodeNozzles(printReport, profile),
        bedTemp=printReport.get("bed_temper"),
        bedTargetTemp=printReport.get("bed_target_temper"),
        chamberTemp=chamberTemp,
        chamberTargetTemp=chamberTargetTemp,
        partFan=printReport.get("cooling_fan_speed"),
        auxFan=printReport.get("big_fan1_speed"),
        chamberFan=printReport.get("big_fan2_speed"),
        chamberLight=chamberLight,
        workLight=workLight,
        speedLevel=printReport.get("spd_lvl"),
        speedMagnitude=printReport.get("spd_mag"),
        filament=decodeFilament(printReport.get("ams")),
        externalSpool=externalSpool,
        externalSpools=externalSpools,
        wifiSignal=printReport.get("wifi_signal"),
        printType=printReport.get("print_type"),
        printError=printReport.get("print_error"),
        printErrorCode=printReport.get("mc_print_error_code"),
        printStage=printReport.get("mc_print_stage"),
        hms=tuple(hms) if isinstance(hms, list) else None,
    )


def _pick(new: Any, old: Any) -> Any:
    return old if new is None else new


def _mergeFilament(previous: Optional[FilamentSystem], update: Optional[FilamentUpdate]) -> Optional[FilamentSystem]:
    if update is None:
        return previous
    base = previous or FilamentSystem()
    return FilamentSystem(
        humidity=_pick(update.humidity, base.humidity),
        trayNow=_pick(update.trayNow, base.trayNow),
        units=_pick(update.units, base.units),
        slots=_pick(update.slots, base.slots),
    )


def reconcile(previous: TelemetrySnapshot, decoded: DecodedReport) -> TelemetrySnapshot:
    """Fold *decoded* into *previous*, applying the idle cleanup rules."""

    gcodeState = _pick(decoded.gcodeState, previous.gcodeState)
    lifecycle = LifecycleState.fromGcodeState(gcodeState)

    base = previous
    if previous.lifecycle in ACTIVE_STATES and lifecycle in RESTING_STATES:
        # Reported actuals lag behind the heaters cooling down
        base = replace(
            previous,
            nozzleTemp=0,
            nozzleTemp2=0 if previous.nozzleTemp2 is not None else None,
            bedTemp=0,
            chamberTemp=0,
        )

    nozzles = decoded.nozzles
    merged = replace(
        base,
        online=True,
        gcodeState=gcodeState,
        printProgress=_pick(decoded.printProgress, base.printProgress),
        remainingTime=_pick(decoded.remainingTime, base.remainingTime),
        currentFile=_pick(decoded.currentFile, base.currentFile),
        layer=_pick(decoded.layer, base.layer),
        totalLayers=_pick(decoded.totalLayers, base.totalLayers),
        nozzleTemp=_pick(nozzles.nozzleTemp, base.nozzleTemp),
        nozzleTargetTemp=_pick(nozzles.nozzleTargetTemp, base.nozzleTargetTemp),
        nozzleTemp2=_pick(nozzles.nozzleTemp2, base.nozzleTemp2),
        nozzleTargetTemp2=_pick(nozzles.nozzleTargetTemp2, base.nozzleTargetTemp2),
        bedTemp=_pick(decoded.bedTemp, base.bedTemp),
        bedTargetTemp=_pick(decoded.bedTargetTemp, base.bedTargetTemp),
        chamberTemp=_pick(decoded.chamberTemp, base.chamberTemp),
        chamberTargetTemp=_pick(decoded.chamberTargetTemp, base.chamberTargetTemp),
        partFan=_pick(decoded.partFan, base.partFan),
        auxFan=_pick(decoded.auxFan, base.auxFan),
        chamberFan=_pick(decoded.chamberFan, base.chamberFan),
        chamberLight=_pick(decoded.chamberLight, base.chamberLight),
        workLight=_pick(decoded.workLight, base.workLight),
        speedLevel=_pick(decoded.speedLevel, base.speedLevel),
        speedMagnitude=_pick(decoded.speedMagnitude, base.speedMagnitude),
        filament=_mergeFilament(base.filament, decoded.filament),
        externalSpool=_pick(decoded.externalSpool, base.externalSpool),
        externalSpools=_pick(decoded.externalSpools, base.externalSpools),
        wifiSignal=_pick(decoded.wifiSignal, base.wifiSignal),
        printType=_pick(decoded.printType, base.printType),
        printError=_pick(decoded.printError, base.printError),
        printErrorCode=_pick(decoded.printErrorCode, base.printErrorCode),
        printStage=_pick(decoded.printStage, base.printStage),
        hms=_pick(decoded.hms, base.hms),
    )

    if lifecycle in RESTING_STATES:
        merged = replace(
            merged,
            printProgress=0,
            remainingTime=0,
            nozzleTargetTemp=0,
            nozzleTargetTemp2=0,
            bedTargetTemp=0,
            chamberTargetTemp=0,
        )
        if _toInt(decoded.printError) == 0:
            merged = replace(merged, printError=0, printErrorCode="", hms=())
    return merged


def mergeReport(
    previous: Optional[TelemetrySnapshot],
    report: Any,
    model: Optional[str],
) -> TelemetrySnapshot:
    """Return the snapshot after applying one raw device report.

    Reports without a ``print`` object (version replies, system responses)
    leave the snapshot unchanged.
    """

    snapshot = previous or TelemetrySnapshot()
    printReport = report.get("print") if isinstance(report, Mapping) else None
    if not isinstance(printReport, Mapping):
        return snapshot
    return reconcile(snapshot, decodeReport(printReport, classifyModel(model)))


def mergeReports(
    previous: Optional[TelemetrySnapshot],
    reports: Iterable[Any],
    model: Optional[str],
) -> TelemetrySnapshot:
    snapshot = previous or TelemetrySnapshot()
    for report in reports:
        snapshot = mergeReport(snapshot, report, model)
    return snapshot

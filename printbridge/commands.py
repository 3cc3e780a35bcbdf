"""Operator commands and their translation into device request payloads."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from functools import singledispatch
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Optional, Set, Union

from .exceptions import NoSessionError
from .models import ModelProfile, classifyModel

log = logging.getLogger(__name__)

GCODE_SEQUENCE_ID = "2006"
COMMAND_USER_ID = "1234567890"
UNLOAD_TARGET = 255
FILAMENT_CHANGE_TEMPERATURE = 220
DEFAULT_MOVE_AXIS = "X"
DEFAULT_MOVE_DISTANCE = 10
DEFAULT_MOVE_FEED_RATE = 3000
FOLLOW_UP_PUSH_DELAY_SECONDS = 2.0

FILAMENT_CODES: Dict[str, str] = {
    "PLA": "GFL99",
    "PLA-S": "GFL96",
    "PLA-CF": "GFL98",
    "PETG": "GFG99",
    "PETG-CF": "GFG98",
    "ABS": "GFB99",
    "ASA": "GFB98",
    "TPU": "GFU99",
    "PA": "GFN99",
    "PA-CF": "GFN98",
    "PC": "GFC99",
    "PVA": "GFS99",
    "HIPS": "GFS98",
}
DEFAULT_FILAMENT_CODE = "GFL99"

FAN_INDEXES: Dict[str, int] = {"partFan": 1, "auxFan": 2, "chamberFan": 3}
HEATER_GCODES: Dict[str, str] = {"nozzleTemp": "M104 S", "nozzle2Temp": "M104 T1 S", "bedTemp": "M140 S"}


def resolveFilamentCode(trayType: Optional[str], trayInfoIdx: Optional[str] = None) -> str:
    """An explicit ``trayInfoIdx`` wins over the material lookup."""

    if trayInfoIdx:
        return trayInfoIdx
    return FILAMENT_CODES.get((trayType or "").strip().upper(), DEFAULT_FILAMENT_CODE)


def _formatNumber(value: Union[int, float]) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _toNumber(value: Any) -> Optional[Union[int, float]]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else number


@dataclass(frozen=True)
class Command:
    kind: ClassVar[str] = "command"


@dataclass(frozen=True)
class PrintControlCommand(Command):
    kind: ClassVar[str] = "printControl"
    action: str = "pause"


@dataclass(frozen=True)
class ChamberLightCommand(Command):
    kind: ClassVar[str] = "chamberLight"
    on: bool = False


@dataclass(frozen=True)
class WorkLightCommand(Command):
    kind: ClassVar[str] = "workLight"
    on: bool = False


@dataclass(frozen=True)
class TemperatureCommand(Command):
    kind: ClassVar[str] = "temperature"
    heater: str = "nozzleTemp"
    temp: Union[int, float] = 0


@dataclass(frozen=True)
class FanCommand(Command):
    kind: ClassVar[str] = "fan"
    fan: str = "partFan"
    speed: Union[int, float] = 0

    @property
    def nativeSpeed(self) -> int:
        """0-100 percent rescaled to the firmware's 0-255 range."""
        return int(math.floor(self.speed * 2.55 + 0.5))


@dataclass(frozen=True)
class SpeedLevelCommand(Command):
    kind: ClassVar[str] = "speedLevel"
    level: int = 2


@dataclass(frozen=True)
class LoadFilamentCommand(Command):
    kind: ClassVar[str] = "loadFilament"
    slot: int = 0


@dataclass(frozen=True)
class UnloadFilamentCommand(Command):
    kind: ClassVar[str] = "unloadFilament"


@dataclass(frozen=True)
class GcodeCommand(Command):
    kind: ClassVar[str] = "gcode"
    gcode: str = ""


@dataclass(frozen=True)
class HomeCommand(Command):
    kind: ClassVar[str] = "home"


@dataclass(frozen=True)
class BedLevelCommand(Command):
    kind: ClassVar[str] = "bedLevel"


@dataclass(frozen=True)
class MoveAxisCommand(Command):
    kind: ClassVar[str] = "move"
    axis: str = DEFAULT_MOVE_AXIS
    distance: Union[int, float] = DEFAULT_MOVE_DISTANCE
    feedRate: int = DEFAULT_MOVE_FEED_RATE


@dataclass(frozen=True)
class FilamentSettingCommand(Command):
    kind: ClassVar[str] = "amsFilamentSetting"
    amsId: Any = 0
    trayId: Any = 0
    trayType: str = ""
    trayColor: str = ""
    nozzleTempMin: Any = None
    nozzleTempMax: Any = None
    trayInfoIdx: Optional[str] = None

    @property
    def filamentCode(self) -> str:
        return resolveFilamentCode(self.trayType, self.trayInfoIdx)


def _parseTemperature(data: Mapping[str, Any]) -> Optional[Command]:
    temp = _toNumber(data.get("temp"))
    if temp is None:
        return None
    return TemperatureCommand(heater=data["type"], temp=temp)


def _parseFan(data: Mapping[str, Any]) -> Optional[Command]:
    speed = _toNumber(data.get("speed")) or 0
    return FanCommand(fan=data["type"], speed=max(0, min(100, speed)))


def _parseSpeedLevel(data: Mapping[str, Any]) -> Optional[Command]:
    level = _toNumber(data.get("level"))
    if level is None:
        return None
    return SpeedLevelCommand(level=int(level))


def _parseLoad(data: Mapping[str, Any]) -> Optional[Command]:
    slot = data.get("slot")
    if slot is None:
        slot = data.get("trayId")
    slotNumber = _toNumber(slot)
    return LoadFilamentCommand(slot=int(slotNumber) if slotNumber is not None else 0)


def _parseGcode(data: Mapping[str, Any]) -> Optional[Command]:
    gcode = str(data.get("gcode") or "").strip()
    return GcodeCommand(gcode=gcode) if gcode else None


def _parseCalibration(data: Mapping[str, Any]) -> Optional[Command]:
    calibrationType = data.get("calibrationType")
    if calibrationType == "home":
        return HomeCommand()
    if calibrationType == "bed_level":
        return BedLevelCommand()
    return None


def _parseMove(data: Mapping[str, Any]) -> Optional[Command]:
    distance = _toNumber(data.get("distance")) or DEFAULT_MOVE_DISTANCE
    axis = str(data.get("axis") or DEFAULT_MOVE_AXIS).strip().upper()
    return MoveAxisCommand(axis=axis, distance=distance)


def _parseFilamentSetting(data: Mapping[str, Any]) -> Optional[Command]:
    return FilamentSettingCommand(
        amsId=data.get("amsId"),
        trayId=data.get("trayId"),
        trayType=str(data.get("trayType") or ""),
        trayColor=str(data.get("trayColor") or ""),
        nozzleTempMin=data.get("nozzleTempMin"),
        nozzleTempMax=data.get("nozzleTempMax"),
        trayInfoIdx=data.get("trayInfoIdx") or None,
    )


_PARSERS: Dict[str, Callable[[Mapping[str, Any]], Optional[Command]]] = {
    "pause": lambda data: PrintControlCommand(action="pause"),
    "resume": lambda data: PrintControlCommand(action="resume"),
    "stop": lambda data: PrintControlCommand(action="stop"),
    "chamberLight": lambda data: ChamberLightCommand(on=bool(data.get("on"))),
    "light": lambda data: ChamberLightCommand(on=bool(data.get("on"))),
    "workLight": lambda data: WorkLightCommand(on=bool(data.get("on"))),
    "nozzleTemp": _parseTemperature,
    "nozzle2Temp": _parseTemperature,
    "bedTemp": _parseTemperature,
    "partFan": _parseFan,
    "auxFan": _parseFan,
    "chamberFan": _parseFan,
    "speedLevel": _parseSpeedLevel,
    "amsUnload": lambda data: UnloadFilamentCommand(),
    "unloadFilament": lambda data: UnloadFilamentCommand(),
    "amsLoad": _parseLoad,
    "loadFilament": _parseLoad,
    "gcode": _parseGcode,
    "home": lambda data: HomeCommand(),
    "calibration": _parseCalibration,
    "move": _parseMove,
    "amsFilamentSetting": _parseFilamentSetting,
}


def parseCommand(raw: Any) -> Optional[Command]:
    """Parse a bare kind string or a ``{"type": ...}`` dict; unknown kinds give ``None``."""

    if isinstance(raw, str):
        data: Mapping[str, Any] = {"type": raw}
    elif isinstance(raw, Mapping):
        data = raw
    else:
        return None
    parser = _PARSERS.get(str(data.get("type") or ""))
    if parser is None:
        return None
    return parser(data)


def _printPayload(command: str, **fields: Any) -> Dict[str, Any]:
    return {"print": {"command": command, "sequence_id": "0", **fields}}


def _gcodePayload(line: str) -> Dict[str, Any]:
    return {
        "print": {"command": "gcode_line", "sequence_id": GCODE_SEQUENCE_ID, "param": f"{line}\n"},
        "user_id": COMMAND_USER_ID,
    }


def _ledPayload(node: str, on: bool) -> Dict[str, Any]:
    return {
        "system": {
            "sequence_id": "0",
            "command": "ledctrl",
            "led_node": node,
            "led_mode": "on" if on else "off",
            "led_on_time": 500,
            "led_off_time": 500,
            "loop_times": 0,
            "interval_time": 0,
        }
    }


@singledispatch
def buildPayloads(command: Command, profile: ModelProfile) -> List[Dict[str, Any]]:
    """Translate *command* into the ordered request payloads for a printer of *profile*."""
    raise TypeError(f"Unsupported command type: {type(command).__name__}")


@buildPayloads.register
def _(command: PrintControlCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [_printPayload(command.action)]


@buildPayloads.register
def _(command: ChamberLightCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    payload = _ledPayload("chamber_light", command.on)
    payload["user_id"] = COMMAND_USER_ID
    return [payload]


@buildPayloads.register
def _(command: WorkLightCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [_ledPayload(node, command.on) for node in profile.workLightNodes]


@buildPayloads.register
def _(command: TemperatureCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [_gcodePayload(f"{HEATER_GCODES[command.heater]}{_formatNumber(command.temp)}")]


@buildPayloads.register
def _(command: FanCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [_gcodePayload(f"M106 P{FAN_INDEXES[command.fan]} S{command.nativeSpeed}")]


@buildPayloads.register
def _(command: SpeedLevelCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [_printPayload("print_speed", param=str(command.level))]


@buildPayloads.register
def _(command: LoadFilamentCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [
        _printPayload(
            "ams_change_filament",
            target=command.slot,
            curr_temp=FILAMENT_CHANGE_TEMPERATURE,
            tar_temp=FILAMENT_CHANGE_TEMPERATURE,
        )
    ]


@buildPayloads.register
def _(command: UnloadFilamentCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [
        _printPayload(
            "ams_change_filament",
            target=UNLOAD_TARGET,
            curr_temp=FILAMENT_CHANGE_TEMPERATURE,
            tar_temp=FILAMENT_CHANGE_TEMPERATURE,
        )
    ]


@buildPayloads.register
def _(command: GcodeCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [_gcodePayload(command.gcode)]


@buildPayloads.register
def _(command: HomeCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [_gcodePayload("G28")]


@buildPayloads.register
def _(command: BedLevelCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [_gcodePayload("G29")]


@buildPayloads.register
def _(command: MoveAxisCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [
        _gcodePayload("G91"),
        _gcodePayload(f"G0 {command.axis}{_formatNumber(command.distance)} F{command.feedRate}"),
        _gcodePayload("G90"),
    ]


@buildPayloads.register
def _(command: FilamentSettingCommand, profile: ModelProfile) -> List[Dict[str, Any]]:
    return [
        {
            "print": {
                "sequence_id": "0",
                "command": "ams_filament_setting",
                "ams_id": command.amsId,
                "slot_id": command.trayId,
                "tray_id": command.trayId,
                "tray_info_idx": command.filamentCode,
                "setting_id": "",
                "tray_color": command.trayColor,
                "nozzle_temp_min": command.nozzleTempMin,
                "nozzle_temp_max": command.nozzleTempMax,
                "tray_type": command.trayType,
            }
        }
    ]


class CommandTranslator:
    """Publishes translated commands on the target printer's live session."""

    def __init__(
        self,
        connections: Any,
        registry: Any,
        *,
        timerFactory: Callable[..., Any] = threading.Timer,
        followUpDelay: float = FOLLOW_UP_PUSH_DELAY_SECONDS,
    ) -> None:
        self._connections = connections
        self._registry = registry
        self._timerFactory = timerFactory
        self._followUpDelay = followUpDelay
        self._followUps: Set[Any] = set()
        self._lock = threading.Lock()

    def _requireSession(self, serial: str):
        session = self._connections.getSession(serial)
        if session is None:
            raise NoSessionError(serial)
        return session

    def execute(self, serial: str, raw: Any) -> bool:
        """Publish the command. Returns False for unknown commands, no session or publish failure."""

        command = parseCommand(raw)
        if command is None:
            log.debug("Ignoring unsupported command for %s: %r", serial, raw)
            return False

        try:
            session = self._requireSession(serial)
        except NoSessionError as error:
            log.warning("%s, dropping %s command", error, command.kind)
            return False

        descriptor = self._registry.getDescriptor(serial) or session.descriptor
        payloads = buildPayloads(command, classifyModel(descriptor.model))
        published = session.publishAll(payloads)
        if not published:
            log.warning("Command %s for %s was not published", command.kind, serial)
            return False

        log.info("Sent %s to %s (%d message(s))", command.kind, serial, len(payloads))
        if isinstance(command, FilamentSettingCommand):
            self._scheduleFollowUpPush(serial)
        return True

    def _scheduleFollowUpPush(self, serial: str) -> None:
        timer = None

        def push() -> None:
            with self._lock:
                self._followUps.discard(timer)
            session = self._connections.getSession(serial)
            if session is not None:
                session.publish({"pushing": {"command": "pushall"}})
                log.debug("Requested full state from %s after filament change", serial)

        timer = self._timerFactory(self._followUpDelay, push)
        timer.daemon = True
        with self._lock:
            self._followUps.add(timer)
        timer.start()

    def cancelPending(self) -> None:
        with self._lock:
            timers = list(self._followUps)
            self._followUps.clear()
        for timer in timers:
            timer.cancel()

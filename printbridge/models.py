"""Shared data types: printer descriptors, telemetry snapshots and camera streams."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


EMPTY_TRAY_COLOR = "00000000"


class ConnectionState(str, Enum):
    """Device session states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class LifecycleState(str, Enum):
    """Coarse job status derived from the device ``gcode_state``."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHED = "finished"
    ERROR = "error"
    PREPARING = "preparing"

    @classmethod
    def fromGcodeState(cls, value: Any) -> Optional["LifecycleState"]:
        if value is None:
            return None
        return _GCODE_STATES.get(str(value).strip().upper())


_GCODE_STATES: Dict[str, LifecycleState] = {
    "IDLE": LifecycleState.IDLE,
    "RUNNING": LifecycleState.RUNNING,
    "PAUSE": LifecycleState.PAUSED,
    "FINISH": LifecycleState.FINISHED,
    "FAILED": LifecycleState.ERROR,
    "PREPARE": LifecycleState.PREPARING,
    "SLICING": LifecycleState.PREPARING,
}

ACTIVE_STATES = frozenset({LifecycleState.RUNNING, LifecycleState.PAUSED, LifecycleState.PREPARING})
RESTING_STATES = frozenset({LifecycleState.IDLE, LifecycleState.FINISHED})


class CameraTechnique(str, Enum):
    DIRECT_BINARY = "jpeg"
    RELAY = "rtsp"


@dataclass(frozen=True)
class ModelProfile:
    """Firmware differences that matter to decoding, commands and camera access."""
    model: str
    dualNozzle: bool
    cameraTechnique: CameraTechnique
    workLightNodes: Tuple[str, ...]


def classifyModel(model: Optional[str]) -> ModelProfile:
    """Classify a free-form model string such as ``"Bambu Lab H2D"`` or ``"A1 mini"``."""

    normalized = (model or "").strip()
    upper = normalized.upper()

    if "A1" in upper:
        workLightNodes: Tuple[str, ...] = ("chamber_light", "work_light")
    elif any(token in upper for token in ("H2D", "H2S", "H2C", "X1")):
        workLightNodes = ("chamber_light2",)
    else:
        workLightNodes = ("work_light",)

    if "A1" in upper or "P1" in upper:
        technique = CameraTechnique.DIRECT_BINARY
    else:
        technique = CameraTechnique.RELAY

    return ModelProfile(
        model=normalized,
        dualNozzle="H2" in upper,
        cameraTechnique=technique,
        workLightNodes=workLightNodes,
    )


@dataclass(frozen=True)
class PrinterDescriptor:
    """Static printer identity as announced by the control plane."""
    serial: str
    name: str = ""
    model: str = ""
    host: str = ""
    accessCode: str = ""
    printerId: Optional[str] = None

    @classmethod
    def fromPayload(cls, payload: Mapping[str, Any]) -> "PrinterDescriptor":
        def text(key: str) -> str:
            value = payload.get(key)
            return str(value).strip() if value is not None else ""

        printerId = payload.get("id")
        return cls(
            serial=text("serialNumber"),
            name=text("name") or text("serialNumber"),
            model=text("model"),
            host=text("ipAddress"),
            accessCode=text("accessCode"),
            printerId=str(printerId) if printerId is not None else None,
        )

    @property
    def hasCredentials(self) -> bool:
        return bool(self.serial and self.host and self.accessCode)

    @property
    def profile(self) -> ModelProfile:
        return classifyModel(self.model)


@dataclass(frozen=True)
class FeederUnit:
    id: int
    temp: float = 0.0
    humidity: Optional[int] = None
    humidityIndex: Optional[int] = None

    def toPayload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "temp": self.temp}
        if self.humidity is not None:
            payload["humidity"] = self.humidity
            payload["humidityIndex"] = self.humidityIndex
        return payload


@dataclass(frozen=True)
class FilamentSlot:
    id: int
    unitId: int
    slot: int
    type: str = ""
    color: str = ""
    name: str = ""
    remain: int = -1
    k: Any = 0
    nozzleTempMin: Any = 0
    nozzleTempMax: Any = 0
    trayInfoIdx: str = ""
    tagUid: str = ""
    trayUuid: str = ""
    trayWeight: int = 0
    dryingTemp: int = 0
    dryingTime: int = 0

    def toPayload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FilamentSystem:
    """Automatic feeder state; rebuilt only from a report carrying the full unit list."""
    humidity: Any = None
    trayNow: Any = None
    units: Tuple[FeederUnit, ...] = ()
    slots: Tuple[FilamentSlot, ...] = ()

    def toPayload(self) -> Dict[str, Any]:
        return {
            "humidity": self.humidity,
            "trayNow": self.trayNow,
            "units": [unit.toPayload() for unit in self.units],
            "trays": [slot.toPayload() for slot in self.slots],
        }


@dataclass(frozen=True)
class ExternalSpool:
    type: str = ""
    color: str = ""
    name: str = ""
    remain: int = -1
    k: Any = 0
    nozzleTempMin: Any = 0
    nozzleTempMax: Any = 0
    trayInfoIdx: str = ""
    tagUid: str = ""
    trayWeight: int = 0
    id: Optional[int] = None

    def toPayload(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.id is None:
            payload.pop("id")
        return payload


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Canonical printer state. Every field always carries a value or its documented default."""

    online: bool = False
    gcodeState: str = "IDLE"
    printProgress: int = 0
    remainingTime: int = 0
    currentFile: str = ""
    layer: int = 0
    totalLayers: int = 0
    nozzleTemp: float = 0
    nozzleTargetTemp: float = 0
    nozzleTemp2: Optional[float] = None
    nozzleTargetTemp2: Optional[float] = None
    bedTemp: float = 0
    bedTargetTemp: float = 0
    chamberTemp: float = 0
    chamberTargetTemp: float = 0
    partFan: Any = None
    auxFan: Any = None
    chamberFan: Any = None
    chamberLight: Optional[bool] = None
    workLight: Optional[bool] = None
    speedLevel: Optional[int] = None
    speedMagnitude: Optional[int] = None
    filament: Optional[FilamentSystem] = None
    externalSpool: Optional[ExternalSpool] = None
    externalSpools: Tuple[ExternalSpool, ...] = ()
    wifiSignal: Optional[str] = None
    printType: Optional[str] = None
    printError: int = 0
    printErrorCode: Any = ""
    printStage: Any = None
    hms: Tuple[Any, ...] = field(default_factory=tuple)

    @property
    def lifecycle(self) -> LifecycleState:
        return LifecycleState.fromGcodeState(self.gcodeState) or LifecycleState.IDLE

    def toStatusPayload(
        self,
        printerId: Optional[str],
        serial: str,
        cameraUrl: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the outbound ``printer:status`` event body."""

        payload: Dict[str, Any] = {
            "printerId": printerId,
            "serialNumber": serial,
            "online": self.online,
            "gcodeState": self.gcodeState,
            "printProgress": self.printProgress,
            "remainingTime": self.remainingTime,
            "currentFile": self.currentFile,
            "layer": self.layer,
            "totalLayers": self.totalLayers,
            "nozzleTemp": self.nozzleTemp,
            "nozzleTargetTemp": self.nozzleTargetTemp,
            "nozzleTemp2": self.nozzleTemp2,
            "nozzleTargetTemp2": self.nozzleTargetTemp2,
            "bedTemp": self.bedTemp,
            "bedTargetTemp": self.bedTargetTemp,
            "chamberTemp": self.chamberTemp,
            "chamberTargetTemp": self.chamberTargetTemp,
            "partFan": self.partFan,
            "auxFan": self.auxFan,
            "chamberFan": self.chamberFan,
            "chamberLight": self.chamberLight,
            "workLight": self.workLight,
            "speedLevel": self.speedLevel,
            "speedMagnitude": self.speedMagnitude,
            "ams": self.filament.toPayload() if self.filament else None,
            "externalSpool": self.externalSpool.toPayload() if self.externalSpool else None,
            "externalSpools": [spool.toPayload() for spool in self.externalSpools],
            "wifiSignal": self.wifiSignal,
            "printType": self.printType,
            "printError": self.printError,
            "printErrorCode": self.printErrorCode,
            "printStage": self.printStage,
            "hms": list(self.hms),
        }
        if cameraUrl:
            payload["cameraUrl"] = cameraUrl
        return payload


@dataclass(frozen=True)
class CameraStreamDescriptor:
    serial: str
    technique: CameraTechnique
    url: str
    relayStreamName: Optional[str] = None


def offlinePayload(printerId: Optional[str], serial: str) -> Dict[str, Any]:
    return {"printerId": printerId, "serialNumber": serial, "online": False}


def cameraUrlPayload(printerId: Optional[str], serial: str, cameraUrl: str) -> Dict[str, Any]:
    return {"printerId": printerId, "serialNumber": serial, "cameraUrl": cameraUrl}


__all__: List[str] = [
    "ACTIVE_STATES",
    "CameraStreamDescriptor",
    "CameraTechnique",
    "ConnectionState",
    "EMPTY_TRAY_COLOR",
    "ExternalSpool",
    "FeederUnit",
    "FilamentSlot",
    "FilamentSystem",
    "LifecycleState",
    "ModelProfile",
    "PrinterDescriptor",
    "RESTING_STATES",
    "TelemetrySnapshot",
    "cameraUrlPayload",
    "classifyModel",
    "offlinePayload",
]

"""Printer registry: the single lock-guarded owner of descriptors, states and snapshots."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    CameraStreamDescriptor,
    ConnectionState,
    PrinterDescriptor,
    TelemetrySnapshot,
)
from .telemetry import mergeReport

log = logging.getLogger(__name__)


@dataclass
class PrinterEntry:
    descriptor: PrinterDescriptor
    connectionState: ConnectionState = ConnectionState.DISCONNECTED
    snapshot: TelemetrySnapshot = field(default_factory=TelemetrySnapshot)
    camera: Optional[CameraStreamDescriptor] = None


class PrinterRegistry:
    """Serial -> descriptor, connection state, canonical telemetry and camera stream.

    Every mutation goes through one lock; readers receive immutable values.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, PrinterEntry] = {}
        self._lock = threading.RLock()

    def registerDescriptor(self, descriptor: PrinterDescriptor) -> bool:
        """Add or replace a descriptor. Returns True when the serial was new."""

        with self._lock:
            entry = self._entries.get(descriptor.serial)
            if entry is None:
                self._entries[descriptor.serial] = PrinterEntry(descriptor=descriptor)
                log.info("Registered printer %s (%s)", descriptor.name, descriptor.serial)
                return True
            entry.descriptor = descriptor
            return False

    def removePrinter(self, serial: str) -> Optional[PrinterDescriptor]:
        with self._lock:
            entry = self._entries.pop(serial, None)
        if entry is None:
            return None
        log.info("Removed printer %s", serial)
        return entry.descriptor

    def getDescriptor(self, serial: str) -> Optional[PrinterDescriptor]:
        with self._lock:
            entry = self._entries.get(serial)
            return entry.descriptor if entry else None

    def hasPrinter(self, serial: str) -> bool:
        with self._lock:
            return serial in self._entries

    def serials(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def descriptors(self) -> List[PrinterDescriptor]:
        with self._lock:
            return [entry.descriptor for entry in self._entries.values()]

    def getSnapshot(self, serial: str) -> Optional[TelemetrySnapshot]:
        with self._lock:
            entry = self._entries.get(serial)
            return entry.snapshot if entry else None

    def applyReport(self, serial: str, report: Any) -> Tuple[Optional[TelemetrySnapshot], bool]:
        """Merge a raw device report. Returns ``(snapshot, changed)``."""

        with self._lock:
            entry = self._entries.get(serial)
            if entry is None:
                return None, False
            previous = entry.snapshot
            entry.snapshot = mergeReport(previous, report, entry.descriptor.model)
            return entry.snapshot, entry.snapshot != previous

    def getConnectionState(self, serial: str) -> ConnectionState:
        with self._lock:
            entry = self._entries.get(serial)
            return entry.connectionState if entry else ConnectionState.DISCONNECTED

    def setConnectionState(self, serial: str, state: ConnectionState) -> None:
        with self._lock:
            entry = self._entries.get(serial)
            if entry is None:
                return
            entry.connectionState = state
            if state is ConnectionState.CONNECTED and not entry.snapshot.online:
                entry.snapshot = replace(entry.snapshot, online=True)

    def markOffline(self, serial: str) -> bool:
        """Flag the printer offline; returns False when the serial is unknown."""

        with self._lock:
            entry = self._entries.get(serial)
            if entry is None:
                return False
            entry.connectionState = ConnectionState.DISCONNECTED
            entry.snapshot = replace(entry.snapshot, online=False)
            return True

    def setCameraStream(self, serial: str, camera: Optional[CameraStreamDescriptor]) -> None:
        with self._lock:
            entry = self._entries.get(serial)
            if entry is not None:
                entry.camera = camera

    def getCameraStream(self, serial: str) -> Optional[CameraStreamDescriptor]:
        with self._lock:
            entry = self._entries.get(serial)
            return entry.camera if entry else None

    def getCameraUrl(self, serial: str) -> Optional[str]:
        camera = self.getCameraStream(serial)
        return camera.url if camera else None

    def statusPayload(self, serial: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(serial)
            if entry is None:
                return None
            cameraUrl = entry.camera.url if entry.camera else None
            return entry.snapshot.toStatusPayload(entry.descriptor.printerId, serial, cameraUrl)

    def snapshotAll(self) -> Dict[str, Dict[str, Any]]:
        """Status payloads for every printer, keyed by serial (diagnostics)."""

        with self._lock:
            serials = list(self._entries)
        snapshots: Dict[str, Dict[str, Any]] = {}
        for serial in serials:
            payload = self.statusPayload(serial)
            if payload is not None:
                snapshots[serial] = payload
        return snapshots

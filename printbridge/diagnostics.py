"""Best-effort diagnostic files: raw report log and latest status snapshot."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

log = logging.getLogger(__name__)

RAW_LOG_NAME = "mqtt-raw.jsonl"
LATEST_STATUS_NAME = "latest-status.json"
STATUS_WRITE_INTERVAL_SECONDS = 5.0


class DiagnosticsLog:
    """Append-only raw report log plus a throttled, atomically replaced status file.

    Write failures are logged and never raised.
    """

    def __init__(
        self,
        folder: Path,
        *,
        statusInterval: float = STATUS_WRITE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.folder = Path(folder)
        self.rawLogPath = self.folder / RAW_LOG_NAME
        self.statusPath = self.folder / LATEST_STATUS_NAME
        self._statusInterval = statusInterval
        self._clock = clock
        self._lastStatusWrite: Optional[float] = None
        self._lock = threading.Lock()
        self._handle: Any = None

    def _openRawLog(self):
        if self._handle is None:
            self.folder.mkdir(parents=True, exist_ok=True)
            self._handle = self.rawLogPath.open("a", encoding="utf-8")
        return self._handle

    def recordReport(self, serial: str, topic: str, data: Dict[str, Any]) -> None:
        record = {"ts": time.time(), "serial": serial, "topic": topic, "data": data}
        with self._lock:
            try:
                handle = self._openRawLog()
                handle.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
                handle.flush()
            except (OSError, TypeError, ValueError) as error:
                log.debug("Failed to append raw report to %s: %s", self.rawLogPath, error)

    def writeLatestStatus(self, statuses: Dict[str, Any], force: bool = False) -> bool:
        """Overwrite the status file at most once per interval. Returns True when written."""

        now = self._clock()
        with self._lock:
            if (
                not force
                and self._lastStatusWrite is not None
                and now - self._lastStatusWrite < self._statusInterval
            ):
                return False
            self._lastStatusWrite = now
            try:
                self.folder.mkdir(parents=True, exist_ok=True)
                tmpPath = self.statusPath.with_suffix(".tmp")
                with tmpPath.open("w", encoding="utf-8") as handle:
                    json.dump({"ts": time.time(), "printers": statuses}, handle, indent=2, default=str)
                os.replace(tmpPath, self.statusPath)
            except (OSError, TypeError, ValueError) as error:
                log.debug("Failed to write %s: %s", self.statusPath, error)
                return False
        return True

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                try:
                    self._handle.close()
                except OSError as error:
                    log.debug("Failed to close raw report log: %s", error)
                self._handle = None

"""RTSP relay orchestration: go2rtc process, config file and dynamic stream registry."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests
import yaml

from ..backoff import RELAY_RESTART_POLICY
from ..supervisor import ProcessSupervisor

log = logging.getLogger(__name__)

RELAY_NAME = "go2rtc"
RELAY_HOST = "127.0.0.1"
RTSP_PORT = 322
RTSP_PATH = "/streaming/live/1"
REGISTRATION_TIMEOUT_SECONDS = 5.0
FALLBACK_RESTART_DELAY_SECONDS = 2.0
RESTART_SETTLE_SECONDS = 0.5
READY_WINDOW_SECONDS = 2.0
READY_PROBE_INTERVAL_SECONDS = 0.25


def relayStreamName(serial: str) -> str:
    return f"cam_{serial}"


def relaySourceUrl(host: str, accessCode: str) -> str:
    return f"rtspx://bblp:{accessCode}@{host}:{RTSP_PORT}{RTSP_PATH}"


def relayMjpegPath(streamName: str) -> str:
    return f"/api/stream.mjpeg?src={streamName}"


def renderRelayConfig(streams: Dict[str, str], apiPort: int) -> str:
    """Relay config: loopback API, RTSP server disabled, every known stream."""

    document = {
        "api": {"listen": f"{RELAY_HOST}:{apiPort}"},
        "rtsp": {"listen": ""},
        "streams": dict(streams),
    }
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


class RtspOrchestrator:
    """Keeps the relay process running and its stream list in sync with known printers."""

    def __init__(
        self,
        configPath: Path,
        executable: Optional[str],
        *,
        apiPort: int = 1984,
        session: Optional[requests.Session] = None,
        onReady: Optional[Callable[[], None]] = None,
        supervisorFactory: Callable[..., Any] = ProcessSupervisor,
        timerFactory: Callable[..., Any] = threading.Timer,
        sleep: Callable[[float], None] = time.sleep,
        readyWindow: float = READY_WINDOW_SECONDS,
    ) -> None:
        self.configPath = Path(configPath)
        self.apiPort = apiPort
        self.apiBase = f"http://{RELAY_HOST}:{apiPort}"
        self._session = session or requests.Session()
        self._onReady = onReady
        self._timerFactory = timerFactory
        self._sleep = sleep
        self._readyWindow = readyWindow
        self._streams: Dict[str, str] = {}
        self._pending: List[str] = []
        self._ready = False
        self._stopping = False
        self._generation = 0
        self._fallbackTimer: Any = None
        self._lock = threading.RLock()

        self.supervisor: Any = None
        if executable:
            self.supervisor = supervisorFactory(
                RELAY_NAME,
                executable,
                ["-c", str(self.configPath)],
                restartPolicy=RELAY_RESTART_POLICY,
                cwd=str(self.configPath.parent),
                onBeforeStart=self._prepareStart,
                onExit=self._handleExit,
            )

    @property
    def available(self) -> bool:
        return self.supervisor is not None

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._ready

    def streams(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._streams)

    def pendingStreams(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def start(self) -> bool:
        if self.supervisor is None:
            log.warning("%s is not installed, relay cameras are unavailable", RELAY_NAME)
            return False
        return self.supervisor.start()

    def shutdown(self) -> None:
        with self._lock:
            self._stopping = True
            self._ready = False
            if self._fallbackTimer is not None:
                self._fallbackTimer.cancel()
                self._fallbackTimer = None
        if self.supervisor is not None:
            self.supervisor.shutdown()

    def writeConfig(self) -> None:
        with self._lock:
            content = renderRelayConfig(self._streams, self.apiPort)
        self.configPath.parent.mkdir(parents=True, exist_ok=True)
        self.configPath.write_text(content, encoding="utf-8")
        log.debug("Wrote relay config with %d stream(s) to %s", content.count("rtspx://"), self.configPath)

    def addStream(self, serial: str, host: str, accessCode: str) -> str:
        """Register the printer's RTSP source; queued until the relay is ready."""

        name = relayStreamName(serial)
        source = relaySourceUrl(host, accessCode)
        with self._lock:
            self._streams[name] = source
            if not self._ready:
                if name not in self._pending:
                    self._pending.append(name)
                log.debug("Relay not ready, queued stream %s", name)
                return name
        self._register(name, source)
        return name

    def removeStream(self, serial: str) -> None:
        name = relayStreamName(serial)
        with self._lock:
            known = self._streams.pop(name, None) is not None
            if name in self._pending:
                self._pending.remove(name)
            ready = self._ready
        if not (known and ready):
            return
        try:
            self._session.delete(
                f"{self.apiBase}/api/streams",
                params={"src": name},
                timeout=REGISTRATION_TIMEOUT_SECONDS,
            )
            log.info("Removed relay stream %s", name)
        except requests.RequestException as error:
            log.debug("Relay stream removal for %s failed: %s", name, error)

    def fullRestart(self) -> None:
        """Rewrite the config with every stream and restart the relay on it."""

        with self._lock:
            self._fallbackTimer = None
            if self._stopping or self.supervisor is None:
                return
            self._ready = False
        log.info("Restarting %s with %d stream(s)", RELAY_NAME, len(self.streams()))
        self.writeConfig()
        self.supervisor.stopIntentionally(kill=True)
        self._sleep(RESTART_SETTLE_SECONDS)
        self.supervisor.start()

    def _register(self, name: str, source: str) -> bool:
        try:
            response = self._session.put(
                f"{self.apiBase}/api/streams",
                params={"name": name, "src": source},
                timeout=REGISTRATION_TIMEOUT_SECONDS,
            )
        except requests.RequestException as error:
            log.warning("Relay registration of %s failed: %s", name, error)
            self._scheduleFullRestart()
            return False

        if response.status_code != 200:
            log.warning("Relay rejected stream %s (HTTP %s)", name, response.status_code)
            self._scheduleFullRestart()
            return False
        log.info("Registered relay stream %s", name)
        return True

    def _scheduleFullRestart(self) -> None:
        with self._lock:
            if self._stopping:
                return
            if self._fallbackTimer is not None:
                self._fallbackTimer.cancel()
            timer = self._timerFactory(FALLBACK_RESTART_DELAY_SECONDS, self.fullRestart)
            timer.daemon = True
            self._fallbackTimer = timer
        timer.start()

    def _prepareStart(self) -> None:
        # Streams queued so far are part of the config being written
        with self._lock:
            self._ready = False
            self._pending.clear()
            self._generation += 1
            generation = self._generation
        self.writeConfig()
        threading.Thread(
            target=self._awaitReady, args=(generation,), name="relay-ready", daemon=True
        ).start()

    def _probe(self) -> bool:
        try:
            self._session.get(f"{self.apiBase}/api/streams", timeout=1.0)
        except requests.RequestException:
            return False
        return True

    def _awaitReady(self, generation: int) -> None:
        deadline = time.monotonic() + self._readyWindow
        while time.monotonic() < deadline:
            with self._lock:
                if self._stopping or generation != self._generation:
                    return
            if self._probe():
                break
            self._sleep(READY_PROBE_INTERVAL_SECONDS)
        self.markReady(generation)

    def markReady(self, generation: Optional[int] = None) -> None:
        """Flush queued registrations and notify the owner."""

        with self._lock:
            if self._ready or self._stopping:
                return
            if generation is not None and generation != self._generation:
                return
            self._ready = True
            pending = [(name, self._streams[name]) for name in self._pending if name in self._streams]
            self._pending.clear()
        if self.supervisor is not None:
            self.supervisor.markHealthy()
        log.info("%s ready on %s", RELAY_NAME, self.apiBase)
        for name, source in pending:
            self._register(name, source)
        if self._onReady is not None:
            self._onReady()

    def _handleExit(self, returnCode: Optional[int]) -> None:
        with self._lock:
            self._ready = False

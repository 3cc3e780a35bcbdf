"""Per-printer MQTT sessions with independent reconnection."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

import paho.mqtt.client as mqtt

from .backoff import DEVICE_RECONNECT_POLICY, BackoffPolicy, BackoffTracker
from .logutil import rateLimit, resetRateLimit
from .models import ConnectionState, PrinterDescriptor, TelemetrySnapshot
from .registry import PrinterRegistry
from .tls import makeTlsContext

log = logging.getLogger(__name__)

MQTT_PORT = 8883
MQTT_USERNAME = "bblp"
KEEPALIVE_SECONDS = 60
ERROR_LOG_WINDOW_SECONDS = 60.0

GET_VERSION_REQUEST = {"info": {"sequence_id": "0", "command": "get_version"}}
PUSH_ALL_REQUEST = {"pushing": {"sequence_id": "0", "command": "pushall"}}

ReportCallback = Callable[[PrinterDescriptor, TelemetrySnapshot, bool], None]
DescriptorCallback = Callable[[PrinterDescriptor], None]


def reportTopic(serial: str) -> str:
    return f"device/{serial}/report"


def requestTopic(serial: str) -> str:
    return f"device/{serial}/request"


def createMqttClient(descriptor: PrinterDescriptor) -> mqtt.Client:
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=f"printbridge_{descriptor.serial}_{uuid.uuid4().hex[:6]}",
        protocol=mqtt.MQTTv311,
    )
    client.username_pw_set(MQTT_USERNAME, descriptor.accessCode)
    client.tls_set_context(makeTlsContext())
    return client


class DeviceSession:
    """One MQTT connection to one printer.

    Publishing is serialized per session so multi-message sequences such as an
    axis jog are never interleaved with another command.
    """

    def __init__(self, descriptor: PrinterDescriptor, client: Any) -> None:
        self.descriptor = descriptor
        self.client = client
        self.connected = False
        self.closed = False
        self._publishLock = threading.Lock()

    @property
    def serial(self) -> str:
        return self.descriptor.serial

    @property
    def requestTopic(self) -> str:
        return requestTopic(self.serial)

    def _publishLocked(self, payload: Dict[str, Any]) -> bool:
        info = self.client.publish(self.requestTopic, json.dumps(payload))
        rc = getattr(info, "rc", mqtt.MQTT_ERR_SUCCESS)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            log.warning("Publish to %s failed: %s", self.serial, mqtt.error_string(rc))
            return False
        return True

    def publish(self, payload: Dict[str, Any]) -> bool:
        with self._publishLock:
            return self._publishLocked(payload)

    def publishAll(self, payloads: Iterable[Dict[str, Any]]) -> bool:
        """Publish *payloads* in order; stops at the first failure."""

        with self._publishLock:
            for payload in payloads:
                if not self._publishLocked(payload):
                    return False
        return True


class ConnectionManager:
    """Owns at most one session and one reconnect timer per serial."""

    def __init__(
        self,
        registry: PrinterRegistry,
        *,
        onReport: Optional[ReportCallback] = None,
        onConnected: Optional[DescriptorCallback] = None,
        onOffline: Optional[DescriptorCallback] = None,
        diagnostics: Any = None,
        clientFactory: Callable[[PrinterDescriptor], Any] = createMqttClient,
        timerFactory: Callable[..., Any] = threading.Timer,
        policy: BackoffPolicy = DEVICE_RECONNECT_POLICY,
    ) -> None:
        self._registry = registry
        self._onReport = onReport
        self._onConnected = onConnected
        self._onOffline = onOffline
        self._diagnostics = diagnostics
        self._clientFactory = clientFactory
        self._timerFactory = timerFactory
        self._policy = policy
        self._sessions: Dict[str, DeviceSession] = {}
        self._timers: Dict[str, Any] = {}
        self._backoff: Dict[str, BackoffTracker] = {}
        self._lock = threading.RLock()

    def connectPrinter(self, descriptor: PrinterDescriptor) -> bool:
        """Open a session unless one is already live for the same credentials.

        Serials missing from the registry are refused, so a removal cannot be
        undone by a reconnect timer that was already running.
        """

        serial = descriptor.serial
        staleSession: Optional[DeviceSession] = None
        with self._lock:
            if not self._registry.hasPrinter(serial):
                log.debug("Not connecting %s, printer is no longer registered", serial)
                return False
            existing = self._sessions.get(serial)
            if existing is not None:
                if (existing.descriptor.host, existing.descriptor.accessCode) == (
                    descriptor.host,
                    descriptor.accessCode,
                ):
                    return False
                staleSession = self._sessions.pop(serial)
                staleSession.closed = True
            timer = self._timers.pop(serial, None)
            if timer is not None:
                timer.cancel()

            client = self._clientFactory(descriptor)
            session = DeviceSession(descriptor, client)
            client.user_data_set(session)
            client.on_connect = self._handleConnect
            client.on_disconnect = self._handleDisconnect
            client.on_connect_fail = self._handleConnectFail
            client.on_message = self._handleMessage
            self._sessions[serial] = session

        if staleSession is not None:
            log.info("Address or access code of %s changed, reconnecting", serial)
            self._closeClient(staleSession)

        self._registry.setConnectionState(serial, ConnectionState.CONNECTING)
        log.info("Connecting to %s (%s) at %s", descriptor.name, serial, descriptor.host)
        try:
            client.connect_async(descriptor.host, MQTT_PORT, keepalive=KEEPALIVE_SECONDS)
            client.loop_start()
        except (OSError, ValueError) as error:
            self._logTransportError(serial, str(error))
            self._handleClose(session)
        return True

    def disconnectPrinter(self, serial: str) -> None:
        """Tear down the session and cancel any pending reconnect for *serial*."""

        with self._lock:
            timer = self._timers.pop(serial, None)
            self._backoff.pop(serial, None)
            session = self._sessions.pop(serial, None)
            if session is not None:
                session.closed = True
        if timer is not None:
            timer.cancel()
        if session is not None:
            self._closeClient(session)
            log.info("Disconnected %s", serial)
        self._registry.setConnectionState(serial, ConnectionState.DISCONNECTED)

    def stopAll(self) -> None:
        with self._lock:
            serials = set(self._sessions) | set(self._timers)
        for serial in serials:
            self.disconnectPrinter(serial)

    def getSession(self, serial: str) -> Optional[DeviceSession]:
        """Return the live (connected) session for *serial*, if any."""

        with self._lock:
            session = self._sessions.get(serial)
        if session is None or not session.connected:
            return None
        return session

    def connectedSerials(self) -> List[str]:
        with self._lock:
            return [serial for serial, session in self._sessions.items() if session.connected]

    def hasPendingReconnect(self, serial: str) -> bool:
        with self._lock:
            return serial in self._timers

    def reconnectAttempts(self, serial: str) -> int:
        with self._lock:
            tracker = self._backoff.get(serial)
        return tracker.attempts if tracker else 0

    def _isCurrent(self, session: DeviceSession) -> bool:
        with self._lock:
            return not session.closed and self._sessions.get(session.serial) is session

    def _closeClient(self, session: DeviceSession) -> None:
        session.connected = False
        try:
            session.client.disconnect()
            session.client.loop_stop()
        except (OSError, RuntimeError) as error:
            log.debug("Error while closing MQTT client for %s: %s", session.serial, error)

    def _logTransportError(self, serial: str, message: str) -> None:
        rateLimit(
            f"mqtt:{serial}:{message}",
            "MQTT error for %s: %s",
            serial,
            message,
            level="warning",
            minSeconds=ERROR_LOG_WINDOW_SECONDS,
            logger=log,
        )

    def _handleConnect(self, client, session: DeviceSession, flags, reasonCode, properties=None) -> None:
        if getattr(reasonCode, "is_failure", False):
            self._logTransportError(session.serial, f"connection refused: {reasonCode}")
            client.disconnect()
            return
        if not self._isCurrent(session):
            client.disconnect()
            return

        serial = session.serial
        session.connected = True
        with self._lock:
            tracker = self._backoff.get(serial)
        if tracker is not None:
            tracker.reset()
        resetRateLimit(f"mqtt:{serial}:")
        self._registry.setConnectionState(serial, ConnectionState.CONNECTED)

        client.subscribe(reportTopic(serial))
        session.publishAll([GET_VERSION_REQUEST, PUSH_ALL_REQUEST])
        log.info("Connected to %s (%s)", session.descriptor.name, serial)

        if self._onConnected is not None:
            self._onConnected(session.descriptor)

    def _handleMessage(self, client, session: DeviceSession, message) -> None:
        if not self._isCurrent(session):
            return
        serial = session.serial
        try:
            data = json.loads(message.payload)
        except (TypeError, ValueError) as error:
            log.debug("Discarding malformed report from %s: %s", serial, error)
            return
        if not isinstance(data, dict):
            log.debug("Discarding non-object report from %s", serial)
            return

        if self._diagnostics is not None:
            self._diagnostics.recordReport(serial, message.topic, data)
        if "system" in data:
            log.debug("System response from %s: %s", serial, data["system"])

        try:
            snapshot, changed = self._registry.applyReport(serial, data)
        except (TypeError, ValueError, KeyError, AttributeError) as error:
            log.debug("Discarding report from %s with unexpected shape: %s", serial, error)
            return
        if snapshot is not None and self._onReport is not None:
            self._onReport(session.descriptor, snapshot, changed)

    def _handleDisconnect(self, client, session: DeviceSession, flags, reasonCode, properties=None) -> None:
        if getattr(reasonCode, "is_failure", False):
            self._logTransportError(session.serial, f"connection lost: {reasonCode}")
        self._handleClose(session)

    def _handleConnectFail(self, client, session: DeviceSession) -> None:
        self._logTransportError(session.serial, "connection failed")
        self._handleClose(session)

    def _handleClose(self, session: DeviceSession) -> None:
        # Reconnects are scheduled here, not by paho's own retry loop
        session.client.loop_stop()
        with self._lock:
            if session.closed:
                return
            session.closed = True
            if self._sessions.get(session.serial) is not session:
                return
            del self._sessions[session.serial]
        session.connected = False

        serial = session.serial
        if self._registry.markOffline(serial) and self._onOffline is not None:
            self._onOffline(session.descriptor)
        self._scheduleReconnect(serial)

    def _scheduleReconnect(self, serial: str) -> None:
        with self._lock:
            descriptor = self._registry.getDescriptor(serial)
            if descriptor is None:
                self._backoff.pop(serial, None)
                return
            if serial in self._sessions or serial in self._timers:
                return
            tracker = self._backoff.setdefault(serial, BackoffTracker(self._policy))
            attempt = tracker.attempts
            delay = tracker.nextDelay()
            timer = self._timerFactory(delay, self._reconnectDue, args=(serial,))
            timer.daemon = True
            self._timers[serial] = timer
            timer.start()

        if attempt == 0 or attempt % 5 == 0:
            log.info("Reconnecting %s in %ds (attempt %d)", descriptor.name, round(delay), attempt + 1)

    def _reconnectDue(self, serial: str) -> None:
        with self._lock:
            self._timers.pop(serial, None)
            if serial in self._sessions:
                return
            descriptor = self._registry.getDescriptor(serial)
        if descriptor is None:
            return
        self.connectPrinter(descriptor)

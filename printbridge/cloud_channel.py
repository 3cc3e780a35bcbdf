"""Socket.IO channel to the control plane: printer roster and commands in, status out."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError
from socketio.exceptions import SocketIOError

from .backoff import BackoffPolicy, BackoffTracker
from .logutil import rateLimit
from .models import PrinterDescriptor

log = logging.getLogger(__name__)

SOCKETIO_PATH = "socket.io"
CONNECT_TIMEOUT_SECONDS = 20
RECONNECT_DELAY_SECONDS = 3
RECONNECT_DELAY_MAX_SECONDS = 30
CONNECT_RETRY_POLICY = BackoffPolicy(
    baseSeconds=RECONNECT_DELAY_SECONDS, multiplier=2.0, capSeconds=RECONNECT_DELAY_MAX_SECONDS
)

STATUS_EVENT = "printer:status"


def createSocketClient() -> socketio.Client:
    return socketio.Client(
        reconnection=True,
        reconnection_attempts=0,
        reconnection_delay=RECONNECT_DELAY_SECONDS,
        reconnection_delay_max=RECONNECT_DELAY_MAX_SECONDS,
        logger=False,
    )


class CloudChannel:
    """One persistent, authenticated connection to the control plane.

    The socket client reconnects by itself once connected; only the first
    connect is retried here.
    """

    def __init__(
        self,
        apiUrl: str,
        apiKey: str,
        *,
        onPrinters: Callable[[List[PrinterDescriptor]], None],
        onPrinterAdded: Callable[[PrinterDescriptor], None],
        onPrinterRemoved: Callable[[str], None],
        onCommand: Callable[[str, Any], None],
        clientFactory: Callable[[], Any] = createSocketClient,
    ) -> None:
        self.apiUrl = apiUrl.rstrip("/")
        self._apiKey = apiKey
        self._onPrinters = onPrinters
        self._onPrinterAdded = onPrinterAdded
        self._onPrinterRemoved = onPrinterRemoved
        self._onCommand = onCommand
        self._stopEvent = threading.Event()
        self._backoff = BackoffTracker(CONNECT_RETRY_POLICY)
        self._thread: Optional[threading.Thread] = None
        self.authenticated = False

        self.sio = clientFactory()
        self.sio.on("connect", self._handleConnect)
        self.sio.on("disconnect", self._handleDisconnect)
        self.sio.on("authenticated", self._handleAuthenticated)
        self.sio.on("auth:error", self._handleAuthError)
        self.sio.on("printers:list", self._handlePrinterList)
        self.sio.on("printer:add", self._handlePrinterAdd)
        self.sio.on("printer:remove", self._handlePrinterRemove)
        self.sio.on("printer:command", self._handleCommand)

    @property
    def connected(self) -> bool:
        return bool(getattr(self.sio, "connected", False))

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopEvent.clear()
        self._thread = threading.Thread(target=self._connectLoop, name="cloud-channel", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stopEvent.set()
        if self.connected:
            self.sio.disconnect()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None

    def connectOnce(self) -> bool:
        try:
            self.sio.connect(
                self.apiUrl,
                auth={"apiKey": self._apiKey},
                transports=["websocket", "polling"],
                socketio_path=SOCKETIO_PATH,
                wait_timeout=CONNECT_TIMEOUT_SECONDS,
            )
        except SocketConnectionError as error:
            rateLimit(
                f"cloud:connect:{error}",
                "Control plane connection to %s failed: %s",
                self.apiUrl,
                error,
                level="warning",
                minSeconds=60.0,
                logger=log,
            )
            return False
        self._backoff.reset()
        return True

    def _connectLoop(self) -> None:
        log.info("Connecting to %s", self.apiUrl)
        while not self._stopEvent.is_set():
            if self.connectOnce():
                return
            self._stopEvent.wait(self._backoff.nextDelay())

    def emitStatus(self, payload: Dict[str, Any]) -> bool:
        if not self.connected:
            return False
        try:
            self.sio.emit(STATUS_EVENT, payload)
        except SocketIOError as error:
            log.debug("Dropping status for %s: %s", payload.get("serialNumber"), error)
            return False
        return True

    def _handleConnect(self) -> None:
        log.info("Control plane connected")

    def _handleDisconnect(self, *args: Any) -> None:
        self.authenticated = False
        log.info("Control plane disconnected")

    def _handleAuthenticated(self, *args: Any) -> None:
        self.authenticated = True
        log.info("Authenticated with control plane, requesting printers")
        self.sio.emit("printers:request")

    def _handleAuthError(self, error: Any = None) -> None:
        log.error("Control plane rejected the API key: %s", error)

    def _handlePrinterList(self, printers: Any) -> None:
        if not isinstance(printers, list):
            log.warning("Ignoring malformed printer list: %r", printers)
            return
        descriptors = [PrinterDescriptor.fromPayload(item) for item in printers if isinstance(item, Mapping)]
        log.info("Received %d printer(s)", len(descriptors))
        usable = []
        for descriptor in descriptors:
            log.info("Printer: %s | model: %s | serial: %s", descriptor.name, descriptor.model or "?", descriptor.serial)
            if descriptor.hasCredentials:
                usable.append(descriptor)
            else:
                log.warning("Printer %s lacks address or access code, skipping", descriptor.name)
        self._onPrinters(usable)

    def _handlePrinterAdd(self, printer: Any) -> None:
        if not isinstance(printer, Mapping):
            return
        descriptor = PrinterDescriptor.fromPayload(printer)
        log.info("Printer added: %s", descriptor.name)
        if descriptor.hasCredentials:
            self._onPrinterAdded(descriptor)

    def _handlePrinterRemove(self, data: Any) -> None:
        serial = data.get("serialNumber") if isinstance(data, Mapping) else None
        if not serial:
            return
        log.info("Printer removed: %s", serial)
        self._onPrinterRemoved(str(serial))

    def _handleCommand(self, data: Any) -> None:
        if not isinstance(data, Mapping) or not data.get("serialNumber"):
            log.warning("Ignoring malformed command event: %r", data)
            return
        log.info("Command for %s: %r", data["serialNumber"], data.get("command"))
        self._onCommand(str(data["serialNumber"]), data.get("command"))

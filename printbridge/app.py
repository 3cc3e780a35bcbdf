"""Wires the device sessions, camera subsystem, tunnel and cloud channel into one bridge."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

from .camera import CameraManager, MediaGateway, RtspOrchestrator
from .cloud_channel import CloudChannel, createSocketClient
from .commands import CommandTranslator
from .config_manager import BridgeSettings, ConfigManager
from .connection import ConnectionManager, createMqttClient
from .diagnostics import DiagnosticsLog
from .exceptions import ExecutableNotFoundError
from .models import PrinterDescriptor, TelemetrySnapshot, cameraUrlPayload, offlinePayload
from .registry import PrinterRegistry
from .supervisor import findExecutable
from .tunnel import TunnelManager

log = logging.getLogger(__name__)

RELAY_EXECUTABLE = "go2rtc"
TUNNEL_EXECUTABLE = "cloudflared"
RELAY_CONFIG_NAME = "go2rtc.yaml"


def executableSearchDirs(settings: BridgeSettings) -> List[Optional[Path]]:
    workingDirectory = Path(os.getcwd())
    return [
        settings.binDirectory,
        settings.dataDirectory,
        settings.dataDirectory / "bin",
        workingDirectory,
        workingDirectory / "bin",
    ]


def locateExecutable(name: str, settings: BridgeSettings) -> Optional[str]:
    try:
        path = findExecutable(name, executableSearchDirs(settings))
    except ExecutableNotFoundError as error:
        log.warning("%s", error)
        return None
    log.info("Using %s at %s", name, path)
    return path


class Bridge:
    """Top-level owner of every long-lived component."""

    def __init__(
        self,
        settings: BridgeSettings,
        config: ConfigManager,
        apiKey: str,
        *,
        executableLocator: Callable[[str, BridgeSettings], Optional[str]] = locateExecutable,
        mqttClientFactory: Callable[[PrinterDescriptor], Any] = createMqttClient,
        socketClientFactory: Callable[[], Any] = createSocketClient,
        localIp: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self.config = config
        self._stopped = threading.Event()

        self.registry = PrinterRegistry()
        self.diagnostics = DiagnosticsLog(settings.logsDirectory)

        self.relay = RtspOrchestrator(
            settings.dataDirectory / RELAY_CONFIG_NAME,
            executableLocator(RELAY_EXECUTABLE, settings),
            apiPort=settings.relayApiPort,
            onReady=self._handleRelayReady,
        )
        self.tunnel = TunnelManager(
            executableLocator(TUNNEL_EXECUTABLE, settings),
            settings.gatewayPort,
            onUrl=self._handleTunnelUrl,
        )
        self.cameras = CameraManager(
            self.registry,
            self.relay,
            gatewayPort=settings.gatewayPort,
            publicBaseUrl=config.get_tunnel_url(),
            localIp=localIp,
        )
        self.connections = ConnectionManager(
            self.registry,
            onReport=self._handleReport,
            onConnected=self._handleConnected,
            onOffline=self._handleOffline,
            diagnostics=self.diagnostics,
            clientFactory=mqttClientFactory,
        )
        self.translator = CommandTranslator(self.connections, self.registry)
        self.gateway = MediaGateway(
            self.cameras.getJpegStream,
            host=settings.gatewayHost,
            port=settings.gatewayPort,
            relayBase=self.relay.apiBase,
        )
        self.channel = CloudChannel(
            settings.apiUrl,
            apiKey,
            onPrinters=self.registerPrinters,
            onPrinterAdded=self.addPrinter,
            onPrinterRemoved=self.removePrinter,
            onCommand=self.executeCommand,
            clientFactory=socketClientFactory,
        )

    # Printer roster

    def addPrinter(self, descriptor: PrinterDescriptor) -> None:
        if self.registry.registerDescriptor(descriptor):
            log.info("Registered %s (%s, %s)", descriptor.name, descriptor.model or "unknown model", descriptor.serial)
        self.connections.connectPrinter(descriptor)

    def registerPrinters(self, descriptors: Iterable[PrinterDescriptor]) -> None:
        for descriptor in descriptors:
            self.addPrinter(descriptor)

    def removePrinter(self, serial: str) -> None:
        # Registry first: connectPrinter refuses serials it no longer knows
        removed = self.registry.removePrinter(serial)
        self.connections.disconnectPrinter(serial)
        self.cameras.removeCamera(serial)
        if removed is not None:
            log.info("Removed printer %s", serial)

    def executeCommand(self, serial: str, command: Any) -> bool:
        return self.translator.execute(serial, command)

    # Component callbacks

    def _handleReport(self, descriptor: PrinterDescriptor, snapshot: TelemetrySnapshot, changed: bool) -> None:
        if not changed:
            return
        payload = self.registry.statusPayload(descriptor.serial)
        if payload is not None:
            self.channel.emitStatus(payload)
        self.diagnostics.writeLatestStatus(self.registry.snapshotAll())

    def _handleConnected(self, descriptor: PrinterDescriptor) -> None:
        if not self.registry.hasPrinter(descriptor.serial):
            return
        camera = self.cameras.addCamera(descriptor)
        if camera is not None:
            self.channel.emitStatus(cameraUrlPayload(descriptor.printerId, descriptor.serial, camera.url))

    def _handleOffline(self, descriptor: PrinterDescriptor) -> None:
        self.channel.emitStatus(offlinePayload(descriptor.printerId, descriptor.serial))

    def _handleRelayReady(self) -> None:
        if not self._stopped.is_set():
            self.tunnel.start()

    def _handleTunnelUrl(self, url: str) -> None:
        self.config.set_tunnel_url(url)
        self.config.save()
        for camera in self.cameras.setPublicBaseUrl(url):
            descriptor = self.registry.getDescriptor(camera.serial)
            printerId = descriptor.printerId if descriptor is not None else None
            self.channel.emitStatus(cameraUrlPayload(printerId, camera.serial, camera.url))

    # Lifecycle

    def start(self) -> None:
        log.info("Starting bridge for %s", self.settings.apiUrl)
        self.gateway.start()
        if not self.relay.start():
            self.tunnel.start()
        self.channel.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    def shutdown(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        log.info("Shutting down")
        self.connections.stopAll()
        self.translator.cancelPending()
        self.cameras.stopAll()
        self.gateway.stop()
        self.relay.shutdown()
        self.tunnel.shutdown()
        self.channel.stop()
        self.diagnostics.close()

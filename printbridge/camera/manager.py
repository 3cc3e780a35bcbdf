"""Camera bookkeeping: picks the technique per printer and computes externally reachable URLs."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Dict, List, Optional

from ..logutil import rateLimit
from ..models import CameraStreamDescriptor, CameraTechnique, PrinterDescriptor
from ..registry import PrinterRegistry
from .jpeg_stream import JpegStream
from .relay import RtspOrchestrator, relayMjpegPath, relayStreamName

log = logging.getLogger(__name__)


def detectLocalIp() -> str:
    """Primary LAN IPv4 address, or ``localhost`` when offline."""

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("8.8.8.8", 80))
            address = probe.getsockname()[0]
    except OSError:
        return "localhost"
    if not address or address.startswith("127."):
        return "localhost"
    return address


class CameraManager:
    def __init__(
        self,
        registry: PrinterRegistry,
        relay: Optional[RtspOrchestrator],
        *,
        gatewayPort: int = 8765,
        publicBaseUrl: Optional[str] = None,
        localIp: Optional[str] = None,
        streamFactory: Callable[..., JpegStream] = JpegStream,
    ) -> None:
        self._registry = registry
        self._relay = relay
        self._gatewayPort = gatewayPort
        self._publicBaseUrl = publicBaseUrl.rstrip("/") if publicBaseUrl else None
        self._localIp = localIp
        self._streamFactory = streamFactory
        self._jpegStreams: Dict[str, JpegStream] = {}
        self._lock = threading.RLock()

    @property
    def baseUrl(self) -> str:
        with self._lock:
            if self._publicBaseUrl:
                return self._publicBaseUrl
            if self._localIp is None:
                self._localIp = detectLocalIp()
            return f"http://{self._localIp}:{self._gatewayPort}"

    def cameraUrlFor(self, descriptor: PrinterDescriptor) -> str:
        if descriptor.profile.cameraTechnique is CameraTechnique.DIRECT_BINARY:
            return f"{self.baseUrl}/stream/{descriptor.serial}"
        return f"{self.baseUrl}{relayMjpegPath(relayStreamName(descriptor.serial))}"

    def getJpegStream(self, serial: str) -> Optional[JpegStream]:
        with self._lock:
            return self._jpegStreams.get(serial)

    def addCamera(self, descriptor: PrinterDescriptor) -> Optional[CameraStreamDescriptor]:
        """Start (or keep) the printer's camera source and record its URL in the registry."""

        technique = descriptor.profile.cameraTechnique
        relayName: Optional[str] = None

        if technique is CameraTechnique.DIRECT_BINARY:
            staleStream: Optional[JpegStream] = None
            with self._lock:
                stream = self._jpegStreams.get(descriptor.serial)
                if stream is not None and (stream.host, stream.accessCode) != (descriptor.host, descriptor.accessCode):
                    staleStream = self._jpegStreams.pop(descriptor.serial)
                    stream = None
                if stream is None:
                    stream = self._streamFactory(descriptor.serial, descriptor.host, descriptor.accessCode)
                    self._jpegStreams[descriptor.serial] = stream
                    stream.start()
                    log.info("Started JPEG camera for %s", descriptor.name)
            if staleStream is not None:
                staleStream.stop()
        else:
            if self._relay is None or not self._relay.available:
                rateLimit(
                    "camera:relay-unavailable",
                    "No relay available, camera for %s is disabled",
                    descriptor.name,
                    level="warning",
                    minSeconds=300.0,
                    logger=log,
                )
                return None
            relayName = self._relay.addStream(descriptor.serial, descriptor.host, descriptor.accessCode)

        camera = CameraStreamDescriptor(
            serial=descriptor.serial,
            technique=technique,
            url=self.cameraUrlFor(descriptor),
            relayStreamName=relayName,
        )
        self._registry.setCameraStream(descriptor.serial, camera)
        return camera

    def removeCamera(self, serial: str) -> None:
        with self._lock:
            stream = self._jpegStreams.pop(serial, None)
        if stream is not None:
            stream.stop()
        if self._relay is not None:
            self._relay.removeStream(serial)
        self._registry.setCameraStream(serial, None)

    def setPublicBaseUrl(self, url: str) -> List[CameraStreamDescriptor]:
        """Switch the external base address and return the cameras whose URL changed."""

        with self._lock:
            self._publicBaseUrl = url.rstrip("/")
        changed: List[CameraStreamDescriptor] = []
        for descriptor in self._registry.descriptors():
            current = self._registry.getCameraStream(descriptor.serial)
            if current is None:
                continue
            newUrl = self.cameraUrlFor(descriptor)
            if newUrl == current.url:
                continue
            updated = CameraStreamDescriptor(
                serial=current.serial,
                technique=current.technique,
                url=newUrl,
                relayStreamName=current.relayStreamName,
            )
            self._registry.setCameraStream(descriptor.serial, updated)
            changed.append(updated)
        return changed

    def stopAll(self) -> None:
        with self._lock:
            streams = list(self._jpegStreams.values())
            self._jpegStreams.clear()
        for stream in streams:
            stream.stop()

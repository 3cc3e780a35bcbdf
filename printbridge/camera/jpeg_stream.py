"""Direct JPEG camera client for printers that stream over the port 6000 TLS protocol."""

from __future__ import annotations

import logging
import queue
import socket
import ssl
import struct
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..backoff import CAMERA_RECONNECT_POLICY, BackoffPolicy, BackoffTracker
from ..logutil import rateLimit
from ..tls import makeTlsContext

log = logging.getLogger(__name__)

CAMERA_PORT = 6000
CAMERA_USERNAME = "bblp"
AUTH_PACKET_SIZE = 80
AUTH_MARKER = 0x40
AUTH_PROTOCOL = 0x3000
JPEG_START = b"\xff\xd8"
JPEG_END = b"\xff\xd9"
MIN_FRAME_BYTES = 100
MAX_BUFFER_BYTES = 8 * 1024 * 1024
VIEWER_QUEUE_SIZE = 2
WATCHDOG_INTERVAL_SECONDS = 30.0
STALE_FRAME_SECONDS = 60.0
FIRST_DATA_TIMEOUT_SECONDS = 30.0


def buildAuthPacket(accessCode: str, username: str = CAMERA_USERNAME) -> bytes:
    """80 bytes: marker @0, protocol id @4, username @16, access code @48, zero padded."""

    packet = bytearray(AUTH_PACKET_SIZE)
    struct.pack_into("<II", packet, 0, AUTH_MARKER, AUTH_PROTOCOL)
    user = username.encode("ascii")[:32]
    packet[16:16 + len(user)] = user
    code = accessCode.encode("utf-8")[:32]
    packet[48:48 + len(code)] = code
    return bytes(packet)


def extractFrames(buffer: bytearray) -> List[bytes]:
    """Remove every complete JPEG from the front of *buffer* and return them.

    Bytes before a start marker are dropped; spans of ``MIN_FRAME_BYTES`` or
    less are treated as noise. An incomplete trailing frame stays buffered.
    """

    frames: List[bytes] = []
    while True:
        start = buffer.find(JPEG_START)
        if start < 0:
            # Keep a trailing 0xFF that may begin a split start marker
            keep = 1 if buffer[-1:] == JPEG_START[:1] else 0
            del buffer[:len(buffer) - keep]
            return frames
        if start > 0:
            del buffer[:start]
        end = buffer.find(JPEG_END, 2)
        if end < 0:
            return frames
        frame = bytes(buffer[:end + 2])
        del buffer[:end + 2]
        if len(frame) > MIN_FRAME_BYTES:
            frames.append(frame)


def openTlsSocket(host: str, port: int, timeout: float = 10.0) -> ssl.SSLSocket:
    rawSocket = socket.create_connection((host, port), timeout=timeout)
    try:
        return makeTlsContext().wrap_socket(rawSocket)
    except (OSError, ssl.SSLError):
        rawSocket.close()
        raise


class FrameSubscription:
    """A viewer's bounded frame queue; the oldest frame is dropped when full."""

    def __init__(self, stream: "JpegStream") -> None:
        self._stream = stream
        self._queue: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=VIEWER_QUEUE_SIZE)
        self.closed = False

    def offer(self, frame: Optional[bytes]) -> None:
        while True:
            try:
                self._queue.put_nowait(frame)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def next(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Next frame, or ``None`` on timeout or when the stream stopped."""

        if self.closed:
            return None
        try:
            frame = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if frame is None:
            self.closed = True
        return frame

    def close(self) -> None:
        self.closed = True
        self._stream.detachViewer(self)

    def __enter__(self) -> "FrameSubscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class JpegStream:
    """Reads the printer's raw JPEG stream and fans frames out to viewers."""

    def __init__(
        self,
        serial: str,
        host: str,
        accessCode: str,
        *,
        port: int = CAMERA_PORT,
        policy: BackoffPolicy = CAMERA_RECONNECT_POLICY,
        connector: Callable[[str, int], Any] = openTlsSocket,
        clock: Callable[[], float] = time.monotonic,
        watchdogInterval: float = WATCHDOG_INTERVAL_SECONDS,
        readTimeout: float = 5.0,
    ) -> None:
        self.serial = serial
        self.host = host
        self.accessCode = accessCode
        self._port = port
        self._connector = connector
        self._clock = clock
        self._watchdogInterval = watchdogInterval
        self._readTimeout = readTimeout
        self._backoff = BackoffTracker(policy)
        self._stopEvent = threading.Event()
        self._lock = threading.Lock()
        self._socket: Any = None
        self._connectedAt: Optional[float] = None
        self._lastDataAt: Optional[float] = None
        self._lastFrameAt: Optional[float] = None
        self._lastFrame: Optional[bytes] = None
        self._frameCount = 0
        self._viewers: Dict[int, FrameSubscription] = {}
        self._threads: List[threading.Thread] = []

    @property
    def lastFrame(self) -> Optional[bytes]:
        with self._lock:
            return self._lastFrame

    @property
    def frameCount(self) -> int:
        with self._lock:
            return self._frameCount

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stopEvent.is_set()

    def start(self) -> None:
        if self._threads:
            return
        self._threads = [
            threading.Thread(target=self._run, name=f"camera-{self.serial}", daemon=True),
            threading.Thread(target=self._watch, name=f"camera-watchdog-{self.serial}", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Stop reading, cancel the watchdog and end every attached viewer."""

        self._stopEvent.set()
        self._closeSocket()
        with self._lock:
            viewers = list(self._viewers.values())
            self._viewers.clear()
        for viewer in viewers:
            viewer.offer(None)
        log.info("Camera stream for %s stopped", self.serial)

    def attachViewer(self) -> FrameSubscription:
        subscription = FrameSubscription(self)
        with self._lock:
            self._viewers[id(subscription)] = subscription
        return subscription

    def detachViewer(self, subscription: FrameSubscription) -> None:
        with self._lock:
            self._viewers.pop(id(subscription), None)

    def viewerCount(self) -> int:
        with self._lock:
            return len(self._viewers)

    def staleReason(self, now: Optional[float] = None) -> Optional[str]:
        """Why the current connection should be recycled, or ``None`` if it is healthy."""

        now = self._clock() if now is None else now
        with self._lock:
            if self._socket is None or self._connectedAt is None:
                return None
            if self._lastFrameAt is not None and now - self._lastFrameAt > STALE_FRAME_SECONDS:
                return "no frames for %ds" % int(now - self._lastFrameAt)
            if self._lastDataAt is None and now - self._connectedAt > FIRST_DATA_TIMEOUT_SECONDS:
                return "no data since connecting"
        return None

    def publishFrame(self, frame: bytes) -> None:
        with self._lock:
            self._lastFrame = frame
            self._lastFrameAt = self._clock()
            self._frameCount += 1
            viewers = list(self._viewers.values())
        for viewer in viewers:
            viewer.offer(frame)

    def _run(self) -> None:
        while not self._stopEvent.is_set():
            try:
                self._streamOnce()
            except (OSError, ssl.SSLError) as error:
                rateLimit(
                    f"camera:{self.serial}:{error}",
                    "Camera %s error: %s",
                    self.serial,
                    error,
                    level="warning",
                    minSeconds=60.0,
                    logger=log,
                )
            if self._stopEvent.is_set():
                break
            delay = self._backoff.nextDelay()
            log.debug("Camera %s reconnecting in %.1fs", self.serial, delay)
            self._stopEvent.wait(delay)

    def _streamOnce(self) -> None:
        sock = self._connector(self.host, self._port)
        with self._lock:
            if self._stopEvent.is_set():
                sock.close()
                return
            self._socket = sock
            self._connectedAt = self._clock()
            self._lastDataAt = None
            self._lastFrameAt = None
        self._backoff.reset()
        log.info("Camera connected to %s (%s)", self.serial, self.host)

        buffer = bytearray()
        try:
            sock.sendall(buildAuthPacket(self.accessCode))
            sock.settimeout(self._readTimeout)
            while not self._stopEvent.is_set():
                try:
                    chunk = sock.recv(65536)
                except socket.timeout:
                    continue
                if not chunk:
                    log.info("Camera %s closed the connection", self.serial)
                    break
                with self._lock:
                    self._lastDataAt = self._clock()
                buffer.extend(chunk)
                for frame in extractFrames(buffer):
                    self.publishFrame(frame)
                if len(buffer) > MAX_BUFFER_BYTES:
                    log.warning("Camera %s buffer overflow, discarding %d bytes", self.serial, len(buffer))
                    buffer.clear()
        finally:
            self._closeSocket(sock)

    def _watch(self) -> None:
        while not self._stopEvent.wait(self._watchdogInterval):
            reason = self.staleReason()
            if reason:
                log.warning("Camera %s stalled (%s), reconnecting", self.serial, reason)
                self._closeSocket()

    def _closeSocket(self, expected: Any = None) -> None:
        with self._lock:
            sock = self._socket
            if sock is None or (expected is not None and sock is not expected):
                return
            self._socket = None
            self._connectedAt = None
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            sock.close()
        except OSError as error:
            log.debug("Error closing camera socket for %s: %s", self.serial, error)

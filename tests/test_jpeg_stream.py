"""Direct JPEG camera protocol: auth packet, frame extraction and viewer fan-out."""

from __future__ import annotations

import struct

from printbridge.camera.jpeg_stream import (
    JPEG_END,
    JPEG_START,
    JpegStream,
    buildAuthPacket,
    extractFrames,
)


def makeFrame(size=200, fill=b"\x11"):
    return JPEG_START + fill * (size - 4) + JPEG_END


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_auth_packet_layout():
    packet = buildAuthPacket("12345678")

    assert len(packet) == 80
    assert struct.unpack_from("<II", packet, 0) == (0x40, 0x3000)
    assert packet[8:16] == bytes(8)
    assert packet[16:20] == b"bblp"
    assert packet[20:48] == bytes(28)
    assert packet[48:56] == b"12345678"
    assert packet[56:] == bytes(24)


def test_extracts_two_frames_after_noise_and_drains_buffer():
    first = makeFrame(150)
    second = makeFrame(300, b"\x22")
    buffer = bytearray(b"\x00\x01garbage" + first + second)

    frames = extractFrames(buffer)

    assert frames == [first, second]
    assert all(frame.startswith(JPEG_START) and frame.endswith(JPEG_END) for frame in frames)
    assert buffer == bytearray()


def test_short_spans_are_dropped_as_noise():
    noise = JPEG_START + b"\x00" * 10 + JPEG_END
    frame = makeFrame(120)
    buffer = bytearray(noise + frame)

    assert extractFrames(buffer) == [frame]


def test_incomplete_frame_stays_buffered():
    frame = makeFrame(200)
    buffer = bytearray(frame[:120])

    assert extractFrames(buffer) == []
    assert bytes(buffer) == frame[:120]

    buffer.extend(frame[120:])
    assert extractFrames(buffer) == [frame]


def test_split_start_marker_survives():
    frame = makeFrame(200)
    buffer = bytearray(b"noise" + frame[:1])

    assert extractFrames(buffer) == []
    assert bytes(buffer) == frame[:1]

    buffer.extend(frame[1:])
    assert extractFrames(buffer) == [frame]


def test_frames_fan_out_to_viewers_and_cache_last():
    stream = JpegStream("SERIAL", "10.0.0.2", "code")
    first = stream.attachViewer()
    second = stream.attachViewer()
    frame = makeFrame()

    stream.publishFrame(frame)

    assert first.next(timeout=0.1) == frame
    assert second.next(timeout=0.1) == frame
    assert stream.lastFrame == frame
    assert stream.frameCount == 1


def test_slow_viewer_drops_oldest_frames():
    stream = JpegStream("SERIAL", "10.0.0.2", "code")
    viewer = stream.attachViewer()
    frames = [makeFrame(200, bytes([value])) for value in (1, 2, 3, 4)]

    for frame in frames:
        stream.publishFrame(frame)

    assert viewer.next(timeout=0.1) == frames[2]
    assert viewer.next(timeout=0.1) == frames[3]
    assert viewer.next(timeout=0.01) is None


def test_stop_ends_viewers():
    stream = JpegStream("SERIAL", "10.0.0.2", "code")
    viewer = stream.attachViewer()

    stream.stop()

    assert viewer.next(timeout=0.1) is None
    assert viewer.closed
    assert stream.viewerCount() == 0


def test_detach_on_close():
    stream = JpegStream("SERIAL", "10.0.0.2", "code")
    with stream.attachViewer():
        assert stream.viewerCount() == 1
    assert stream.viewerCount() == 0


class TestWatchdog:
    def connectedStream(self, clock):
        stream = JpegStream("SERIAL", "10.0.0.2", "code", clock=clock)
        stream._socket = object()
        stream._connectedAt = clock()
        return stream

    def test_healthy_when_not_connected(self):
        clock = FakeClock()
        stream = JpegStream("SERIAL", "10.0.0.2", "code", clock=clock)

        assert stream.staleReason(clock.now + 1000) is None

    def test_no_data_after_connect(self):
        clock = FakeClock()
        stream = self.connectedStream(clock)

        assert stream.staleReason(clock.now + 29) is None
        assert stream.staleReason(clock.now + 31) == "no data since connecting"

    def test_frames_stopped_flowing(self):
        clock = FakeClock()
        stream = self.connectedStream(clock)
        stream._lastDataAt = clock.now
        stream.publishFrame(makeFrame())

        assert stream.staleReason(clock.now + 59) is None
        assert stream.staleReason(clock.now + 61).startswith("no frames for")


class FakeCameraSocket:
    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.sent = []
        self.closed = False

    def sendall(self, data):
        self.sent.append(data)

    def settimeout(self, timeout):
        pass

    def recv(self, size):
        return self.chunks.pop(0) if self.chunks else b""

    def shutdown(self, how):
        pass

    def close(self):
        self.closed = True


def test_stream_once_authenticates_and_publishes_frames():
    frame = makeFrame(400)
    fakeSocket = FakeCameraSocket([b"xx" + frame[:100], frame[100:]])
    stream = JpegStream("SERIAL", "10.0.0.2", "secret", connector=lambda host, port: fakeSocket)
    viewer = stream.attachViewer()

    stream._streamOnce()

    assert fakeSocket.sent == [buildAuthPacket("secret")]
    assert viewer.next(timeout=0.1) == frame
    assert fakeSocket.closed

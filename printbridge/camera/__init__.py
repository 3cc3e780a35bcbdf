"""Camera subsystem: direct JPEG streams, the RTSP relay and the local media gateway."""

from .gateway import MediaGateway, createGatewayApp
from .jpeg_stream import JpegStream, buildAuthPacket, extractFrames
from .manager import CameraManager, detectLocalIp
from .relay import RtspOrchestrator, relayStreamName

__all__ = [
    "CameraManager",
    "JpegStream",
    "MediaGateway",
    "RtspOrchestrator",
    "buildAuthPacket",
    "createGatewayApp",
    "detectLocalIp",
    "extractFrames",
    "relayStreamName",
]

"""Media Gateway: local HTTP server for MJPEG streams, snapshots and the relay proxy."""

from __future__ import annotations

import logging
import selectors
import socket
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlsplit

import requests
from flask import Flask, Response, request
from werkzeug.serving import make_server

from .jpeg_stream import JpegStream

log = logging.getLogger(__name__)

BOUNDARY = "frame"
MJPEG_MIMETYPE = f"multipart/x-mixed-replace; boundary={BOUNDARY}"
VIEWER_FRAME_WAIT_SECONDS = 15.0
PROXY_CHUNK_BYTES = 8192
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
    }
)

VIEWER_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Printer camera</title>
<style>
*{margin:0;padding:0}
html,body{width:100%;height:100%;overflow:hidden;background:#000;display:flex}
video-stream{display:block;flex:1 1 100%;width:100%;height:100%}
video{width:100%!important;height:100%!important;object-fit:contain!important}
</style>
<script type="module" src="video-stream.js"></script>
</head>
<body>
<script>
var src = new URLSearchParams(location.search).get("src");
function init() {
  var player = document.createElement("video-stream");
  player.src = new URL("api/ws?src=" + encodeURIComponent(src), location.href).href;
  document.body.appendChild(player);
}
if (src) {
  if (customElements.get("video-stream")) { init(); }
  else { customElements.whenDefined("video-stream").then(init); }
}
</script>
</body>
</html>
"""

StreamLookup = Callable[[str], Optional[JpegStream]]


def mjpegPart(frame: bytes) -> bytes:
    header = (
        f"--{BOUNDARY}\r\n"
        "Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(frame)}\r\n\r\n"
    ).encode("ascii")
    return header + frame + b"\r\n"


def isWebSocketUpgrade(environ: Dict[str, Any]) -> bool:
    return environ.get("HTTP_UPGRADE", "").lower() == "websocket"


def pipeSockets(first: socket.socket, second: socket.socket, bufferSize: int = 65536) -> None:
    """Copy bytes both ways until either side closes."""

    peers = {first: second, second: first}
    selector = selectors.DefaultSelector()
    selector.register(first, selectors.EVENT_READ)
    selector.register(second, selectors.EVENT_READ)
    try:
        while True:
            for key, _ in selector.select():
                data = key.fileobj.recv(bufferSize)
                if not data:
                    return
                peers[key.fileobj].sendall(data)
    except OSError as error:
        log.debug("WebSocket tunnel closed: %s", error)
    finally:
        selector.close()


class TunnelClosedResponse(Response):
    """Returned after a hijacked connection ends; tells werkzeug the socket is gone."""

    def __call__(self, environ, start_response):
        raise ConnectionError("WebSocket tunnel closed")


def _rawRequestHead(environ: Dict[str, Any], upstreamHost: str) -> bytes:
    path = environ.get("RAW_URI") or environ.get("REQUEST_URI")
    if not path:
        path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
        if environ.get("QUERY_STRING"):
            path += "?" + environ["QUERY_STRING"]
    lines = [f"{environ.get('REQUEST_METHOD', 'GET')} {path} HTTP/1.1", f"Host: {upstreamHost}"]
    for key, value in environ.items():
        if not key.startswith("HTTP_") or key == "HTTP_HOST":
            continue
        name = key[5:].replace("_", "-").title()
        lines.append(f"{name}: {value}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


def tunnelWebSocket(environ: Dict[str, Any], upstreamHost: str, upstreamPort: int):
    """Hand the client connection over to the relay and pipe it until either side closes."""

    clientSocket = environ.get("werkzeug.socket")
    if clientSocket is None:
        return Response("WebSocket upgrade not supported by this server", status=400)
    try:
        upstream = socket.create_connection((upstreamHost, upstreamPort), timeout=5.0)
    except OSError as error:
        log.debug("Relay WebSocket connect failed: %s", error)
        return Response("Relay not reachable", status=502)

    try:
        upstream.sendall(_rawRequestHead(environ, f"{upstreamHost}:{upstreamPort}"))
        upstream.settimeout(None)
        clientSocket.settimeout(None)
        pipeSockets(clientSocket, upstream)
    finally:
        upstream.close()
    return TunnelClosedResponse()


def proxyRequest(session: Any, relayBase: str, path: str) -> Response:
    """Stream one request through to the relay API unchanged."""

    url = f"{relayBase}{path}"
    if request.query_string:
        url = f"{url}?{request.query_string.decode('latin-1')}"
    headers = {name: value for name, value in request.headers.items() if name.lower() not in HOP_BY_HOP_HEADERS}
    body = request.get_data() or None

    try:
        upstream = session.request(
            request.method,
            url,
            headers=headers,
            data=body,
            stream=True,
            allow_redirects=False,
            timeout=(5.0, None),
        )
    except requests.RequestException as error:
        log.debug("Relay proxy request to %s failed: %s", url, error)
        return Response("Relay not reachable", status=502, mimetype="text/plain")

    responseHeaders: List[Tuple[str, str]] = [
        (name, value)
        for name, value in upstream.raw.headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]

    def generate() -> Iterator[bytes]:
        try:
            for chunk in upstream.raw.stream(PROXY_CHUNK_BYTES, decode_content=False):
                yield chunk
        finally:
            upstream.close()

    return Response(generate(), status=upstream.status_code, headers=responseHeaders)


def createGatewayApp(
    streamLookup: StreamLookup,
    relayBase: str = "http://127.0.0.1:1984",
    session: Any = None,
) -> Flask:
    """Build the gateway's Flask app around a serial -> JPEG stream lookup."""

    app = Flask(__name__)
    relaySession = session or requests.Session()
    relayAddress = urlsplit(relayBase)
    relayHost = relayAddress.hostname or "127.0.0.1"
    relayPort = relayAddress.port or 80

    @app.route("/stream/<serial>")
    def mjpegStream(serial: str):
        stream = streamLookup(serial)
        if stream is None:
            return Response("Stream not found", status=404, mimetype="text/plain")

        subscription = stream.attachViewer()
        firstFrame = stream.lastFrame

        def generate() -> Iterator[bytes]:
            try:
                if firstFrame:
                    yield mjpegPart(firstFrame)
                while True:
                    frame = subscription.next(timeout=VIEWER_FRAME_WAIT_SECONDS)
                    if frame is None:
                        if subscription.closed:
                            return
                        continue
                    yield mjpegPart(frame)
            finally:
                subscription.close()

        return Response(
            generate(),
            mimetype=MJPEG_MIMETYPE,
            headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
        )

    @app.route("/frame/<serial>")
    def snapshot(serial: str):
        stream = streamLookup(serial)
        frame = stream.lastFrame if stream is not None else None
        if not frame:
            return Response("No frame available", status=404, mimetype="text/plain")
        return Response(frame, mimetype="image/jpeg", headers={"Cache-Control": "no-cache"})

    @app.route("/stream.html")
    def viewerPage():
        return Response(VIEWER_PAGE, mimetype="text/html")

    # Werkzeug only routes upgrade requests to rules flagged websocket=True
    @app.route("/api/<path:subpath>", endpoint="relayWebSocket", websocket=True)
    def relayWebSocket(subpath: str):
        return tunnelWebSocket(request.environ, relayHost, relayPort)

    @app.route("/api/<path:subpath>", methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"])
    def relayApi(subpath: str):
        if isWebSocketUpgrade(request.environ):
            return tunnelWebSocket(request.environ, relayHost, relayPort)
        return proxyRequest(relaySession, relayBase, f"/api/{subpath}")

    @app.route("/<path:assetPath>")
    def relayAsset(assetPath: str):
        return proxyRequest(relaySession, relayBase, f"/{assetPath}")

    return app


class MediaGateway:
    """Runs the gateway app on a threaded werkzeug server in the background."""

    def __init__(
        self,
        streamLookup: StreamLookup,
        *,
        host: str = "0.0.0.0",
        port: int = 8765,
        relayBase: str = "http://127.0.0.1:1984",
        session: Any = None,
    ) -> None:
        self.host = host
        self.port = port
        self.app = createGatewayApp(streamLookup, relayBase, session)
        self._server: Any = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> bool:
        if self._server is not None:
            return True
        try:
            self._server = make_server(self.host, self.port, self.app, threaded=True)
        except OSError as error:
            log.error("Media gateway could not bind %s:%s: %s", self.host, self.port, error)
            return False
        self.port = self._server.server_port
        self._thread = threading.Thread(target=self._server.serve_forever, name="media-gateway", daemon=True)
        self._thread.start()
        log.info("Media gateway listening on http://%s:%s", self.host, self.port)
        return True

    def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        log.info("Media gateway stopped")

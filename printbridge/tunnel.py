"""Outbound tunnel process that publishes the media gateway on a public URL."""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Callable, Optional

from .backoff import TUNNEL_RESTART_POLICY
from .supervisor import ProcessSupervisor

log = logging.getLogger(__name__)

TUNNEL_NAME = "cloudflared"
TUNNEL_URL_PATTERN = re.compile(r"https://[a-z0-9-]+\.trycloudflare\.com")


class TunnelManager:
    """Runs the tunnel under supervision and reports each new public URL it prints."""

    def __init__(
        self,
        executable: Optional[str],
        gatewayPort: int,
        *,
        onUrl: Optional[Callable[[str], None]] = None,
        supervisorFactory: Callable[..., Any] = ProcessSupervisor,
    ) -> None:
        self._onUrl = onUrl
        self._publicUrl: Optional[str] = None
        self._lock = threading.Lock()
        self.supervisor: Any = None
        if executable:
            self.supervisor = supervisorFactory(
                TUNNEL_NAME,
                executable,
                ["tunnel", "--url", f"http://localhost:{gatewayPort}"],
                restartPolicy=TUNNEL_RESTART_POLICY,
                onOutput=self.handleOutput,
            )

    @property
    def available(self) -> bool:
        return self.supervisor is not None

    @property
    def publicUrl(self) -> Optional[str]:
        with self._lock:
            return self._publicUrl

    def start(self) -> bool:
        if self.supervisor is None:
            log.warning("%s is not installed, cameras are only reachable on the local network", TUNNEL_NAME)
            return False
        if self.supervisor.isRunning():
            return False
        return self.supervisor.start()

    def shutdown(self) -> None:
        if self.supervisor is not None:
            self.supervisor.shutdown()

    def handleOutput(self, line: str) -> None:
        match = TUNNEL_URL_PATTERN.search(line)
        if not match:
            return
        url = match.group(0)
        with self._lock:
            if url == self._publicUrl:
                return
            self._publicUrl = url
        if self.supervisor is not None:
            self.supervisor.markHealthy()
        log.info("Tunnel active: %s", url)
        if self._onUrl is not None:
            self._onUrl(url)

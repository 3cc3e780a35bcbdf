"""Exponential retry delays shared by every reconnect and restart path."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class BackoffPolicy:
    """``delay(attempt) = min(base * multiplier ** attempt, cap)``.

    ``maxExponent`` freezes growth after that many attempts (the camera stream
    stops growing at attempt 6 even before it reaches its cap).
    """

    baseSeconds: float
    multiplier: float = 2.0
    capSeconds: float = 120.0
    maxExponent: Optional[int] = None

    def delay(self, attempt: int) -> float:
        exponent = max(0, int(attempt))
        if self.maxExponent is not None:
            exponent = min(exponent, self.maxExponent)
        return min(self.baseSeconds * (self.multiplier ** exponent), self.capSeconds)


DEVICE_RECONNECT_POLICY = BackoffPolicy(baseSeconds=5.0, multiplier=2.0, capSeconds=120.0)
CAMERA_RECONNECT_POLICY = BackoffPolicy(
    baseSeconds=5.0, multiplier=1.5, capSeconds=30.0, maxExponent=6
)
RELAY_RESTART_POLICY = BackoffPolicy(baseSeconds=3.0, multiplier=1.0, capSeconds=3.0)
TUNNEL_RESTART_POLICY = BackoffPolicy(baseSeconds=5.0, multiplier=2.0, capSeconds=300.0)


class BackoffTracker:
    """Attempt counter bound to a policy; reset only after a confirmed success."""

    def __init__(self, policy: BackoffPolicy) -> None:
        self.policy = policy
        self._attempts = 0
        self._lock = threading.Lock()

    @property
    def attempts(self) -> int:
        with self._lock:
            return self._attempts

    def nextDelay(self) -> float:
        """Return the delay for the current failure and advance the counter."""
        with self._lock:
            delay = self.policy.delay(self._attempts)
            self._attempts += 1
            return delay

    def reset(self) -> None:
        with self._lock:
            self._attempts = 0

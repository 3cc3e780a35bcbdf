"""Logging helpers for rate-limiting repeated messages."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict

_LOG = logging.getLogger(__name__)
_LAST_EVENT_TIMES: Dict[str, float] = {}
_LOCK = threading.Lock()


def rateLimit(
    key: str,
    message: str,
    *args: object,
    level: str = "error",
    minSeconds: float = 5.0,
    logger: logging.Logger | None = None,
) -> bool:
    """Log *message* with rate-limiting enforced per *key*.

    Returns True when the message was emitted.
    """

    now = time.monotonic()
    with _LOCK:
        lastTime = _LAST_EVENT_TIMES.get(key)
        if lastTime is not None and now - lastTime < max(0.1, float(minSeconds)):
            return False
        _LAST_EVENT_TIMES[key] = now

    targetLogger = logger or _LOG
    logMethod = getattr(targetLogger, level, None)
    if not callable(logMethod):
        logMethod = targetLogger.error
    logMethod(message, *args)
    return True


def resetRateLimit(prefix: str) -> None:
    """Forget every window whose key starts with *prefix*."""

    with _LOCK:
        for key in [key for key in _LAST_EVENT_TIMES if key.startswith(prefix)]:
            del _LAST_EVENT_TIMES[key]


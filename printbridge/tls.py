"""TLS settings for printer endpoints, which serve self-signed certificates."""

from __future__ import annotations

import logging
import ssl

log = logging.getLogger(__name__)


def makeTlsContext(insecure: bool = True) -> ssl.SSLContext:
    """Create a TLS context tuned for the printers' MQTT and camera ports."""

    context = ssl.create_default_context()
    context.options |= ssl.OP_NO_TLSv1_3

    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    try:  # pragma: no cover - depends on OpenSSL cipher availability
        context.set_ciphers("DEFAULT:@SECLEVEL=1")
    except ssl.SSLError:
        log.debug("OpenSSL rejected SECLEVEL=1 cipher string, keeping defaults")

    return context

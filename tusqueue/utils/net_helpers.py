"""Network reachability checks used as job run constraints."""

from __future__ import annotations

import logging
import socket
import time
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}
_CONNECT_TIMEOUT = 3.0  # seconds


def endpoint_address(url: str) -> tuple[str, int] | None:
    """Return the ``(host, port)`` pair *url* points at, or ``None``.

    The port falls back to the scheme default (80/443) when the URL does not
    name one.  Unsupported schemes and host-less URLs yield ``None``.
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        logger.warning("Cannot parse endpoint URL: %r", url)
        return None
    scheme = parts.scheme.lower()
    if not parts.hostname or scheme not in _DEFAULT_PORTS:
        return None
    return parts.hostname, port or _DEFAULT_PORTS[scheme]


def endpoint_reachable(url: str, timeout: float = _CONNECT_TIMEOUT) -> bool:
    """Return True if a TCP connection to the host behind *url* opens.

    Stands in for a "network connected" constraint: an upload is only worth
    starting when the server's port accepts connections.
    """
    address = endpoint_address(url)
    if address is None:
        return False
    host, port = address
    try:
        start = time.monotonic()
        with socket.create_connection((host, port), timeout=timeout):
            pass
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug("Endpoint %s:%d reachable in %.1f ms", host, port, elapsed_ms)
        return True
    except (socket.timeout, ConnectionRefusedError, OSError) as exc:
        logger.debug("Endpoint %s:%d unreachable: %s", host, port, exc)
        return False

"""TCP socket tuning shared by control and transfer channels."""

import logging
import socket

from config import KEEPALIVE_COUNT, KEEPALIVE_IDLE, KEEPALIVE_INTERVAL

logger = logging.getLogger(__name__)


def _keepalive_options() -> list[tuple[int, int]]:
    """(option, value) pairs supported by this platform."""
    # macOS names the idle option TCP_KEEPALIVE
    idle = getattr(socket, "TCP_KEEPIDLE", None) or getattr(socket, "TCP_KEEPALIVE", None)
    options = [
        (idle, KEEPALIVE_IDLE),
        (getattr(socket, "TCP_KEEPINTVL", None), KEEPALIVE_INTERVAL),
        (getattr(socket, "TCP_KEEPCNT", None), KEEPALIVE_COUNT),
    ]
    return [(opt, value) for opt, value in options if opt is not None]


def configure_keepalive(sock) -> None:
    """
    Enable keepalive so an unresponsive peer is detected after
    KEEPALIVE_IDLE + KEEPALIVE_INTERVAL * KEEPALIVE_COUNT seconds.
    """
    if sock is None:
        return

    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

    for option, value in _keepalive_options():
        try:
            sock.setsockopt(socket.IPPROTO_TCP, option, value)
        except OSError as e:
            logger.debug(f"Keepalive option {option} unsupported: {e}")

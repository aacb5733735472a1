"""
Network availability monitor.

Polls whether this host has a usable, non-loopback network and notifies
subscribers when that changes.
"""

import asyncio
import logging
import socket
from typing import Callable

from config import NETWORK_POLL_INTERVAL

logger = logging.getLogger(__name__)


def probe_network() -> bool:
    """Whether any non-loopback address or an IPv4 route is available."""
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        if any(not ip.startswith("127.") for ip in ips):
            return True
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")

    # Connecting a UDP socket sends nothing but fails without a route
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return not s.getsockname()[0].startswith("127.")
    except OSError:
        return False


class NetworkMonitor:
    """Emits ``callback(monitor, available)`` when availability changes."""

    def __init__(
        self,
        interval: float = NETWORK_POLL_INTERVAL,
        probe: Callable[[], bool] = probe_network,
    ):
        self._interval = interval
        self._probe = probe
        self._handlers: dict[int, Callable] = {}
        self._next_id = 1
        self._task: asyncio.Task | None = None
        self.network_available = probe()

    def connect(self, callback: Callable) -> int:
        handler_id = self._next_id
        self._next_id += 1
        self._handlers[handler_id] = callback
        return handler_id

    def disconnect(self, handler_id: int) -> None:
        self._handlers.pop(handler_id, None)

    def set_available(self, available: bool) -> None:
        """Record the current availability, notifying on change."""
        if available == self.network_available:
            return

        self.network_available = available
        logger.info(f"Network {'available' if available else 'unavailable'}")
        for handler in list(self._handlers.values()):
            try:
                handler(self, available)
            except Exception:
                logger.exception("Network change handler failed")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._poll_loop())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                available = await asyncio.to_thread(self._probe)
            except Exception as e:
                logger.warning(f"Network probe failed: {e}")
                continue
            self.set_available(available)

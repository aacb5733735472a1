"""
Payload transfer helpers.

Binding the transfer listener to a free port of the transfer range and
copying payload bytes between a local file object and a TLS stream.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from config import CHUNK_SIZE
from protocol.exceptions import PortExhaustionError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, float], Awaitable[None]]

# Report progress at most this often
PROGRESS_INTERVAL = 0.2


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0):
        self._window = window
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = time.monotonic()
        self._samples.append((now, byte_count))
        # Trim old samples
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


async def bind_transfer_listener(
    client_connected_cb, port_min: int, port_max: int
) -> tuple[asyncio.Server, int]:
    """
    Start a TCP server on the first free port in ``[port_min, port_max]``.

    Raises:
        PortExhaustionError: every port in the range is in use
    """
    for port in range(port_min, port_max + 1):
        try:
            server = await asyncio.start_server(client_connected_cb, port=port)
        except OSError:
            continue

        logger.debug(f"Transfer listener bound to port {port}")
        return server, port

    raise PortExhaustionError(port_min, port_max)


async def send_stream(
    source,
    tls,
    size: int | None,
    progress: ProgressCallback | None = None,
) -> int:
    """
    Copy from the local ``source`` file object to the remote side until
    ``size`` bytes were written or the source is exhausted.

    Returns the number of bytes written.
    """
    tracker = SpeedTracker()
    last_progress_time = time.monotonic()
    written = 0

    while size is None or written < size:
        count = CHUNK_SIZE if size is None else min(CHUNK_SIZE, size - written)
        chunk = await asyncio.to_thread(source.read, count)
        if not chunk:
            break

        await tls.write(chunk)
        written += len(chunk)
        tracker.record(len(chunk))

        now = time.monotonic()
        if progress and now - last_progress_time >= PROGRESS_INTERVAL:
            await progress(written, tracker.get_speed())
            last_progress_time = now

    if progress:
        await progress(written, tracker.get_speed())
    return written


async def receive_stream(
    tls,
    sink,
    size: int | None,
    progress: ProgressCallback | None = None,
) -> int:
    """
    Copy from the remote side into the local ``sink`` file object until EOF
    or until ``size`` bytes were received.

    Returns the number of bytes received.
    """
    tracker = SpeedTracker()
    last_progress_time = time.monotonic()
    received = 0

    while size is None or received < size:
        count = CHUNK_SIZE if size is None else min(CHUNK_SIZE, size - received)
        chunk = await tls.read(count)
        if not chunk:
            break

        await asyncio.to_thread(sink.write, chunk)
        received += len(chunk)
        tracker.record(len(chunk))

        now = time.monotonic()
        if progress and now - last_progress_time >= PROGRESS_INTERVAL:
            await progress(received, tracker.get_speed())
            last_progress_time = now

    await asyncio.to_thread(sink.flush)
    if progress:
        await progress(received, tracker.get_speed())
    return received

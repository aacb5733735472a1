"""Registry of in-progress and active channels keyed by peer address."""

import logging

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """
    Maps ``lan://host:port`` addresses to channels.

    All methods are synchronous and must be called from the event loop
    thread, which makes every check-and-insert atomic.
    """

    def __init__(self) -> None:
        self._channels: dict[str, object] = {}

    def __contains__(self, address: str) -> bool:
        return address in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    def __iter__(self):
        return iter(list(self._channels.values()))

    def get(self, address: str):
        return self._channels.get(address)

    def add(self, channel) -> bool:
        """Register ``channel`` unless its address is taken. True on success."""
        if channel.address in self._channels:
            return False

        self._channels[channel.address] = channel
        return True

    def replace(self, channel) -> None:
        """Register ``channel``, superseding any channel with the same address."""
        previous = self._channels.get(channel.address)
        if previous is not None and previous is not channel:
            logger.debug(f"{channel.address} superseded by a new channel")
        self._channels[channel.address] = channel

    def remove(self, channel) -> bool:
        """Unregister ``channel`` if it is the one registered for its address."""
        if self._channels.get(channel.address) is channel:
            del self._channels[channel.address]
            return True
        return False

    def clear(self) -> None:
        self._channels.clear()

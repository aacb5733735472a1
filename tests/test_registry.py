"""
Tests for channel.registry module.
"""

from channel.registry import ChannelRegistry


class FakeChannel:
    def __init__(self, address):
        self.address = address


class TestChannelRegistry:

    def test_add_is_insert_if_absent(self):
        registry = ChannelRegistry()
        first = FakeChannel("lan://10.0.0.2:1716")
        second = FakeChannel("lan://10.0.0.2:1716")

        assert registry.add(first)
        assert not registry.add(second)
        assert registry.get("lan://10.0.0.2:1716") is first
        assert len(registry) == 1

    def test_replace_supersedes(self):
        registry = ChannelRegistry()
        first = FakeChannel("lan://10.0.0.2:1716")
        second = FakeChannel("lan://10.0.0.2:1716")

        registry.add(first)
        registry.replace(second)

        assert registry.get("lan://10.0.0.2:1716") is second

    def test_remove_only_registered_channel(self):
        """A superseded channel closing must not unregister its successor."""
        registry = ChannelRegistry()
        first = FakeChannel("lan://10.0.0.2:1716")
        second = FakeChannel("lan://10.0.0.2:1716")

        registry.add(first)
        registry.replace(second)

        assert not registry.remove(first)
        assert "lan://10.0.0.2:1716" in registry
        assert registry.remove(second)
        assert "lan://10.0.0.2:1716" not in registry

    def test_iteration_is_a_snapshot(self):
        registry = ChannelRegistry()
        channels = [FakeChannel(f"lan://10.0.0.{i}:1716") for i in range(3)]
        for channel in channels:
            registry.add(channel)

        for channel in registry:
            registry.remove(channel)

        assert len(registry) == 0

    def test_clear(self):
        registry = ChannelRegistry()
        registry.add(FakeChannel("lan://10.0.0.2:1716"))
        registry.clear()

        assert len(registry) == 0

"""
Devices: sinks for negotiated channels.

A :class:`Device` relays the packets of its attached channel to event
callbacks and sends packets back over it. It does not interpret packets.
"""

import asyncio
import logging

from discovery.models import DeviceInfo
from protocol.packet import Packet

logger = logging.getLogger(__name__)


class Device:
    """A remote device with at most one attached channel."""

    def __init__(self, device_id: str, emit=None):
        self.id = device_id
        self.channel = None
        self.identity: Packet | None = None
        self.connected = False
        self._emit = emit  # async fn(event_type, device, data)

    @property
    def name(self) -> str:
        if self.identity is not None:
            return self.identity.body.get("deviceName", self.id)
        return self.id

    def _notify(self, event_type: str, data: dict) -> None:
        if self._emit is not None:
            asyncio.ensure_future(self._emit(event_type, self, data))

    def handle_identity(self, packet: Packet) -> None:
        self.identity = packet

    async def handle_packet(self, packet: Packet) -> None:
        logger.debug(f"{self.name}: received {packet.type}")
        if self._emit is not None:
            await self._emit("packet", self, packet.model_dump(by_alias=True, exclude_none=True))

    def set_connected(self) -> None:
        self.connected = True
        logger.info(f"{self.name} connected via {self.channel.address}")
        self._notify("device_connected", {})

    def set_disconnected(self) -> None:
        self.connected = False
        self.channel = None
        logger.info(f"{self.name} disconnected")
        self._notify("device_disconnected", {})

    async def send_packet(self, packet: Packet) -> None:
        if self.channel is None:
            raise ConnectionError(f"{self.name} is not connected")
        await self.channel.send_packet(packet)

    def info(self, trusted: bool = False) -> DeviceInfo:
        body = self.identity.body if self.identity else {}
        return DeviceInfo(
            device_id=self.id,
            device_name=self.name,
            device_type=body.get("deviceType"),
            address=self.channel.address if self.channel else None,
            connected=self.connected,
            trusted=trusted,
            incoming_capabilities=body.get("incomingCapabilities", []),
            outgoing_capabilities=body.get("outgoingCapabilities", []),
        )


class DeviceManager:
    """Creates devices on demand and attaches negotiated channels to them."""

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._event_callbacks: list = []  # async fn(event_type, data)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, device: Device, data: dict) -> None:
        payload = {"device_id": device.id, "device_name": device.name, **data}
        for cb in self._event_callbacks:
            try:
                await cb(event_type, payload)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def get(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def get_devices(self) -> list[Device]:
        return list(self._devices.values())

    async def handle_channel(self, channel) -> None:
        """Channel-accepted callback for :class:`LanService`."""
        device_id = channel.identity.body["deviceId"]
        device = self._devices.get(device_id)
        if device is None:
            device = Device(device_id, emit=self._emit)
            self._devices[device_id] = device

        channel.attach(device)

"""Pydantic models describing channels and devices to the API."""

from pydantic import BaseModel


class ChannelInfo(BaseModel):
    """A registered channel."""
    address: str
    host: str
    port: int
    state: str
    role: str | None = None
    device_id: str | None = None
    device_name: str | None = None

    @classmethod
    def from_channel(cls, channel) -> "ChannelInfo":
        body = channel.identity.body if channel.identity else {}
        return cls(
            address=channel.address,
            host=channel.host,
            port=channel.port,
            state=channel.state.value,
            role=channel.role,
            device_id=body.get("deviceId"),
            device_name=body.get("deviceName"),
        )


class DeviceInfo(BaseModel):
    """A device that has had a channel attached."""
    device_id: str
    device_name: str
    device_type: str | None = None
    address: str | None = None
    connected: bool = False
    trusted: bool = False
    incoming_capabilities: list[str] = []
    outgoing_capabilities: list[str] = []


class BroadcastRequest(BaseModel):
    """API body for an identity broadcast."""
    address: str | None = None


class DiscoverableRequest(BaseModel):
    discoverable: bool

"""
Packet codec.

Packets travel as one UTF-8 JSON object per line:

    {"id": 1700000000000, "type": "kdeconnect.identity", "body": {...}}

Transfers add the top-level ``payloadSize`` and ``payloadTransferInfo``
fields.
"""

import json
import time
from contextlib import contextmanager
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from protocol.exceptions import EncodingError, MalformedPacketError


def _timestamp() -> int:
    return int(time.time() * 1000)


class Packet(BaseModel):
    """A control packet. The body stays mutable until it is sent."""

    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(default_factory=_timestamp)
    type: str
    body: dict[str, Any] = Field(default_factory=dict)
    payload_size: int | None = Field(default=None, alias="payloadSize")
    payload_transfer_info: dict[str, Any] | None = Field(
        default=None, alias="payloadTransferInfo"
    )

    def serialize(self) -> bytes:
        return encode(self)

    def __str__(self) -> str:
        return encode(self).decode("utf-8")


def _check_value(value: Any) -> None:
    """Reject strings with control characters anywhere in the value."""
    if isinstance(value, str):
        if any(ord(c) < 0x20 or ord(c) == 0x7F for c in value):
            raise EncodingError(f"Control character in value {value!r}")
    elif isinstance(value, dict):
        for key, item in value.items():
            _check_value(key)
            _check_value(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_value(item)


def encode(packet: Packet) -> bytes:
    """Serialize ``packet`` to a single newline-terminated line."""
    data = packet.model_dump(by_alias=True, exclude_none=True)
    _check_value(data)

    try:
        line = json.dumps(data, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Packet is not serializable: {e}") from e

    return line.encode("utf-8") + b"\n"


def decode(line: bytes | str) -> Packet:
    """Parse exactly one line into a :class:`Packet`."""
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPacketError(f"Invalid UTF-8: {e}") from e

    line = line.strip()
    if "\n" in line:
        raise MalformedPacketError("More than one line")

    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise MalformedPacketError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedPacketError("Packet is not an object")
    if not isinstance(data.get("type"), str):
        raise MalformedPacketError("Packet has no type")
    if not isinstance(data.get("body"), dict):
        raise MalformedPacketError("Packet has no body")

    try:
        return Packet.model_validate(data)
    except ValidationError as e:
        raise MalformedPacketError(str(e)) from e


@contextmanager
def transient_fields(packet: Packet, **fields: Any) -> Iterator[Packet]:
    """Set body fields for one send, removing them again afterwards."""
    packet.body.update(fields)
    try:
        yield packet
    finally:
        for key in fields:
            packet.body.pop(key, None)

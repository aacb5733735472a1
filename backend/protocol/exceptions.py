"""Errors raised by the LAN backend."""


class LanError(Exception):
    """Base class for all LAN backend errors."""


class MalformedPacketError(LanError):
    """A line could not be parsed as a packet."""


class EncodingError(LanError):
    """A packet cannot be written as a single line."""


class IdentityError(LanError):
    """The peer's identity packet is missing or has no device id."""


class DiscoveryBindError(LanError):
    """Neither an IPv6 nor an IPv4 UDP socket could be bound."""


class PortExhaustionError(LanError):
    """Every port of the transfer range is already in use."""

    def __init__(self, port_min: int, port_max: int):
        super().__init__(f"No free transfer port between {port_min} and {port_max}")
        self.port_min = port_min
        self.port_max = port_max


class AuthenticationError(LanError):
    """
    The certificate presented by a peer does not match the one pinned for
    its device id. This is reported to the user as a possible spoofing
    attempt.
    """

    def __init__(self, device_name: str | None, device_host: str | None):
        super().__init__(
            f"Certificate mismatch for '{device_name}' at {device_host}"
        )
        self.device_name = device_name
        self.device_host = device_host


class LineTooLongError(LanError):
    """A peer sent more than the line limit without a newline."""

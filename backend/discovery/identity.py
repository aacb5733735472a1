"""
Identity Service: this device's id, name and certificate.
"""

import logging
import uuid
from pathlib import Path

from config import (
    CONFIG_DIR,
    DEVICE_NAME,
    DEVICE_TYPE,
    IDENTITY_PACKET_TYPE,
    PROTOCOL_VERSION,
)
from protocol.packet import Packet
from security.crypto import Certificate, load_or_generate_certificate

logger = logging.getLogger(__name__)


class IdentityService:
    """
    Manages the local identity packet and the certificate backing it.

    The device id is the common name of the certificate, so both are
    created together on first run and stay stable afterwards.
    """

    def __init__(
        self,
        config_dir: Path = CONFIG_DIR,
        device_name: str = DEVICE_NAME,
        incoming_capabilities: list[str] | None = None,
        outgoing_capabilities: list[str] | None = None,
    ):
        self._cert_path = Path(config_dir) / "certificate.pem"
        self._key_path = Path(config_dir) / "private.pem"

        self.certificate: Certificate = load_or_generate_certificate(
            self._cert_path, self._key_path, uuid.uuid4().hex
        )

        self.packet = Packet(
            type=IDENTITY_PACKET_TYPE,
            body={
                "deviceId": self.device_id,
                "deviceName": device_name,
                "deviceType": DEVICE_TYPE,
                "protocolVersion": PROTOCOL_VERSION,
                "incomingCapabilities": list(incoming_capabilities or []),
                "outgoingCapabilities": list(outgoing_capabilities or []),
            },
        )

        logger.info(f"Initialized IdentityService for {device_name} ({self.device_id})")

    @property
    def device_id(self) -> str:
        return self.certificate.common_name

    @property
    def device_name(self) -> str:
        return self.packet.body["deviceName"]

    @device_name.setter
    def device_name(self, name: str) -> None:
        self.packet.body["deviceName"] = name

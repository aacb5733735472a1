"""Trust store for certificates pinned to device ids."""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from config import CONFIG_DIR
from security.crypto import certificate_fingerprint, der_to_pem, pem_to_der

logger = logging.getLogger(__name__)


class TrustedDevice(BaseModel):
    """A device whose certificate has been pinned."""
    device_id: str
    device_name: str
    certificate_pem: str

    @property
    def fingerprint(self) -> str:
        return certificate_fingerprint(pem_to_der(self.certificate_pem))


class TrustStore:
    """Persists the pinned certificate of each known device."""

    def __init__(self, config_dir: Path = CONFIG_DIR):
        self._store_path = Path(config_dir) / "trusted_devices.json"
        self._devices: dict[str, TrustedDevice] = {}
        self._load()

    def _load(self) -> None:
        if not self._store_path.exists():
            return

        try:
            data = json.loads(self._store_path.read_text())
            for device_id, device_data in data.items():
                self._devices[device_id] = TrustedDevice(**device_data)
            logger.info(f"Loaded {len(self._devices)} trusted devices.")
        except Exception as e:
            logger.error(f"Failed to load trusted devices: {e}")

    def _save(self) -> None:
        try:
            data = {
                device_id: device.model_dump()
                for device_id, device in self._devices.items()
            }
            self._store_path.write_text(json.dumps(data, indent=2))
        except OSError as e:
            logger.error(f"Failed to save trusted devices: {e}")

    def get_device(self, device_id: str) -> Optional[TrustedDevice]:
        return self._devices.get(device_id)

    def get_certificate(self, device_id: str) -> Optional[str]:
        """The PEM certificate pinned for ``device_id``, if any."""
        device = self._devices.get(device_id)
        return device.certificate_pem if device else None

    def pin_certificate(self, device_id: str, device_name: str, certificate: str | bytes) -> None:
        """Pin a certificate, given as PEM text or DER bytes."""
        pem = der_to_pem(certificate) if isinstance(certificate, bytes) else certificate
        self._devices[device_id] = TrustedDevice(
            device_id=device_id,
            device_name=device_name,
            certificate_pem=pem,
        )
        self._save()
        logger.info(f"Pinned certificate for {device_name} ({device_id})")

    def unpin(self, device_id: str) -> bool:
        device = self._devices.pop(device_id, None)
        if device is None:
            return False

        self._save()
        logger.info(f"Unpinned certificate for {device.device_name} ({device_id})")
        return True

    def list_devices(self) -> list[TrustedDevice]:
        return list(self._devices.values())

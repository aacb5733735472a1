"""
Pytest configuration and fixtures for LanLink tests.
"""

import os
import tempfile

# config creates its directory at import; keep it out of the home directory
os.environ.setdefault("LANLINK_CONFIG_DIR", tempfile.mkdtemp(prefix="lanlink-"))

import pytest

from discovery.identity import IdentityService
from discovery.network import NetworkMonitor
from discovery.service import LanService
from discovery.trust import TrustStore
from helpers import unused_port


@pytest.fixture
def make_service(tmp_path):
    """Factory for stopped LanService instances with their own identity."""
    services = []

    def factory(name: str, *, port: int | None = None, available: bool = True, **kwargs):
        config_dir = tmp_path / name
        config_dir.mkdir(exist_ok=True)
        identity = IdentityService(config_dir=config_dir, device_name=name)
        trust_store = TrustStore(config_dir=config_dir)
        monitor = NetworkMonitor(probe=lambda: available)
        service = LanService(
            identity,
            trust_store,
            port=port or unused_port(),
            network_monitor=monitor,
            **kwargs,
        )
        services.append(service)
        return service

    yield factory

    for service in services:
        service.channels.clear()


@pytest.fixture
def identity(tmp_path):
    return IdentityService(config_dir=tmp_path, device_name="Test Device")

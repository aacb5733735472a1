"""REST API routes for LanLink."""

import logging

from fastapi import APIRouter, HTTPException

from discovery.models import BroadcastRequest, ChannelInfo, DiscoverableRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_lan_service = None
_device_manager = None


def init_routes(lan_service, device_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _lan_service, _device_manager
    _lan_service = lan_service
    _device_manager = device_manager


# --- Identity ---

@router.get("/identity")
async def get_identity():
    """Return this device's identity packet and certificate fingerprint."""
    return {
        "identity": _lan_service.identity.packet.model_dump(by_alias=True, exclude_none=True),
        "fingerprint": _lan_service.certificate.fingerprint,
        "port": _lan_service.port,
        "discoverable": _lan_service.discoverable,
        "network_available": _lan_service.network_available,
    }


# --- Channels and devices ---

@router.get("/channels")
async def list_channels():
    """Return the channels currently in the registry."""
    return {
        "channels": [
            ChannelInfo.from_channel(c).model_dump() for c in _lan_service.channels
        ]
    }


@router.get("/devices")
async def list_devices():
    """Return devices that have had a channel attached."""
    trust_store = _lan_service.trust_store
    devices = _device_manager.get_devices()
    return {
        "devices": [
            d.info(trusted=trust_store.get_certificate(d.id) is not None).model_dump()
            for d in devices
        ]
    }


# --- Discovery ---

@router.post("/broadcast")
async def broadcast(body: BroadcastRequest):
    """Send our identity to the LAN, or to a single address."""
    if not _lan_service.network_available:
        raise HTTPException(status_code=503, detail="Network unavailable")

    _lan_service.broadcast(body.address)
    return {"status": "sent"}


@router.put("/discoverable")
async def set_discoverable(body: DiscoverableRequest):
    _lan_service.discoverable = body.discoverable
    logger.info(f"Discoverable set to {body.discoverable}")
    return {"discoverable": _lan_service.discoverable}


# --- Transfers ---

@router.get("/transfers")
async def list_transfers():
    """Return all transfers (active + finished)."""
    transfers = _lan_service.transfers.get_transfers()
    return {"transfers": [t.model_dump(mode="json") for t in transfers]}


@router.post("/transfers/{transfer_id}/cancel")
async def cancel_transfer(transfer_id: str):
    if not _lan_service.transfers.cancel(transfer_id):
        raise HTTPException(status_code=404, detail="Transfer not found")
    return {"status": "cancelled"}

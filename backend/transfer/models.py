"""Pydantic models for payload transfers."""

from enum import Enum

from pydantic import BaseModel


class TransferState(str, Enum):
    """All possible states for a payload transfer."""
    PENDING = "pending"
    LISTENING = "listening"
    CONNECTING = "connecting"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class TransferInfo(BaseModel):
    """Progress of a single transfer, exposed to the API."""
    transfer_id: str
    direction: TransferDirection
    host: str
    port: int | None = None
    size: int | None = None
    checksum: str | None = None
    transferred_bytes: int = 0
    state: TransferState = TransferState.PENDING
    peer_device_id: str | None = None
    peer_device_name: str | None = None
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    error_message: str | None = None

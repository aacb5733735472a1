"""
Transfer Manager: tracks live transfers and a bounded history.

Transfers register here for their lifetime so they can be listed and
cancelled from outside, and report state and progress through event
callbacks.
"""

import logging

from config import TRANSFER_HISTORY_LIMIT
from transfer.models import TransferDirection, TransferInfo, TransferState

logger = logging.getLogger(__name__)


class TransferManager:
    """Tracks live transfers and relays their events."""

    def __init__(self, history_limit: int = TRANSFER_HISTORY_LIMIT) -> None:
        self.history_limit = history_limit
        self._transfers: dict[str, object] = {}
        self._history: dict[str, TransferInfo] = {}
        self._event_callbacks: list = []  # async fn(event_type, data)

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._transfers

    def __len__(self) -> int:
        return len(self._transfers)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def track(self, transfer) -> None:
        self._transfers[transfer.transfer_id] = transfer
        self._history[transfer.transfer_id] = transfer.info
        self._prune_history()

    def untrack(self, transfer) -> None:
        self._transfers.pop(transfer.transfer_id, None)
        self._prune_history()

    def _prune_history(self) -> None:
        """Drop the oldest finished transfers beyond ``history_limit``."""
        excess = len(self._history) - self.history_limit
        if excess <= 0:
            return

        finished = [tid for tid in self._history if tid not in self._transfers]
        for transfer_id in finished[:excess]:
            del self._history[transfer_id]

    def get(self, transfer_id: str):
        return self._transfers.get(transfer_id)

    def get_transfers(self) -> list[TransferInfo]:
        """Return all transfers, live and finished."""
        return list(self._history.values())

    def cancel(self, transfer_id: str) -> bool:
        """Cancel a live transfer. False if it is unknown or already finished."""
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            return False

        logger.info(f"Cancelling transfer {transfer_id}")
        transfer.close()
        return True

    def cancel_all(self) -> None:
        for transfer in list(self._transfers.values()):
            transfer.close()

    async def emit_progress(self, info: TransferInfo) -> None:
        await self._emit("transfer_progress", info.model_dump(mode="json"))

    async def emit_state(self, info: TransferInfo) -> None:
        """Called by transfers on state changes."""
        await self._emit("transfer_state", info.model_dump(mode="json"))

        # Generate user-facing notifications
        notification = None
        label = info.checksum or info.transfer_id
        if info.state == TransferState.COMPLETED:
            direction = "sent" if info.direction == TransferDirection.UPLOAD else "received"
            notification = {
                "type": "success",
                "message": f"Payload {label} {direction} successfully",
            }
        elif info.state == TransferState.FAILED:
            notification = {
                "type": "error",
                "message": f"Transfer of {label} failed: {info.error_message}",
            }
        elif info.state == TransferState.CANCELLED:
            notification = {
                "type": "info",
                "message": f"Transfer of {label} cancelled",
            }

        if notification:
            await self._emit("notification", notification)

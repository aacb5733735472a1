"""
LAN transfer channel.

A transfer is a short-lived channel carrying exactly one payload. The
uploading side listens on a port of the transfer range and announces it in
the packet describing the payload; the downloading side connects to it.
Neither side exchanges identity packets: the peer identity is inherited
from the control channel the transfer was created from.
"""

import asyncio
import logging
import uuid

from channel.channel import Channel
from protocol.packet import Packet
from transfer.models import TransferDirection, TransferInfo, TransferState
from transfer.service import bind_transfer_listener, receive_stream, send_stream

logger = logging.getLogger(__name__)


class Transfer(Channel):
    """
    Args:
        device: the device owning this transfer
        size: payload size in bytes
        checksum: payload hash announced to the peer
        source: readable binary file object (upload)
        sink: writable binary file object (download)
        port: the peer's transfer port (download)
    """

    def __init__(
        self,
        service,
        *,
        device,
        size: int | None = None,
        checksum: str | None = None,
        source=None,
        sink=None,
        **params,
    ):
        super().__init__(service, **params)
        self.device = device
        self.size = size
        self.checksum = checksum
        self.source = source
        self.sink = sink
        self.direction: TransferDirection | None = None
        self.transfer_id = str(uuid.uuid4())

        body = self.identity.body if self.identity else {}
        self.info = TransferInfo(
            transfer_id=self.transfer_id,
            direction=TransferDirection.UPLOAD if source is not None else TransferDirection.DOWNLOAD,
            host=self.host,
            port=params.get("port"),
            size=size,
            checksum=checksum,
            peer_device_id=body.get("deviceId"),
            peer_device_name=body.get("deviceName"),
        )

        # Tracked so the transfer can be cancelled from outside
        self.service.transfers.track(self)

    @property
    def device_name(self) -> str:
        return getattr(self.device, "name", None) or self.info.peer_device_name or self.host

    async def _set_transfer_state(self, state: TransferState, error: str | None = None) -> None:
        if self.info.state in (TransferState.COMPLETED, TransferState.FAILED, TransferState.CANCELLED):
            return
        self.info.state = state
        if error is not None:
            self.info.error_message = error
        await self.service.transfers.emit_state(self.info)

    async def _on_progress(self, transferred: int, speed: float) -> None:
        self.info.transferred_bytes = transferred
        self.info.speed_bps = speed
        if self.size:
            self.info.progress_percent = transferred / self.size * 100
        await self.service.transfers.emit_progress(self.info)

    def _close_local(self) -> None:
        stream = self.source if self.direction is TransferDirection.UPLOAD else self.sink
        if stream is None:
            return
        try:
            stream.close()
        except OSError as e:
            logger.debug(f"Error closing local stream: {e}")

    def close(self) -> None:
        """Untrack the transfer and close its streams."""
        self.service.transfers.untrack(self)
        super().close()

    async def download(self) -> bool:
        """
        Connect to the peer's transfer port and read the payload into the
        local sink. The channel and the sink are closed whether or not the
        transfer succeeds.

        Returns:
            True if the whole payload was received.
        """
        self.direction = TransferDirection.DOWNLOAD
        result = False

        try:
            await self._set_transfer_state(TransferState.CONNECTING)
            self._reader, self._writer = await self.cancellable.run(
                asyncio.open_connection(self.host, self.port)
            )
            self._init_socket(self._writer)
            await self.authenticate(server_side=False)

            await self._set_transfer_state(TransferState.TRANSFERRING)
            received = await self.cancellable.run(
                receive_stream(self._tls, self.sink, self.size, self._on_progress)
            )
            result = self.size is None or received == self.size
            if not result:
                raise ConnectionError(f"Received {received} of {self.size} bytes")

            await self._set_transfer_state(TransferState.COMPLETED)
        except Exception as e:
            logger.error(f"Download from {self.device_name} failed: {e!r}")
            result = False
            state = TransferState.CANCELLED if self.cancellable.cancelled else TransferState.FAILED
            await self._set_transfer_state(state, str(e))
        finally:
            self.close()
            self._close_local()

        return result

    async def upload(self, packet: Packet) -> bool:
        """
        Listen on the first free transfer port, send ``packet`` with the
        payload transfer info and write the local source to the peer once
        it connects. The channel and the source are closed whether or not
        the transfer succeeds.

        Returns:
            True if the whole payload was sent.
        """
        self.direction = TransferDirection.UPLOAD
        result = False
        server = None

        loop = asyncio.get_running_loop()
        accepted: asyncio.Future = loop.create_future()

        async def on_connection(reader, writer):
            # Exactly one connection is accepted
            if accepted.done():
                writer.close()
                return
            accepted.set_result((reader, writer))

        try:
            port_min, port_max = self.service.transfer_port_range
            server, port = await bind_transfer_listener(on_connection, port_min, port_max)
            self.port = port
            self.info.port = port
            await self._set_transfer_state(TransferState.LISTENING)

            # The peer may connect before send_packet() returns; the
            # connection waits in ``accepted`` until we get there
            packet.body["payloadHash"] = self.checksum
            packet.payload_size = self.size
            packet.payload_transfer_info = {"port": port}
            await self.device.send_packet(packet)

            self._reader, self._writer = await self.cancellable.run(accepted)
            server.close()
            self._init_socket(self._writer)
            await self.authenticate(server_side=True)

            await self._set_transfer_state(TransferState.TRANSFERRING)
            written = await self.cancellable.run(
                send_stream(self.source, self._tls, self.size, self._on_progress)
            )
            result = self.size is None or written == self.size
            if not result:
                raise ConnectionError(f"Sent {written} of {self.size} bytes")

            await self._set_transfer_state(TransferState.COMPLETED)
        except Exception as e:
            logger.error(f"Upload to {self.device_name} failed: {e!r}")
            result = False
            state = TransferState.CANCELLED if self.cancellable.cancelled else TransferState.FAILED
            await self._set_transfer_state(state, str(e))
        finally:
            if server is not None:
                server.close()
            if accepted.done() and not accepted.cancelled() and self._writer is None:
                accepted.result()[1].close()
            self.close()
            self._close_local()

        return result


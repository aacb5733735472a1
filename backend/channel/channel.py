"""
LAN channel.

A channel owns one TCP connection to a peer. It exchanges identity packets
in plain text, upgrades the connection to TLS and then carries control
packets for exactly one device.

The TLS role is the inverse of the TCP role: the side that accepted the
TCP connection is the TLS client and the side that opened it is the TLS
server. Peer implementations rely on this convention.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Callable

from OpenSSL import SSL

from channel.sockets import configure_keepalive
from config import DEFAULT_PORT
from protocol.exceptions import (
    AuthenticationError,
    IdentityError,
    LineTooLongError,
    MalformedPacketError,
)
from protocol.packet import Packet, decode, encode, transient_fields
from security.crypto import certificates_match, create_tls_context
from security.tls import TlsStream

logger = logging.getLogger(__name__)


class ChannelState(str, Enum):
    """Channel lifecycle. States only ever move forward."""
    NEW = "new"
    IDENTITY_EXCHANGED = "identity_exchanged"
    TLS_NEGOTIATING = "tls_negotiating"
    TLS_AUTHENTICATED = "tls_authenticated"
    ATTACHED = "attached"
    CLOSED = "closed"


_STATE_ORDER = list(ChannelState)


class Cancellable:
    """Cancellation token shared by every pending operation of a channel."""

    def __init__(self) -> None:
        self._cancelled = False
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[int, Callable[[], None]] = {}
        self._next_id = 1

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def connect(self, callback: Callable[[], None]) -> int:
        """Call ``callback`` on cancellation. Returns a handler id."""
        if self._cancelled:
            callback()
            return 0

        handler_id = self._next_id
        self._next_id += 1
        self._handlers[handler_id] = callback
        return handler_id

    def disconnect(self, handler_id: int) -> None:
        self._handlers.pop(handler_id, None)

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Cancel ``task`` together with this token."""
        if self._cancelled:
            task.cancel()
            return task

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, awaitable):
        """
        Await ``awaitable`` as a task aborted by :meth:`cancel`.

        Raises:
            ConnectionAbortedError: the token was fired while waiting
        """
        task = self.track(asyncio.ensure_future(awaitable))
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._cancelled and not (current and current.cancelling()):
                raise ConnectionAbortedError("Operation cancelled") from None
            raise

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True

        current = asyncio.current_task() if _loop_running() else None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        handlers = list(self._handlers.values())
        self._handlers.clear()
        for handler in handlers:
            try:
                handler()
            except Exception:
                logger.exception("Cancellation handler failed")


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
        return True
    except RuntimeError:
        return False


class Channel:
    """
    A control channel to one peer.

    The attached device is duck-typed; it must provide:

    - ``channel``: the currently attached channel or ``None``
    - ``handle_identity(packet)``
    - ``async handle_packet(packet)``
    - ``set_connected()`` and ``set_disconnected()``
    """

    def __init__(
        self,
        service,
        *,
        host: str,
        port: int | None = None,
        identity: Packet | None = None,
        certificate=None,
    ):
        self.service = service
        self.certificate = certificate or service.certificate
        self.host = host
        self._port = port
        self.identity = identity
        self.peer_certificate: bytes | None = None
        self.role: str | None = None  # TLS role, "client" or "server"
        self.state = ChannelState.NEW
        self.device = None
        self.uuid = str(uuid.uuid4())
        self.cancellable = Cancellable()

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._tls: TlsStream | None = None
        self._disconnect_id = 0
        self._receive_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.address} {self.state.value}>"

    @property
    def address(self) -> str:
        return f"lan://{self.host}:{self.port}"

    @property
    def port(self) -> int:
        """Explicit port, else the identity's ``tcpPort``, else DEFAULT_PORT."""
        if self._port is not None:
            return self._port
        if self.identity is not None and self.identity.body.get("tcpPort"):
            return int(self.identity.body["tcpPort"])
        return DEFAULT_PORT

    @port.setter
    def port(self, port: int) -> None:
        self._port = port

    @property
    def closed(self) -> bool:
        return self.state is ChannelState.CLOSED

    @property
    def remote_host(self) -> str:
        if self._writer is not None:
            peername = self._writer.get_extra_info("peername")
            if peername:
                return peername[0]
        return self.host

    def _set_state(self, state: ChannelState) -> None:
        if self.state is ChannelState.CLOSED:
            raise ConnectionAbortedError(f"{self.address} is closed")
        if state is not ChannelState.CLOSED and (
            _STATE_ORDER.index(state) <= _STATE_ORDER.index(self.state)
        ):
            raise RuntimeError(
                f"Invalid channel transition {self.state.value} -> {state.value}"
            )
        self.state = state

    def _init_socket(self, writer: asyncio.StreamWriter) -> None:
        configure_keepalive(writer.get_extra_info("socket"))

    async def _receive_ident(self, reader: asyncio.StreamReader) -> None:
        """Read the peer's plain-text identity packet."""
        try:
            line = await self.cancellable.run(reader.readline())
        except ValueError as e:
            raise IdentityError(f"Identity line too long: {e}") from e

        if not line:
            raise IdentityError("Connection closed before identity was received")

        try:
            self.identity = decode(line)
        except MalformedPacketError as e:
            raise IdentityError(f"Invalid identity packet: {e}") from e

        if not self.identity.body.get("deviceId"):
            raise IdentityError(f"{self.identity.body.get('deviceName')}: missing deviceId")

        self._set_state(ChannelState.IDENTITY_EXCHANGED)

    async def _send_ident(self, writer: asyncio.StreamWriter) -> None:
        """Write our identity packet, advertising the listening port."""
        identity = self.service.identity.packet
        with transient_fields(identity, tcpPort=self.service.port):
            data = encode(identity)

        writer.write(data)
        await self.cancellable.run(writer.drain())
        self._set_state(ChannelState.IDENTITY_EXCHANGED)

    def _authentication_error(self) -> AuthenticationError:
        device_name = self.identity.body.get("deviceName") if self.identity else None
        error = AuthenticationError(device_name, self.remote_host)
        logger.warning(f"Possible impersonation: {error}")
        self.service.notify_error(error)
        return error

    async def authenticate(self, server_side: bool) -> None:
        """
        Upgrade the connection to TLS and verify the peer certificate
        against the one pinned for its device id.

        Both roles must present a certificate. Without a pin, whatever the
        peer presents is accepted and exposed as ``peer_certificate``.

        Raises:
            AuthenticationError: the peer's certificate differs from the pin
            OpenSSL.SSL.Error: the handshake failed
        """
        self.role = "server" if server_side else "client"
        self._set_state(ChannelState.TLS_NEGOTIATING)

        device_id = self.identity.body.get("deviceId") if self.identity else None
        pinned = self.service.trust_store.get_certificate(device_id) if device_id else None

        context = create_tls_context(self.certificate)
        self._tls = TlsStream(self._reader, self._writer, context, server_side)
        await self.cancellable.run(self._tls.handshake())

        self.peer_certificate = self._tls.peer_certificate
        if self.peer_certificate is None:
            if pinned is not None:
                raise self._authentication_error()
            raise ConnectionError(f"{self.address}: peer presented no certificate")

        # No pinned certificate: trusted on first use
        if pinned is not None and not certificates_match(pinned, self.peer_certificate):
            raise self._authentication_error()

        self._set_state(ChannelState.TLS_AUTHENTICATED)

    async def accept_incoming(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> "Channel":
        """Negotiate a connection accepted by our TCP listener."""
        logger.debug(f"{self.address} ({self.uuid})")
        if self.state is not ChannelState.NEW:
            raise RuntimeError(f"{self.address} already negotiated")

        self._reader, self._writer = reader, writer
        self.service.channels.replace(self)

        try:
            self._init_socket(writer)
            await self._receive_ident(reader)
            await self.authenticate(server_side=False)
        except (Exception, asyncio.CancelledError):
            self.close()
            raise

        return self

    async def initiate_outgoing(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> "Channel":
        """Negotiate a connection we opened after receiving an identity."""
        logger.debug(f"{self.address} ({self.uuid})")
        if self.state is not ChannelState.NEW:
            raise RuntimeError(f"{self.address} already negotiated")

        self._reader, self._writer = reader, writer
        self.service.channels.add(self)

        try:
            self._init_socket(writer)
            await self._send_ident(writer)
            await self.authenticate(server_side=True)
        except (Exception, asyncio.CancelledError):
            self.close()
            raise

        return self

    def attach(self, device) -> None:
        """Attach to ``device`` as the channel used for packet exchange."""
        try:
            if self.state is not ChannelState.TLS_AUTHENTICATED:
                raise RuntimeError(f"Cannot attach {self.address} in state {self.state.value}")

            # Detach the previous channel without reporting a disconnect
            previous = device.channel
            if previous is not None and previous is not self:
                logger.debug(f"{previous.address} ({previous.uuid}) => {self.address} ({self.uuid})")
                previous.cancellable.disconnect(previous._disconnect_id)
                previous.close()

            device.channel = self
            self.device = device
            self._disconnect_id = self.cancellable.connect(device.set_disconnected)
            device.handle_identity(self.identity)

            self._set_state(ChannelState.ATTACHED)
            self._receive_task = self.cancellable.track(
                asyncio.create_task(self._receive(device))
            )
            device.set_connected()
        except Exception as e:
            logger.error(f"Failed to attach {self.address}: {e}", exc_info=True)
            self.close()

    async def _receive(self, device) -> None:
        """Deliver packets to ``device`` until the stream ends."""
        try:
            while True:
                line = await self._tls.readline()
                if not line:
                    logger.debug(f"{self.address} closed by peer")
                    break

                try:
                    packet = decode(line)
                except MalformedPacketError as e:
                    logger.warning(f"{self.address}: dropping malformed packet: {e}")
                    continue

                try:
                    await device.handle_packet(packet)
                except Exception as e:
                    logger.error(f"{self.address}: packet handler failed: {e}", exc_info=True)
        except LineTooLongError as e:
            logger.warning(f"{self.address}: {e}")
        except (OSError, SSL.Error) as e:
            logger.debug(f"{self.address}: receive error: {e}")
        finally:
            self.close()

    async def send_packet(self, packet: Packet) -> None:
        """Send a control packet over the encrypted connection."""
        if self._tls is None or self.closed:
            raise ConnectionError(f"{self.address} is not connected")

        data = encode(packet)
        async with self._write_lock:
            await self.cancellable.run(self._tls.write(data))

    def close(self) -> None:
        """Close all streams of this channel, silencing any errors."""
        if self.closed:
            return

        logger.debug(f"{self.address} ({self.uuid})")
        self._set_state(ChannelState.CLOSED)

        # Abort queued operations
        self.cancellable.cancel()
        self.service.channels.remove(self)

        for stream in (self._tls, self._writer):
            if stream is None:
                continue
            try:
                stream.close()
            except Exception as e:
                logger.debug(f"{self.address}: error while closing: {e}")

    def create_transfer(self, **params):
        """Create a transfer channel to the same peer."""
        from transfer.channel import Transfer

        return Transfer(
            self.service,
            host=self.host,
            identity=self.identity,
            certificate=self.certificate,
            **params,
        )

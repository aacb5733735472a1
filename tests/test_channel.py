"""
Tests for channel.channel module.

Negotiation tests run both ends of a channel over localhost.
"""

import asyncio
import datetime
import uuid

import pytest
from OpenSSL import SSL

from channel.channel import Cancellable, Channel, ChannelState
from config import DEFAULT_PORT, IDENTITY_PACKET_TYPE
from discovery.device import Device
from protocol.exceptions import AuthenticationError, IdentityError
from protocol.packet import Packet
from security.crypto import generate_certificate
from security.tls import TlsStream

from helpers import eventually


async def negotiate(acceptor, connector):
    """
    Connect ``connector`` to a listener owned by ``acceptor``.

    Returns (incoming_channels, outgoing, results, server) where results
    holds the outcome of initiate_outgoing and accept_incoming.
    """
    loop = asyncio.get_running_loop()
    accepted = loop.create_future()
    incoming = []

    async def on_connection(reader, writer):
        channel = Channel(acceptor, host="127.0.0.1", port=DEFAULT_PORT)
        incoming.append(channel)
        try:
            await channel.accept_incoming(reader, writer)
        except Exception as e:
            accepted.set_exception(e)
        else:
            accepted.set_result(channel)

    server = await asyncio.start_server(on_connection, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    outgoing = Channel(
        connector,
        host="127.0.0.1",
        port=port,
        identity=acceptor.identity.packet.model_copy(deep=True),
    )
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    results = await asyncio.wait_for(
        asyncio.gather(
            outgoing.initiate_outgoing(reader, writer),
            accepted,
            return_exceptions=True,
        ),
        10,
    )
    return incoming, outgoing, results, server


async def connect_without_certificate(connector, identity):
    """
    Open a channel from ``connector`` to a peer whose TLS client presents
    no certificate. Returns (outgoing, error raised by initiate_outgoing).
    """
    async def on_connection(reader, writer):
        await reader.readline()
        tls = TlsStream(reader, writer, SSL.Context(SSL.TLS_METHOD), server_side=False)
        try:
            await tls.handshake()
            await tls.read()
        except (OSError, SSL.Error):
            pass
        finally:
            tls.close()

    server = await asyncio.start_server(on_connection, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    outgoing = Channel(connector, host="127.0.0.1", port=port, identity=identity)
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        await asyncio.wait_for(outgoing.initiate_outgoing(reader, writer), 10)
    except Exception as e:
        return outgoing, e
    finally:
        server.close()
    return outgoing, None


class TestNegotiation:
    """End-to-end channel negotiation."""

    @pytest.mark.asyncio
    async def test_trust_on_first_use(self, make_service):
        a = make_service("a")
        b = make_service("b")

        incoming, outgoing, results, server = await negotiate(a, b)
        try:
            assert results[0] is outgoing
            assert results[1] is incoming[0]

            assert outgoing.state is ChannelState.TLS_AUTHENTICATED
            assert outgoing.role == "server"
            assert incoming[0].state is ChannelState.TLS_AUTHENTICATED
            assert incoming[0].role == "client"

            # The acceptor sees the connector's identity and certificate
            assert incoming[0].identity.body["deviceId"] == b.device_id
            assert incoming[0].identity.body["tcpPort"] == b.port
            assert incoming[0].peer_certificate == b.certificate.der
            assert outgoing.peer_certificate == a.certificate.der

            # tcpPort is only present while the identity is sent
            assert "tcpPort" not in b.identity.packet.body

            assert b.channels.get(f"lan://127.0.0.1:{outgoing.port}") is outgoing
            assert a.channels.get(f"lan://127.0.0.1:{DEFAULT_PORT}") is incoming[0]
        finally:
            outgoing.close()
            incoming[0].close()
            server.close()

    @pytest.mark.asyncio
    async def test_pinned_certificates(self, make_service):
        a = make_service("a")
        b = make_service("b")
        a.trust_store.pin_certificate(b.device_id, "b", b.certificate.pem)
        b.trust_store.pin_certificate(a.device_id, "a", a.certificate.der)

        incoming, outgoing, results, server = await negotiate(a, b)
        try:
            assert results[0] is outgoing
            assert results[1] is incoming[0]
            assert outgoing.peer_certificate == a.certificate.der
            assert incoming[0].peer_certificate == b.certificate.der
        finally:
            outgoing.close()
            incoming[0].close()
            server.close()

    @pytest.mark.asyncio
    async def test_pinned_certificate_mismatch(self, make_service):
        """A peer presenting a different certificate is never attached."""
        a = make_service("a")
        b = make_service("b")
        other_pem, _ = generate_certificate(b.device_id)
        a.trust_store.pin_certificate(b.device_id, "b", other_pem.decode("ascii"))

        loop = asyncio.get_running_loop()
        notified = loop.create_future()

        async def on_error(error):
            notified.set_result(error)

        a.on_error(on_error)

        incoming, outgoing, results, server = await negotiate(a, b)
        server.close()

        assert isinstance(results[1], AuthenticationError)
        assert results[1].device_name == "b"
        assert results[1].device_host == "127.0.0.1"

        error = await asyncio.wait_for(notified, 5)
        assert error is results[1]

        assert incoming[0].state is ChannelState.CLOSED
        assert len(a.channels) == 0

        # The connector may finish its handshake; it never gets attached
        outgoing.close()
        assert len(b.channels) == 0

    @pytest.mark.asyncio
    async def test_expired_pinned_certificate(self, make_service, tmp_path):
        """Pinned certificates are compared byte for byte; expiry is ignored."""
        device_id = uuid.uuid4().hex
        start = datetime.datetime(2001, 1, 1, tzinfo=datetime.timezone.utc)
        cert_pem, key_pem = generate_certificate(device_id, not_valid_before=start, validity=datetime.timedelta(days=1))
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "certificate.pem").write_bytes(cert_pem)
        (tmp_path / "a" / "private.pem").write_bytes(key_pem)

        a = make_service("a")
        b = make_service("b")
        assert a.device_id == device_id
        a.trust_store.pin_certificate(b.device_id, "b", b.certificate.pem)
        b.trust_store.pin_certificate(a.device_id, "a", a.certificate.pem)

        incoming, outgoing, results, server = await negotiate(a, b)
        try:
            assert results[0] is outgoing
            assert results[1] is incoming[0]
            assert outgoing.state is ChannelState.TLS_AUTHENTICATED
            assert outgoing.peer_certificate == a.certificate.der
        finally:
            outgoing.close()
            incoming[0].close()
            server.close()

    @pytest.mark.asyncio
    async def test_peer_without_certificate(self, make_service):
        """The TLS server requires a client certificate even without a pin."""
        a = make_service("a")
        b = make_service("b")

        outgoing, error = await connect_without_certificate(b, a.identity.packet.model_copy(deep=True))

        assert isinstance(error, SSL.Error)
        assert outgoing.state is ChannelState.CLOSED
        assert outgoing.peer_certificate is None
        assert len(b.channels) == 0

    @pytest.mark.asyncio
    async def test_pinned_peer_without_certificate(self, make_service):
        a = make_service("a")
        b = make_service("b")
        b.trust_store.pin_certificate(a.device_id, "a", a.certificate.pem)

        outgoing, error = await connect_without_certificate(b, a.identity.packet.model_copy(deep=True))

        assert isinstance(error, SSL.Error)
        assert outgoing.state is ChannelState.CLOSED
        assert len(b.channels) == 0

    @pytest.mark.asyncio
    async def test_missing_identity(self, make_service):
        a = make_service("a")
        loop = asyncio.get_running_loop()
        accepted = loop.create_future()

        async def on_connection(reader, writer):
            channel = Channel(a, host="127.0.0.1")
            try:
                await channel.accept_incoming(reader, writer)
            except Exception as e:
                accepted.set_result((channel, e))

        server = await asyncio.start_server(on_connection, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        _, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b'{"type": "kdeconnect.identity", "body": {"deviceName": "x"}}\n')
        await writer.drain()

        channel, error = await asyncio.wait_for(accepted, 5)
        writer.close()
        server.close()

        assert isinstance(error, IdentityError)
        assert channel.closed
        assert len(a.channels) == 0


class TestAttach:
    """Attaching channels to devices."""

    @pytest.mark.asyncio
    async def test_packet_exchange(self, make_service):
        a = make_service("a")
        b = make_service("b")
        incoming, outgoing, results, server = await negotiate(a, b)
        server.close()

        loop = asyncio.get_running_loop()
        received = loop.create_future()
        events = []

        async def emit(event_type, device, data):
            events.append(event_type)
            if event_type == "packet" and not received.done():
                received.set_result(data)

        a_device = Device(b.device_id, emit=emit)
        b_device = Device(a.device_id)
        incoming[0].attach(a_device)
        outgoing.attach(b_device)

        assert incoming[0].state is ChannelState.ATTACHED
        assert a_device.channel is incoming[0]
        assert a_device.name == "b"
        assert a_device.connected

        await b_device.send_packet(Packet(type="kdeconnect.ping", body={"message": "hello"}))
        data = await asyncio.wait_for(received, 5)
        assert data["type"] == "kdeconnect.ping"
        assert data["body"] == {"message": "hello"}

        # Closing one end closes the other and disconnects its device
        outgoing.close()
        await eventually(lambda: incoming[0].closed)
        await eventually(lambda: "device_disconnected" in events)
        assert not a_device.connected
        assert a_device.channel is None

    @pytest.mark.asyncio
    async def test_oversized_line_closes_channel(self, make_service):
        a = make_service("a")
        b = make_service("b")
        incoming, outgoing, results, server = await negotiate(a, b)
        server.close()

        device = Device(b.device_id)
        incoming[0]._tls.line_limit = 1024
        incoming[0].attach(device)

        try:
            await outgoing._tls.write(b"x" * 4096)
            await eventually(lambda: incoming[0].closed)
            assert not device.connected
            assert device.channel is None
        finally:
            outgoing.close()

    @pytest.mark.asyncio
    async def test_attach_replaces_previous_channel(self, make_service):
        service = make_service("a")
        events = []

        async def emit(event_type, device, data):
            events.append(event_type)

        device = Device("peer", emit=emit)
        first = authenticated_channel(service)
        second = authenticated_channel(service)

        first.attach(device)
        second.attach(device)
        await asyncio.sleep(0.05)

        assert first.closed
        assert second.state is ChannelState.ATTACHED
        assert device.channel is second
        assert device.connected
        assert "device_disconnected" not in events

        second.close()
        await asyncio.sleep(0.05)
        assert events[-1] == "device_disconnected"
        assert not device.connected

    @pytest.mark.asyncio
    async def test_attach_requires_authentication(self, make_service):
        service = make_service("a")
        channel = Channel(service, host="10.0.0.2", identity=peer_identity())
        device = Device("peer")

        channel.attach(device)

        assert channel.closed
        assert device.channel is None


class TestClose:

    def test_close_twice(self, make_service):
        service = make_service("a")
        channel = Channel(service, host="10.0.0.2")
        service.channels.add(channel)

        channel.close()
        channel.close()

        assert channel.state is ChannelState.CLOSED
        assert len(service.channels) == 0

    def test_states_only_move_forward(self, make_service):
        channel = Channel(make_service("a"), host="10.0.0.2")
        channel._set_state(ChannelState.IDENTITY_EXCHANGED)

        with pytest.raises(RuntimeError):
            channel._set_state(ChannelState.NEW)

        channel.close()
        with pytest.raises(ConnectionAbortedError):
            channel._set_state(ChannelState.TLS_NEGOTIATING)

    @pytest.mark.asyncio
    async def test_send_on_closed_channel(self, make_service):
        channel = Channel(make_service("a"), host="10.0.0.2")
        channel.close()

        with pytest.raises(ConnectionError):
            await channel.send_packet(Packet(type="kdeconnect.ping"))


class TestChannelPort:

    def test_explicit_port(self, make_service):
        channel = Channel(make_service("a"), host="10.0.0.2", port=1800, identity=peer_identity(1900))
        assert channel.port == 1800
        assert channel.address == "lan://10.0.0.2:1800"

    def test_identity_port(self, make_service):
        channel = Channel(make_service("a"), host="10.0.0.2", identity=peer_identity(1900))
        assert channel.port == 1900

    def test_default_port(self, make_service):
        channel = Channel(make_service("a"), host="10.0.0.2", identity=peer_identity())
        assert channel.port == DEFAULT_PORT


class TestCancellable:

    @pytest.mark.asyncio
    async def test_run_aborts_on_cancel(self):
        token = Cancellable()
        waiter = asyncio.ensure_future(token.run(asyncio.sleep(60)))
        await asyncio.sleep(0)

        token.cancel()

        with pytest.raises(ConnectionAbortedError):
            await waiter

    def test_handlers_run_once(self):
        token = Cancellable()
        calls = []
        token.connect(lambda: calls.append("a"))
        removed = token.connect(lambda: calls.append("b"))
        token.disconnect(removed)

        token.cancel()
        token.cancel()

        assert calls == ["a"]

    def test_connect_after_cancel_runs_immediately(self):
        token = Cancellable()
        token.cancel()
        calls = []

        token.connect(lambda: calls.append("late"))

        assert calls == ["late"]


class BlockingTls:
    """Stands in for a TLS stream that never receives anything."""

    def __init__(self):
        self.closed = False

    async def readline(self):
        await asyncio.Event().wait()

    def close(self):
        self.closed = True


def peer_identity(tcp_port=None) -> Packet:
    body = {"deviceId": "peer", "deviceName": "Peer"}
    if tcp_port is not None:
        body["tcpPort"] = tcp_port
    return Packet(type=IDENTITY_PACKET_TYPE, body=body)


def authenticated_channel(service) -> Channel:
    channel = Channel(service, host="10.0.0.2", identity=peer_identity())
    channel.state = ChannelState.TLS_AUTHENTICATED
    channel._tls = BlockingTls()
    return channel

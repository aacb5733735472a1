"""
LAN channel service.

The TCP listener accepts connections from peers and negotiates a channel
for each. The UDP listener receives identity packets broadcast by peers;
the TCP port to connect to is carried in the packet while the host is
taken from the datagram itself. We respond to an identity by opening a TCP
connection, and advertise ourselves by broadcasting our own identity to
255.255.255.255.
"""

import asyncio
import ipaddress
import logging
import socket

from channel.channel import Channel
from channel.registry import ChannelRegistry
from config import (
    BROADCAST_ADDRESS,
    DEFAULT_PORT,
    DISCOVERABLE,
    TRANSFER_PORT_MAX,
    TRANSFER_PORT_MIN,
)
from discovery.network import NetworkMonitor
from protocol.exceptions import DiscoveryBindError, MalformedPacketError
from protocol.packet import Packet, decode, encode, transient_fields
from transfer.manager import TransferManager

logger = logging.getLogger(__name__)


def normalize_host(host: str) -> str:
    """Strip IPv6 scope ids and unwrap IPv4-mapped IPv6 addresses."""
    host = host.split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return host

    if ip.version == 6 and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def parse_address(address, default_port: int = DEFAULT_PORT) -> tuple[str, int]:
    """
    Parse ``"host:port"``, ``"[v6]:port"``, a bare host or a ``(host, port)``
    tuple. A missing or invalid port becomes ``default_port``.
    """
    if isinstance(address, (tuple, list)):
        host, port = address[0], address[1] if len(address) > 1 else None
    else:
        address = str(address).strip()
        if address.startswith("["):
            host, _, rest = address[1:].partition("]")
            port = rest[1:] if rest.startswith(":") else None
        elif address.count(":") == 1:
            host, _, port = address.partition(":")
        else:
            host, port = address, None

    try:
        port = int(port)
        if not 0 < port < 65536:
            raise ValueError(port)
    except (TypeError, ValueError):
        port = default_port

    return str(host), port


class IdentityProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving identity packets."""

    def __init__(self, service: "LanService"):
        self.service = service

    def datagram_received(self, data: bytes, addr) -> None:
        self.service._on_incoming_identity(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class LanService:
    """Discovers peers on the LAN and negotiates channels with them."""

    def __init__(
        self,
        identity,
        trust_store,
        port: int = DEFAULT_PORT,
        discoverable: bool = DISCOVERABLE,
        network_monitor: NetworkMonitor | None = None,
        transfer_port_range: tuple[int, int] = (TRANSFER_PORT_MIN, TRANSFER_PORT_MAX),
        broadcast_interval: float | None = None,
    ) -> None:
        self.identity = identity
        self.trust_store = trust_store
        self.port = port
        self.discoverable = discoverable
        self.transfer_port_range = transfer_port_range
        self.broadcast_interval = broadcast_interval

        self.channels = ChannelRegistry()
        self.transfers = TransferManager()

        # Hosts we identified to directly may connect even when we are
        # not discoverable
        self._allowed: set[str] = set()

        self._tcp: asyncio.Server | None = None
        self._udp4: asyncio.DatagramTransport | None = None
        self._udp6: asyncio.DatagramTransport | None = None
        self._udp6_speaks_ipv4 = False

        self._owns_monitor = network_monitor is None
        self._network_monitor = network_monitor or NetworkMonitor()
        self._network_available = False
        self._network_changed_id = 0

        self._broadcast_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._on_channel: list = []  # callbacks: async def fn(channel)
        self._on_error: list = []  # callbacks: async def fn(error)

    @property
    def certificate(self):
        return self.identity.certificate

    @property
    def device_id(self) -> str:
        return self.identity.device_id

    @property
    def allowed(self) -> frozenset[str]:
        return frozenset(self._allowed)

    @property
    def network_available(self) -> bool:
        return self._network_available

    @property
    def active(self) -> bool:
        return self._tcp is not None or self._udp4 is not None or self._udp6 is not None

    def on_channel(self, callback) -> None:
        """Register a callback for authenticated, unattached channels."""
        self._on_channel.append(callback)

    def on_error(self, callback) -> None:
        """Register a callback for authentication errors."""
        self._on_error.append(callback)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _emit_channel(self, channel: Channel) -> None:
        for cb in self._on_channel:
            try:
                await cb(channel)
            except Exception as e:
                logger.error(f"Channel callback error: {e}", exc_info=True)

    async def _emit_error(self, error: Exception) -> None:
        for cb in self._on_error:
            try:
                await cb(error)
            except Exception as e:
                logger.error(f"Error callback error: {e}")

    def notify_error(self, error: Exception) -> None:
        """Report an error that the user should know about."""
        self._spawn(self._emit_error(error))

    # --- Network ---

    def _on_network_changed(self, monitor, network_available: bool) -> None:
        if self._network_available != network_available:
            self._network_available = network_available
            self.broadcast()

    # --- TCP ---

    async def _init_tcp_listener(self) -> None:
        self._tcp = await asyncio.start_server(
            self._on_incoming_channel,
            port=self.port,
            reuse_address=True,
        )
        logger.info(f"Listening for TCP connections on port {self.port}")

    async def _on_incoming_channel(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peername = writer.get_extra_info("peername")
        host = normalize_host(peername[0])

        # Decide whether we should try to accept this connection
        if host not in self._allowed and not self.discoverable:
            logger.debug(f"Refusing connection from {host}: not discoverable")
            writer.close()
            return

        channel = Channel(self, host=host, port=DEFAULT_PORT)

        try:
            await channel.accept_incoming(reader, writer)
        except Exception as e:
            logger.debug(f"Incoming channel from {host} failed: {e!r}")
            return

        channel.identity.body["tcpHost"] = channel.host
        channel.identity.body["tcpPort"] = DEFAULT_PORT

        await self._emit_channel(channel)

    # --- UDP ---

    def _bind_udp(self, family: int) -> socket.socket:
        sock = socket.socket(family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            if family == socket.AF_INET6:
                # Accept IPv4 on the same socket where the OS allows it
                try:
                    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                except (AttributeError, OSError):
                    pass
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind(("::" if family == socket.AF_INET6 else "0.0.0.0", self.port))
        except OSError:
            sock.close()
            raise
        return sock

    async def _init_udp_listener(self) -> None:
        loop = asyncio.get_running_loop()

        try:
            sock = self._bind_udp(socket.AF_INET6)
            self._udp6_speaks_ipv4 = not sock.getsockopt(
                socket.IPPROTO_IPV6, socket.IPV6_V6ONLY
            )
            self._udp6, _ = await loop.create_datagram_endpoint(
                lambda: IdentityProtocol(self), sock=sock
            )
        except OSError as e:
            logger.debug(f"IPv6 discovery unavailable: {e}")
            self._udp6 = None
            self._udp6_speaks_ipv4 = False

        # Our IPv6 socket also supports IPv4; we're all done
        if self._udp6 is not None and self._udp6_speaks_ipv4:
            self._udp4 = None
            logger.info(f"Listening for identities on UDP port {self.port} (dual-stack)")
            return

        try:
            sock = self._bind_udp(socket.AF_INET)
            self._udp4, _ = await loop.create_datagram_endpoint(
                lambda: IdentityProtocol(self), sock=sock
            )
        except OSError as e:
            self._udp4 = None

            # We failed to get either an IPv4 or IPv6 socket to bind
            if self._udp6 is None:
                raise DiscoveryBindError(
                    f"Could not bind UDP port {self.port}: {e}"
                ) from e

        logger.info(f"Listening for identities on UDP port {self.port}")

    def _on_incoming_identity(self, data: bytes, addr) -> None:
        try:
            host = normalize_host(addr[0])
        except (TypeError, IndexError, AttributeError) as e:
            # The datagram is already drained; drop it
            logger.debug(f"Dropping identity without source address: {e}")
            return

        try:
            packet = decode(data.split(b"\n", 1)[0])
        except MalformedPacketError as e:
            logger.debug(f"Ignoring invalid identity packet from {host}: {e}")
            return

        packet.body["tcpHost"] = host
        self._spawn(self._on_identity(packet))

    async def _on_identity(self, packet: Packet) -> None:
        body = packet.body

        # Bail if the deviceId is missing
        if not body.get("deviceId"):
            logger.debug(f"{body.get('deviceName')}: missing deviceId")
            return

        # Silently ignore our own broadcasts
        if body["deviceId"] == self.device_id:
            return

        try:
            port = int(body.get("tcpPort") or DEFAULT_PORT)
        except (TypeError, ValueError):
            logger.debug(f"{body.get('deviceName')}: invalid tcpPort {body.get('tcpPort')!r}")
            return

        channel = Channel(self, host=body["tcpHost"], port=port, identity=packet)

        # Register before connecting so duplicate identities are ignored
        if not self.channels.add(channel):
            logger.debug(f"{channel.address} already has a channel")
            return

        try:
            reader, writer = await channel.cancellable.run(
                asyncio.open_connection(channel.host, channel.port)
            )
            await channel.initiate_outgoing(reader, writer)
        except Exception as e:
            logger.debug(f"Outgoing channel to {channel.address} failed: {e!r}")
            channel.close()
            return

        await self._emit_channel(channel)

    def _send_identity(self, data: bytes, host: str, port: int) -> None:
        ip = ipaddress.ip_address(host)

        if self._udp6 is not None:
            if ip.version == 6:
                self._udp6.sendto(data, (host, port))
            elif self._udp6_speaks_ipv4:
                self._udp6.sendto(data, (f"::ffff:{host}", port))

        if self._udp4 is not None and ip.version == 4:
            self._udp4.sendto(data, (host, port))

    def broadcast(self, address=None) -> None:
        """
        Send our identity packet.

        Args:
            address: ``"host:port"`` or ``(host, port)`` to identify to a
                single host, which is then allowed to connect even if we
                are not discoverable. Broadcast to the LAN when omitted.
        """
        if not self._network_available:
            return

        identity = self.identity.packet
        try:
            if address is not None:
                host, port = parse_address(address)
                ipaddress.ip_address(host)
                self._allowed.add(host)
            else:
                logger.debug("Broadcasting to LAN")
                host, port = BROADCAST_ADDRESS, self.port

            with transient_fields(identity, tcpPort=self.port):
                self._send_identity(encode(identity), host, port)
        except Exception as e:
            logger.warning(f"Broadcast to {address or 'LAN'} failed: {e}")

    async def _broadcast_loop(self) -> None:
        while True:
            await asyncio.sleep(self.broadcast_interval)
            self.broadcast()

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the TCP/UDP listeners and watch the network."""
        if self._udp4 is None and self._udp6 is None:
            await self._init_udp_listener()

        if self._tcp is None:
            await self._init_tcp_listener()

        if not self._network_changed_id:
            self._network_available = self._network_monitor.network_available
            self._network_changed_id = self._network_monitor.connect(self._on_network_changed)
            if self._owns_monitor:
                self._network_monitor.start()

        if self.broadcast_interval and self._broadcast_task is None:
            self._broadcast_task = asyncio.create_task(self._broadcast_loop())

    async def stop(self) -> None:
        """Stop the listeners; established channels stay open."""
        if self._network_changed_id:
            self._network_monitor.disconnect(self._network_changed_id)
            self._network_changed_id = 0
            self._network_available = False
            if self._owns_monitor:
                self._network_monitor.stop()

        if self._broadcast_task is not None:
            self._broadcast_task.cancel()
            self._broadcast_task = None

        if self._tcp is not None:
            self._tcp.close()
            self._tcp = None

        if self._udp6 is not None:
            self._udp6.close()
            self._udp6 = None

        if self._udp4 is not None:
            self._udp4.close()
            self._udp4 = None

        for task in list(self._tasks):
            task.cancel()

        logger.info("LAN service stopped")

    async def destroy(self) -> None:
        """Stop the service and close every channel and transfer; never raises."""
        try:
            await self.stop()
            self.transfers.cancel_all()
            for channel in self.channels:
                channel.close()
        except Exception as e:
            logger.debug(f"Error destroying LAN service: {e}")

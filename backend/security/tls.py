"""
TLS over an already-open asyncio stream.

The identity packet is exchanged in plain text before the connection is
upgraded, and the TLS role does not follow the TCP role: the side that
accepted the connection is the TLS client. ``asyncio`` ties the TLS role of
``StreamWriter.start_tls`` to the way the stream was created, so the TLS
session is driven here through pyOpenSSL memory BIOs with an explicit
``server_side``.
"""

import asyncio
import logging

from cryptography.hazmat.primitives import serialization
from OpenSSL import SSL

from config import CHUNK_SIZE, LINE_LIMIT
from protocol.exceptions import LineTooLongError

logger = logging.getLogger(__name__)


class TlsStream:
    """Encrypted reader/writer wrapping a plain asyncio stream pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        context: SSL.Context,
        server_side: bool,
        line_limit: int = LINE_LIMIT,
    ):
        self.reader = reader
        self.writer = writer
        self.server_side = server_side
        self.line_limit = line_limit

        # No socket: pyOpenSSL reads and writes through memory BIOs
        self._conn = SSL.Connection(context, None)
        if server_side:
            self._conn.set_accept_state()
        else:
            self._conn.set_connect_state()

        self._buffer = bytearray()
        self._eof = False
        self._closed = False
        self._handshake_complete = False

    @property
    def remote_address(self) -> tuple | None:
        return self.writer.get_extra_info("peername")

    @property
    def peer_certificate(self) -> bytes | None:
        """The DER certificate presented by the peer, if any."""
        if not self._handshake_complete:
            return None

        cert = self._conn.get_peer_certificate(as_cryptography=True)
        if cert is None:
            return None
        return cert.public_bytes(serialization.Encoding.DER)

    def _pending_output(self) -> bytes:
        chunks = []
        while True:
            try:
                chunk = self._conn.bio_read(CHUNK_SIZE)
            except SSL.WantReadError:
                break
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    async def _flush(self) -> None:
        data = self._pending_output()
        if data:
            self.writer.write(data)
            await self.writer.drain()

    async def _fill(self) -> bool:
        """Feed more ciphertext into the TLS object. False on EOF."""
        if self._eof:
            return False

        data = await self.reader.read(CHUNK_SIZE)
        if not data:
            self._eof = True
            self._conn.bio_shutdown()
            return False
        self._conn.bio_write(data)
        return True

    async def handshake(self) -> None:
        """
        Perform the TLS handshake.

        Raises:
            OpenSSL.SSL.Error: the handshake failed, including a peer that
                presented no certificate
            ConnectionError: the peer closed the connection mid-handshake
        """
        while True:
            try:
                self._conn.do_handshake()
                break
            except SSL.WantReadError:
                await self._flush()
                if not await self._fill():
                    raise ConnectionError("Connection closed during TLS handshake")
            except SSL.Error:
                # Deliver the alert so the peer fails too
                try:
                    await self._flush()
                except OSError:
                    pass
                raise

        await self._flush()
        self._handshake_complete = True
        logger.debug(
            f"TLS handshake with {self.remote_address} complete "
            f"({self._conn.get_protocol_version_name()}, "
            f"{'server' if self.server_side else 'client'})"
        )

    async def _recv(self, n: int) -> bytes:
        """Decrypt up to ``n`` bytes, waiting for ciphertext. b"" at EOF."""
        while True:
            try:
                return self._conn.recv(n)
            except SSL.WantReadError:
                await self._flush()
                if not await self._fill():
                    return b""
            except SSL.ZeroReturnError:
                return b""
            except SSL.Error:
                # TCP closed without close_notify
                if self._eof:
                    return b""
                raise

    async def read(self, n: int = CHUNK_SIZE) -> bytes:
        """Read up to ``n`` decrypted bytes. Returns b"" at EOF."""
        if self._buffer:
            data = bytes(self._buffer[:n])
            del self._buffer[:n]
            return data

        return await self._recv(n)

    async def readline(self) -> bytes:
        """
        Read one line including the newline; partial data or b"" at EOF.

        Raises:
            LineTooLongError: ``line_limit`` bytes arrived without a newline
        """
        while True:
            index = self._buffer.find(b"\n")
            if index > self.line_limit or (
                index < 0 and len(self._buffer) > self.line_limit
            ):
                raise LineTooLongError(
                    f"No newline within {self.line_limit} bytes from {self.remote_address}"
                )

            if index >= 0:
                line = bytes(self._buffer[:index + 1])
                del self._buffer[:index + 1]
                return line

            chunk = await self._recv(CHUNK_SIZE)
            if not chunk:
                line = bytes(self._buffer)
                self._buffer.clear()
                return line

            self._buffer.extend(chunk)

    async def write(self, data: bytes) -> None:
        """Encrypt and send ``data``."""
        if self._closed:
            raise ConnectionError("TLS stream is closed")

        view = memoryview(data)
        while view:
            written = self._conn.send(view)
            view = view[written:]
            await self._flush()

    def close(self) -> None:
        """Send close_notify if possible and close the transport."""
        if self._closed:
            return
        self._closed = True

        try:
            if self._handshake_complete:
                self._conn.shutdown()
        except SSL.Error:
            pass

        try:
            data = self._pending_output()
            if data and not self.writer.is_closing():
                self.writer.write(data)
        except (OSError, RuntimeError):
            pass

        self.writer.close()

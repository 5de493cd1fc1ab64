"""
TPKT framed byte stream over asyncio (RFC 1006).

Every S7 telegram travels inside a TPKT frame whose header carries the
total frame length, so one frame is read as a 4 byte header followed by
exactly ``length - 4`` bytes.
"""

import asyncio
import logging
from typing import Optional

from .constants import TPKT_SIZE, TPKT_VERSION
from .errors import S7ConnectionError, S7ProtocolError, S7TimeoutError

logger = logging.getLogger(__name__)


async def read_frame(reader: asyncio.StreamReader) -> bytes:
    header = await reader.readexactly(TPKT_SIZE)
    if header[0] != TPKT_VERSION:
        raise S7ProtocolError(f"Unsupported TPKT version 0x{header[0]:02X}")

    tpkt_length = int.from_bytes(header[2:4], byteorder="big")
    if tpkt_length < TPKT_SIZE:
        raise S7ProtocolError("Invalid TPKT length received.")

    body = await reader.readexactly(tpkt_length - TPKT_SIZE)
    return header + body


class S7Transport:
    """One TCP stream to a PLC, exchanging whole TPKT frames."""

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def open(self, timeout: Optional[float] = None) -> None:
        """Open the TCP connection.

        Raises:
            S7TimeoutError: If the connection is not established within *timeout*.
            S7ConnectionError: If the peer refuses or is unreachable.
        """
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise S7TimeoutError(f"Timed out connecting to {self.host}:{self.port}") from e
        except OSError as e:
            raise S7ConnectionError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        logger.debug("TCP connection to %s:%s open", self.host, self.port)

    async def close(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return

        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug("Error while closing connection to %s:%s: %s", self.host, self.port, e)

    async def send(self, data: bytes, timeout: Optional[float] = None) -> None:
        if self._writer is None:
            raise S7ConnectionError("Not connected to PLC")

        logger.debug("-> %s", data.hex(" "))
        try:
            self._writer.write(data)
            await asyncio.wait_for(self._writer.drain(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise S7TimeoutError("Timed out sending to the PLC") from e
        except OSError as e:
            raise S7ConnectionError(f"Socket error while sending: {e}") from e

    async def receive(self, timeout: Optional[float] = None) -> bytes:
        """Read exactly one TPKT frame.

        Raises:
            S7TimeoutError: If the frame is not complete within *timeout*.
            S7ConnectionError: If the peer closes the connection.
            S7ProtocolError: If the TPKT header is invalid.
        """
        if self._reader is None:
            raise S7ConnectionError("Not connected to PLC")

        try:
            frame = await asyncio.wait_for(read_frame(self._reader), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise S7TimeoutError("Timed out waiting for the PLC response") from e
        except asyncio.IncompleteReadError as e:
            raise S7ConnectionError("The connection has been closed by the peer.") from e
        except OSError as e:
            raise S7ConnectionError(f"Socket error while receiving: {e}") from e

        logger.debug("<- %s", frame.hex(" "))
        return frame

    async def exchange(
        self,
        data: bytes,
        send_timeout: Optional[float] = None,
        receive_timeout: Optional[float] = None,
    ) -> bytes:
        """Send one telegram and wait for its answer."""
        await self.send(data, timeout=send_timeout)
        return await self.receive(timeout=receive_timeout)

"""
In-process S7 PLC simulator.

:class:`S7DataStore` holds the memory areas, :class:`S7Server` answers the
connection handshake and read/write jobs of any number of clients over
asyncio, using the same telegram codec as the client.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from .constants import (
    AREA_BY_CODE,
    COTP_CONNECTION_REQUEST,
    DEFAULT_PDU_SIZE,
    REQ_OVERHEAD,
    Function,
    MemoryArea,
    ReturnCode,
)
from .errors import S7ProtocolError, S7RemoteRejectedError
from .requests import ItemSpec, parse_read_request, parse_write_request
from .responses import (
    build_connection_confirm,
    build_error_response,
    build_read_response,
    build_setup_response,
    build_write_response,
)
from .transport import read_frame

logger = logging.getLogger(__name__)

AreaKey = Tuple[MemoryArea, int]

DEFAULT_AREA_SIZE = 256


class AccessKind(Enum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class AreaAccessEvent:
    """Published to the store subscribers after each committed read or write."""

    kind: AccessKind
    memory_area: MemoryArea
    db_number: int
    start: int
    length: int
    data: bytes


Subscriber = Callable[[AreaAccessEvent], None]


class S7DataStore:
    """Byte images of the I, Q, M areas and of the registered data blocks.

    All access goes through one lock so that several server sessions can
    hit the same range safely. V-memory is data block 1.
    """

    def __init__(
        self,
        data_blocks: Optional[Mapping[int, Union[int, bytes]]] = None,
        area_size: int = DEFAULT_AREA_SIZE,
    ) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._areas: Dict[AreaKey, bytearray] = {
            (MemoryArea.INPUT, 0): bytearray(area_size),
            (MemoryArea.OUTPUT, 0): bytearray(area_size),
            (MemoryArea.MERKER, 0): bytearray(area_size),
        }
        for db_number, content in (data_blocks or {}).items():
            self.register_db(db_number, content)

    def register_db(self, db_number: int, content: Union[int, bytes]) -> None:
        """Create (or replace) a data block from a size or an initial image."""
        image = bytearray(content) if isinstance(content, (bytes, bytearray)) else bytearray(int(content))
        with self._lock:
            self._areas[(MemoryArea.DB, db_number)] = image

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.remove(subscriber)

    @staticmethod
    def _key(memory_area: MemoryArea, db_number: int) -> AreaKey:
        if memory_area == MemoryArea.V:
            return (MemoryArea.DB, 1)
        if memory_area == MemoryArea.DB:
            return (MemoryArea.DB, db_number)
        return (memory_area, 0)

    def _locate(self, memory_area: MemoryArea, db_number: int, start: int, length: int) -> bytearray:
        key = self._key(memory_area, db_number)
        image = self._areas.get(key)
        if image is None:
            raise S7RemoteRejectedError(
                f"{memory_area.value} {db_number} does not exist",
                return_code=ReturnCode.OBJECT_DOES_NOT_EXIST.value,
                address_missing=True,
            )
        if start < 0 or length < 0 or start + length > len(image):
            raise S7RemoteRejectedError(
                f"{memory_area.value} {db_number} [{start}:{start + length}] outside {len(image)} bytes",
                return_code=ReturnCode.OBJECT_DOES_NOT_EXIST.value,
                address_missing=True,
            )
        return image

    def _publish(self, event: AreaAccessEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Subscriber %r failed on %s", subscriber, event)

    def read_area(self, memory_area: MemoryArea, db_number: int, start: int, length: int) -> bytes:
        with self._lock:
            image = self._locate(memory_area, db_number, start, length)
            data = bytes(image[start : start + length])
        self._publish(AreaAccessEvent(AccessKind.READ, memory_area, db_number, start, length, data))
        return data

    def write_area(self, memory_area: MemoryArea, db_number: int, start: int, data: bytes) -> None:
        with self._lock:
            image = self._locate(memory_area, db_number, start, len(data))
            image[start : start + len(data)] = data
        self._publish(AreaAccessEvent(AccessKind.WRITE, memory_area, db_number, start, len(data), bytes(data)))

    def write_bit(self, memory_area: MemoryArea, db_number: int, start: int, bit_offset: int, value: bool) -> None:
        with self._lock:
            image = self._locate(memory_area, db_number, start, 1)
            if value:
                image[start] |= 1 << bit_offset
            else:
                image[start] &= ~(1 << bit_offset) & 0xFF
            data = bytes(image[start : start + 1])
        self._publish(AreaAccessEvent(AccessKind.WRITE, memory_area, db_number, start, 1, data))

    def snapshot(self, memory_area: MemoryArea, db_number: int = 0) -> bytes:
        """Copy of a whole area, without notifying subscribers."""
        with self._lock:
            return bytes(self._locate(memory_area, db_number, 0, 0))


class S7Server:
    """asyncio TCP server speaking enough S7comm to serve read and write jobs.

    Example:
        >>> store = S7DataStore(data_blocks={1: 512})
        >>> async with S7Server(store) as server:
        ...     client = S7Client("127.0.0.1", port=server.port)
    """

    def __init__(
        self,
        store: Optional[S7DataStore] = None,
        host: str = "127.0.0.1",
        port: int = 0,
        pdu_size: int = DEFAULT_PDU_SIZE,
    ) -> None:
        self.store = store if store is not None else S7DataStore()
        self.host = host
        self.port = port
        self.pdu_size = pdu_size

        # Seconds waited before answering read/write jobs
        self.response_delay = 0.0
        self.connection_count = 0

        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: Set[asyncio.StreamWriter] = set()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("S7 server listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        await self.close_connections()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("S7 server on %s:%s stopped", self.host, self.port)

    async def close_connections(self) -> None:
        """Drop every connected client, keeping the listener open."""
        writers = list(self._writers)
        self._writers.clear()
        for writer in writers:
            writer.close()
        for writer in writers:
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def __aenter__(self) -> "S7Server":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        self._writers.add(writer)
        self.connection_count += 1
        logger.debug("Client %s connected", peer)

        try:
            while True:
                frame = await read_frame(reader)
                response = await self._dispatch(frame)
                writer.write(response)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            logger.debug("Client %s disconnected", peer)
        except S7ProtocolError as e:
            logger.warning("Dropping client %s: %s", peer, e)
        finally:
            self._writers.discard(writer)
            writer.close()

    async def _dispatch(self, frame: bytes) -> bytes:
        if len(frame) > 5 and frame[5] == COTP_CONNECTION_REQUEST:
            return build_connection_confirm(frame)

        if len(frame) <= REQ_OVERHEAD:
            raise S7ProtocolError(f"Job telegram too short: {len(frame)} bytes")

        pdu_reference = int.from_bytes(frame[11:13], byteorder="big")
        function = frame[REQ_OVERHEAD]

        if function == Function.COMM_SETUP.value:
            requested = int.from_bytes(frame[23:25], byteorder="big")
            return build_setup_response(pdu_reference, min(requested, self.pdu_size))

        if self.response_delay:
            await asyncio.sleep(self.response_delay)

        if function == Function.READ_VAR.value:
            return self._handle_read(frame)
        if function == Function.WRITE_VAR.value:
            return self._handle_write(frame)

        logger.warning("Unsupported function 0x%02X", function)
        return build_error_response(pdu_reference, function, error_class=0x84, error_code=0x04)

    @staticmethod
    def _resolve(item: ItemSpec) -> Optional[MemoryArea]:
        return AREA_BY_CODE.get(item.area_code)

    def _handle_read(self, frame: bytes) -> bytes:
        pdu_reference, items = parse_read_request(frame)

        results: List[Tuple[int, bytes, bool]] = []
        for item in items:
            memory_area = self._resolve(item)
            if memory_area is None:
                results.append((ReturnCode.OBJECT_DOES_NOT_EXIST.value, b"", item.is_bit))
                continue
            try:
                data = self.store.read_area(memory_area, item.db_number, item.start, item.byte_length)
            except S7RemoteRejectedError as e:
                assert e.return_code is not None, "Unreachable"
                results.append((e.return_code, b"", item.is_bit))
                continue

            if item.is_bit:
                data = b"\x01" if data[0] & (1 << item.bit_offset) else b"\x00"
            results.append((ReturnCode.SUCCESS.value, data, item.is_bit))

        return build_read_response(pdu_reference, results)

    def _handle_write(self, frame: bytes) -> bytes:
        pdu_reference, writes = parse_write_request(frame)

        return_codes: List[int] = []
        for item, data in writes:
            memory_area = self._resolve(item)
            if memory_area is None:
                return_codes.append(ReturnCode.OBJECT_DOES_NOT_EXIST.value)
                continue
            try:
                if item.is_bit:
                    self.store.write_bit(
                        memory_area, item.db_number, item.start, item.bit_offset, any(data)
                    )
                else:
                    self.store.write_area(memory_area, item.db_number, item.start, data)
            except S7RemoteRejectedError as e:
                assert e.return_code is not None, "Unreachable"
                return_codes.append(e.return_code)
                continue
            return_codes.append(ReturnCode.SUCCESS.value)

        return build_write_response(pdu_reference, return_codes)

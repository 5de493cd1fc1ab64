import asyncio
import struct
from typing import Any, List, Optional

import pytest

from aioS7.client import S7Client
from aioS7.constants import (
    CONNECT_TELEGRAM,
    ConnectionLifetime,
    ConnectionState,
    Function,
    MemoryArea,
    PlcFamily,
    ValueType,
)
from aioS7.errors import (
    S7AddressError,
    S7ConnectionError,
    S7PartialBatchError,
    S7ProtocolError,
    S7RemoteRejectedError,
    S7TimeoutError,
    S7ValueError,
)
from aioS7.responses import build_connection_confirm, build_setup_response
from aioS7.result import OperationResult
from aioS7.server import AccessKind, AreaAccessEvent, S7DataStore, S7Server
from aioS7.values import ByteOrder


def make_client(server: S7Server, **kwargs: Any) -> S7Client:
    options = {"timeout": 2.0, "reconnect_delay": 0.0}
    options.update(kwargs)
    return S7Client("127.0.0.1", port=server.port, **options)


def _reads(events: List[AreaAccessEvent]) -> List[AreaAccessEvent]:
    return [event for event in events if event.kind == AccessKind.READ]


def _writes(events: List[AreaAccessEvent]) -> List[AreaAccessEvent]:
    return [event for event in events if event.kind == AccessKind.WRITE]


def test_client_init() -> None:
    client = S7Client("192.168.100.10", 0, 1)

    assert client.address == "192.168.100.10"
    assert client.rack == 0
    assert client.slot == 1
    assert client.plc_family == PlcFamily.S7_1200
    assert client.port == 102
    assert client.timeout == 5.0
    assert client.connect_timeout == 5.0
    assert client.receive_timeout == 5.0
    assert client.lifetime == ConnectionLifetime.PERSISTENT
    assert client.auto_reconnect is True
    assert client.max_item_size == 180
    assert client.connection_state == ConnectionState.DISCONNECTED
    assert not client.is_connected
    assert client.last_error is None


def test_client_init_separate_timeouts() -> None:
    client = S7Client("192.168.100.10", timeout=3.0, receive_timeout=10.0)

    assert client.connect_timeout == 3.0
    assert client.send_timeout == 3.0
    assert client.receive_timeout == 10.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"rack": 8},
        {"slot": 32},
        {"port": 0},
        {"timeout": 0},
        {"receive_timeout": -1.0},
        {"max_reconnect_attempts": 0},
        {"reconnect_delay": -1.0},
        {"max_item_size": 0},
        {"min_efficiency_ratio": 1.5},
        {"max_block_size": 0},
        {"plc_family": "S7-1200"},
    ],
)
def test_client_init_invalid(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        S7Client("192.168.100.10", **kwargs)


def test_sequence_counter_wraps_to_one() -> None:
    client = S7Client("192.168.100.10")

    assert client._next_pdu_reference() == 1
    assert client._next_pdu_reference() == 2

    client._pdu_reference = 0xFFFF
    assert client._next_pdu_reference() == 1


@pytest.mark.asyncio
async def test_connect_and_disconnect(server: S7Server) -> None:
    client = make_client(server)

    result = await client.connect()

    assert result.is_success
    assert client.is_connected
    assert client.connection_state == ConnectionState.READY
    assert client.pdu_size == 480

    await client.disconnect()

    assert not client.is_connected
    assert client.connection_state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_connect_refused() -> None:
    server = S7Server()
    await server.start()
    port = server.port
    await server.stop()

    client = S7Client("127.0.0.1", port=port, timeout=2.0)
    result = await client.connect()

    assert not result.is_success
    assert isinstance(result.error, S7ConnectionError)
    assert client.last_error is result.error
    assert client.connection_state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_context_manager(server: S7Server) -> None:
    async with make_client(server) as client:
        assert client.is_connected

    assert not client.is_connected


@pytest.mark.asyncio
async def test_read_word(server: S7Server, store: S7DataStore) -> None:
    store.write_area(MemoryArea.DB, 1, 10, b"\x00\x2a")

    async with make_client(server) as client:
        result = await client.read("DB1.DBW10")

    assert result.is_success
    assert result.value == 42


@pytest.mark.asyncio
async def test_read_typed_values(server: S7Server, store: S7DataStore) -> None:
    store.write_area(MemoryArea.DB, 1, 0, struct.pack(">f", 20.5))
    store.write_area(MemoryArea.DB, 1, 4, b"\xff\xfe")
    store.write_area(MemoryArea.MERKER, 0, 7, b"\x02")

    async with make_client(server) as client:
        assert (await client.read("DB1.DBD0", ValueType.FLOAT32)).value == 20.5
        assert (await client.read("DB1.DBW4", ValueType.INT16)).value == -2
        assert (await client.read("M7.1")).value is True
        assert (await client.read("M7.0")).value is False


@pytest.mark.asyncio
async def test_write_bit(server: S7Server, store: S7DataStore) -> None:
    async with make_client(server) as client:
        assert (await client.write("DB1.DBX5.3", True)).is_success
        assert store.snapshot(MemoryArea.DB, 1)[5] == 0x08

        assert (await client.write("DB1.DBX5.3", False)).is_success
        assert store.snapshot(MemoryArea.DB, 1)[5] == 0x00


@pytest.mark.asyncio
async def test_write_then_read_64_bit(server: S7Server) -> None:
    async with make_client(server) as client:
        assert (await client.write("DB1.DBD16", 1.25, ValueType.FLOAT64)).is_success
        result = await client.read("DB1.DBD16", ValueType.FLOAT64)

    assert result.value == 1.25


@pytest.mark.asyncio
async def test_byte_order(server: S7Server, store: S7DataStore) -> None:
    async with make_client(server, byte_order=ByteOrder.DCBA) as client:
        await client.write("DB1.DBW20", 0x1234)
        assert store.snapshot(MemoryArea.DB, 1)[20:22] == b"\x34\x12"
        assert (await client.read("DB1.DBW20")).value == 0x1234


@pytest.mark.asyncio
async def test_invalid_address_fails_without_connecting(server: S7Server) -> None:
    client = make_client(server)

    result = await client.read("DB1.XYZ")

    assert not result.is_success
    assert isinstance(result.error, S7AddressError)
    assert server.connection_count == 0


@pytest.mark.asyncio
async def test_write_value_mismatch(server: S7Server) -> None:
    async with make_client(server) as client:
        result = await client.write("DB1.DBW0", 1.5, ValueType.FLOAT32)

    assert not result.is_success
    assert isinstance(result.error, S7ValueError)


@pytest.mark.asyncio
async def test_read_missing_block(server: S7Server) -> None:
    async with make_client(server) as client:
        result = await client.read("DB9.DBW0")
        assert client.is_connected

    assert not result.is_success
    assert isinstance(result.error, S7RemoteRejectedError)
    assert result.error.address_missing


class TestPagination:
    @pytest.mark.asyncio
    async def test_read_bytes_is_split(
        self, server: S7Server, store: S7DataStore, events: List[AreaAccessEvent]
    ) -> None:
        image = bytes(range(256)) * 4
        store.write_area(MemoryArea.DB, 1, 0, image)
        events.clear()

        async with make_client(server) as client:
            result = await client.read_bytes("DB1.DBB10", 400)

        assert result.is_success
        assert result.value == image[10:410]
        assert [(e.start, e.length) for e in _reads(events)] == [(10, 180), (190, 180), (370, 40)]

    @pytest.mark.asyncio
    async def test_write_bytes_is_split(
        self, server: S7Server, store: S7DataStore, events: List[AreaAccessEvent]
    ) -> None:
        payload = bytes(i % 251 for i in range(400))

        async with make_client(server) as client:
            result = await client.write_bytes("DB1.DBB0", payload)

        assert result.is_success
        assert store.snapshot(MemoryArea.DB, 1)[:400] == payload
        assert [(e.start, e.length) for e in _writes(events)] == [(0, 180), (180, 180), (360, 40)]

    @pytest.mark.asyncio
    async def test_custom_item_size(self, server: S7Server, events: List[AreaAccessEvent]) -> None:
        async with make_client(server, max_item_size=64) as client:
            result = await client.read_bytes("DB1.DBB0", 150)

        assert result.is_success
        assert [e.length for e in _reads(events)] == [64, 64, 22]

    @pytest.mark.asyncio
    async def test_failing_chunk_fails_whole_read(self, server: S7Server, events: List[AreaAccessEvent]) -> None:
        async with make_client(server) as client:
            result = await client.read_bytes("DB2.DBB0", 300)

        assert not result.is_success
        assert isinstance(result.error, S7RemoteRejectedError)
        assert result.value is None
        assert len(_reads(events)) == 1

    @pytest.mark.asyncio
    async def test_write_bytes_on_bit_address_writes_whole_byte(self, server: S7Server, store: S7DataStore) -> None:
        async with make_client(server) as client:
            result = await client.write_bytes("DB1.DBX3.1", b"\x81")

        assert result.is_success
        assert store.snapshot(MemoryArea.DB, 1)[3] == 0x81

    @pytest.mark.asyncio
    async def test_invalid_lengths(self, server: S7Server) -> None:
        client = make_client(server)

        with pytest.raises(ValueError):
            await client.read_bytes("DB1.DBB0", 0)
        with pytest.raises(TypeError):
            await client.read_bytes("DB1.DBB0", "10")  # type: ignore[arg-type]
        with pytest.raises(ValueError):
            await client.write_bytes("DB1.DBB0", b"")


class TestBatchRead:
    @pytest.mark.asyncio
    async def test_contiguous_addresses_use_one_read(
        self, server: S7Server, store: S7DataStore, events: List[AreaAccessEvent]
    ) -> None:
        store.write_area(MemoryArea.DB, 1, 0, bytes.fromhex("0001 0002 0003 0004"))
        events.clear()

        async with make_client(server) as client:
            result = await client.batch_read(
                {"DB1.DBW0": None, "DB1.DBW2": None, "DB1.DBW4": ValueType.INT16, "DB1.DBW6": None}
            )

        assert result.is_success
        assert result.message == "OK"
        assert result.value == {
            "DB1.DBW0": (ValueType.UINT16, 1),
            "DB1.DBW2": (ValueType.UINT16, 2),
            "DB1.DBW4": (ValueType.INT16, 3),
            "DB1.DBW6": (ValueType.UINT16, 4),
        }
        assert [(e.start, e.length) for e in _reads(events)] == [(0, 8)]

    @pytest.mark.asyncio
    async def test_mixed_areas_and_bits(self, server: S7Server, store: S7DataStore) -> None:
        store.write_area(MemoryArea.MERKER, 0, 0, b"\x09")
        store.write_area(MemoryArea.INPUT, 0, 2, b"\x01\x00")
        store.write_area(MemoryArea.DB, 1, 100, struct.pack(">f", -1.5))

        async with make_client(server) as client:
            result = await client.batch_read(
                {"M0.0": None, "M0.1": None, "M0.3": None, "I2": None, "DB1.DBD100": ValueType.FLOAT32}
            )

        assert result.is_success
        assert result.value == {
            "M0.0": (ValueType.BOOL, True),
            "M0.1": (ValueType.BOOL, False),
            "M0.3": (ValueType.BOOL, True),
            "I2": (ValueType.UINT16, 256),
            "DB1.DBD100": (ValueType.FLOAT32, -1.5),
        }

    @pytest.mark.asyncio
    async def test_partial_failure(self, server: S7Server, store: S7DataStore) -> None:
        store.write_area(MemoryArea.DB, 1, 0, b"\x00\x07")

        async with make_client(server) as client:
            result = await client.batch_read(
                {"DB1.DBW0": None, "BOGUS": ValueType.INT16, "DB9.DBW0": None, "db1.dbw0": ValueType.INT16}
            )

        assert not result.is_success
        assert isinstance(result.error, S7PartialBatchError)
        assert set(result.errors) == {"BOGUS", "DB9.DBW0"}
        assert result.error.failures == result.errors
        assert "2 of 4 addresses failed" in result.message
        assert result.value == {
            "DB1.DBW0": (ValueType.UINT16, 7),
            "BOGUS": (ValueType.INT16, None),
            "DB9.DBW0": (ValueType.UINT16, None),
            "db1.dbw0": (ValueType.INT16, 7),
        }

    @pytest.mark.asyncio
    async def test_extraction_failure_only_affects_its_address(self, server: S7Server) -> None:
        async with make_client(server) as client:
            result = await client.batch_read({"DB1.DBW0": ValueType.FLOAT32, "DB1.DBW2": None})

        assert not result.is_success
        assert set(result.errors) == {"DB1.DBW0"}
        assert result.value["DB1.DBW2"] == (ValueType.UINT16, 0)

    @pytest.mark.asyncio
    async def test_large_block_is_paginated(
        self, server: S7Server, store: S7DataStore, events: List[AreaAccessEvent]
    ) -> None:
        store.write_area(MemoryArea.DB, 1, 396, b"\x00\x00\x12\x34")
        events.clear()

        async with make_client(server, max_item_size=4) as client:
            result = await client.batch_read({"DB1.DBD392": None, "DB1.DBD396": None})

        assert result.is_success
        assert result.value["DB1.DBD396"] == (ValueType.UINT32, 0x1234)
        assert [(e.start, e.length) for e in _reads(events)] == [(392, 4), (396, 4)]

    @pytest.mark.asyncio
    async def test_rejects_non_mapping(self) -> None:
        client = S7Client("192.168.100.10")

        with pytest.raises(TypeError):
            await client.batch_read(None)  # type: ignore[arg-type]
        with pytest.raises(TypeError):
            await client.batch_read(["DB1.DBW0"])  # type: ignore[arg-type]


class TestBatchWrite:
    @pytest.mark.asyncio
    async def test_one_telegram_per_address(
        self, server: S7Server, store: S7DataStore, events: List[AreaAccessEvent]
    ) -> None:
        async with make_client(server) as client:
            result = await client.batch_write(
                {
                    "DB1.DBW0": (ValueType.INT16, -5),
                    "DB1.DBW2": (ValueType.UINT16, 7),
                    "DB1.DBX4.1": (ValueType.BOOL, True),
                    "Q0.0": True,
                }
            )

        assert result.is_success
        assert result.value == {"DB1.DBW0": True, "DB1.DBW2": True, "DB1.DBX4.1": True, "Q0.0": True}
        assert store.snapshot(MemoryArea.DB, 1)[:5] == b"\xff\xfb\x00\x07\x02"
        assert store.snapshot(MemoryArea.OUTPUT)[0] == 0x01
        assert len(_writes(events)) == 4

    @pytest.mark.asyncio
    async def test_partial_failure(self, server: S7Server, store: S7DataStore) -> None:
        async with make_client(server) as client:
            result = await client.batch_write(
                {
                    "DB1.DBB0": (ValueType.BYTE, 1),
                    "DB9.DBB0": (ValueType.BYTE, 1),
                    "DB1.DBW2": (ValueType.FLOAT32, 1.0),
                    "nonsense": (None, 3),
                    "DB1.DBB1": (ValueType.BYTE, 2),
                }
            )

        assert not result.is_success
        assert isinstance(result.error, S7PartialBatchError)
        assert set(result.errors) == {"DB9.DBB0", "DB1.DBW2", "nonsense"}
        assert result.value == {
            "DB1.DBB0": True,
            "DB9.DBB0": False,
            "DB1.DBW2": False,
            "nonsense": False,
            "DB1.DBB1": True,
        }
        assert store.snapshot(MemoryArea.DB, 1)[:2] == b"\x01\x02"

    @pytest.mark.asyncio
    async def test_rejects_non_mapping(self) -> None:
        client = S7Client("192.168.100.10")

        with pytest.raises(TypeError):
            await client.batch_write(None)  # type: ignore[arg-type]


class TestConnectionLifetime:
    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self, server: S7Server) -> None:
        async with make_client(server, max_reconnect_attempts=3) as client:
            assert (await client.read("DB1.DBB0")).is_success

            await server.close_connections()

            result = await client.read("DB1.DBB0")
            assert result.is_success
            assert client.is_connected

        assert server.connection_count == 2

    @pytest.mark.asyncio
    async def test_no_retry_when_auto_reconnect_disabled(self, server: S7Server) -> None:
        async with make_client(server, auto_reconnect=False) as client:
            assert (await client.read("DB1.DBB0")).is_success

            await server.close_connections()

            result = await client.read("DB1.DBB0")
            assert not result.is_success
            assert isinstance(result.error, S7ConnectionError)
            assert client.connection_state == ConnectionState.DISCONNECTED

            result = await client.read("DB1.DBB0")
            assert not result.is_success

        assert server.connection_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        server = S7Server()
        await server.start()
        client = S7Client("127.0.0.1", port=server.port, timeout=2.0, max_reconnect_attempts=2, reconnect_delay=0.0)
        assert (await client.connect()).is_success

        await server.stop()

        result = await client.read("DB1.DBB0")

        assert not result.is_success
        assert isinstance(result.error, S7ConnectionError)
        assert "after 2 attempts" in result.message
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_first_operation_connects(self, server: S7Server) -> None:
        client = make_client(server)

        assert (await client.read("DB1.DBB0")).is_success
        assert client.is_connected
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_disposable_opens_one_connection_per_operation(self, server: S7Server) -> None:
        client = make_client(server, lifetime=ConnectionLifetime.DISPOSABLE)

        async with client:
            assert (await client.read("DB1.DBB0")).is_success
            assert not client.is_connected
            assert (await client.write("DB1.DBB0", 3)).is_success
            assert not client.is_connected

        assert server.connection_count == 2

    @pytest.mark.asyncio
    async def test_disposable_closes_after_failure(self, server: S7Server) -> None:
        client = make_client(server, lifetime=ConnectionLifetime.DISPOSABLE)

        result = await client.read("DB9.DBB0")

        assert not result.is_success
        assert client.connection_state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_operation_timeout(self, server: S7Server) -> None:
        server.response_delay = 0.3

        async with make_client(server) as client:
            result = await client.read("DB1.DBB0", timeout=0.05)

            assert not result.is_success
            assert isinstance(result.error, S7TimeoutError)
            assert client.connection_state == ConnectionState.DISCONNECTED

            server.response_delay = 0.0
            assert (await client.read("DB1.DBB0")).is_success

        await asyncio.sleep(0.35)

    @pytest.mark.asyncio
    async def test_receive_timeout(self, server: S7Server) -> None:
        server.response_delay = 0.3

        async with make_client(server, receive_timeout=0.05, auto_reconnect=False) as client:
            result = await client.read("DB1.DBB0")

        assert not result.is_success
        assert isinstance(result.error, S7TimeoutError)
        await asyncio.sleep(0.35)

    @pytest.mark.asyncio
    async def test_context_manager_raises_on_connect_failure(self) -> None:
        server = S7Server()
        await server.start()
        port = server.port
        await server.stop()

        with pytest.raises(S7ConnectionError):
            async with S7Client("127.0.0.1", port=port, timeout=2.0):
                pass


class TestSessionHandling:
    @pytest.mark.asyncio
    async def test_disposable_connect_does_not_leak_its_socket(self, server: S7Server) -> None:
        client = make_client(server, lifetime=ConnectionLifetime.DISPOSABLE)

        assert (await client.connect()).is_success
        first_transport = client._transport
        assert (await client.read("DB1.DBB0")).is_success
        await client.disconnect()

        assert first_transport is not None
        assert not first_transport.is_open
        assert server.connection_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_reads_are_serialized(self, server: S7Server, store: S7DataStore) -> None:
        for i in range(10):
            store.write_area(MemoryArea.DB, 1, 2 * i, (i * 7).to_bytes(2, byteorder="big"))
        server.response_delay = 0.01

        async with make_client(server) as client:
            results = await asyncio.gather(*(client.read(f"DB1.DBW{2 * i}") for i in range(10)))

        assert all(result.is_success for result in results)
        assert [result.value for result in results] == [i * 7 for i in range(10)]
        assert server.connection_count == 1

    @pytest.mark.asyncio
    async def test_reconnect_delay_is_slept_between_attempts(self, monkeypatch: pytest.MonkeyPatch) -> None:
        server = S7Server()
        await server.start()
        port = server.port
        await server.stop()

        delays: List[float] = []
        real_sleep = asyncio.sleep

        async def recording_sleep(delay: float, *args: Any, **kwargs: Any) -> Any:
            delays.append(delay)
            return await real_sleep(delay, *args, **kwargs)

        monkeypatch.setattr(asyncio, "sleep", recording_sleep)
        client = S7Client("127.0.0.1", port=port, timeout=2.0, max_reconnect_attempts=3, reconnect_delay=0.013)

        result = await client.read("DB1.DBB0")

        assert not result.is_success
        assert "after 3 attempts" in result.message
        assert [delay for delay in delays if delay == 0.013] == [0.013, 0.013]

    @pytest.mark.asyncio
    async def test_batch_read_rerun_after_reconnect_drops_stale_errors(
        self, server: S7Server, store: S7DataStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store.write_area(MemoryArea.DB, 1, 0, b"\x00\x05")
        store.write_area(MemoryArea.DB, 2, 0, b"\x00\x06")
        dispatch = server._dispatch
        garbled: List[bytes] = []

        async def garble_first_read(frame: bytes) -> bytes:
            if frame[5] == 0xF0 and frame[17] == Function.READ_VAR.value and not garbled:
                garbled.append(frame)
                return b"\x04\x00\x00\x04"  # Unsupported TPKT version
            return await dispatch(frame)

        monkeypatch.setattr(server, "_dispatch", garble_first_read)

        async with make_client(server) as client:
            result = await client.batch_read({"DB1.DBW0": None, "DB2.DBW0": None})

        assert result.is_success, result.message
        assert result.errors == {}
        assert result.value == {"DB1.DBW0": (ValueType.UINT16, 5), "DB2.DBW0": (ValueType.UINT16, 6)}
        assert server.connection_count == 2

    @pytest.mark.asyncio
    async def test_batch_write_rerun_after_reconnect_skips_written_addresses(
        self, server: S7Server, store: S7DataStore, events: List[AreaAccessEvent], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        dispatch = server._dispatch
        write_jobs: List[bytes] = []

        async def garble_second_write(frame: bytes) -> bytes:
            if frame[5] == 0xF0 and frame[17] == Function.WRITE_VAR.value:
                write_jobs.append(frame)
                if len(write_jobs) == 2:
                    return b"\x04\x00\x00\x04"
            return await dispatch(frame)

        monkeypatch.setattr(server, "_dispatch", garble_second_write)

        async with make_client(server) as client:
            result = await client.batch_write(
                {
                    "DB1.DBB0": (ValueType.BYTE, 1),
                    "DB1.DBB1": (ValueType.BYTE, 2),
                    "DB1.DBB2": (ValueType.BYTE, 3),
                }
            )

        assert result.is_success, result.message
        assert result.value == {"DB1.DBB0": True, "DB1.DBB1": True, "DB1.DBB2": True}
        assert store.snapshot(MemoryArea.DB, 1)[:3] == b"\x01\x02\x03"
        assert [event.start for event in _writes(events)] == [0, 1, 2]
        assert server.connection_count == 2


def test_client_built_outside_event_loop() -> None:
    client = S7Client("127.0.0.1", timeout=2.0, reconnect_delay=0.0)
    assert client._lock is None

    async def main() -> List[OperationResult]:
        async with S7Server() as server:
            client.port = server.port
            results = await asyncio.gather(client.connect(), client.read("M0"), client.read("M1"))
            await client.disconnect()
        return list(results)

    results = asyncio.run(main())

    assert all(result.is_success for result in results)


class FakeTransport:
    """Stands in for S7Transport, answering each exchange with the next canned frame."""

    responses: List[bytes] = []
    states: List[ConnectionState] = []
    client: Optional[S7Client] = None

    def __init__(self, host: str, port: int) -> None:
        self.is_open = False

    def _record_state(self) -> None:
        assert self.client is not None
        self.states.append(self.client.connection_state)

    async def open(self, timeout: Optional[float] = None) -> None:
        self._record_state()
        self.is_open = True

    async def exchange(
        self, data: bytes, send_timeout: Optional[float] = None, receive_timeout: Optional[float] = None
    ) -> bytes:
        self._record_state()
        return self.responses.pop(0)

    async def close(self) -> None:
        self.is_open = False


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> S7Client:
    client = S7Client("192.168.100.10", 0, 1)
    monkeypatch.setattr(FakeTransport, "responses", [])
    monkeypatch.setattr(FakeTransport, "states", [])
    monkeypatch.setattr(FakeTransport, "client", client)
    monkeypatch.setattr("aioS7.client.S7Transport", FakeTransport)
    return client


class TestHandshake:
    @pytest.mark.asyncio
    async def test_state_transitions(self, fake_client: S7Client) -> None:
        FakeTransport.responses.extend([build_connection_confirm(CONNECT_TELEGRAM), build_setup_response(1, 240)])

        result = await fake_client.connect()

        assert result.is_success
        assert result.value == 240
        assert FakeTransport.states == [
            ConnectionState.CONNECTING,
            ConnectionState.HANDSHAKING,
            ConnectionState.HANDSHAKING,
        ]
        assert fake_client.connection_state == ConnectionState.READY
        assert fake_client.pdu_size == 240

    @pytest.mark.asyncio
    async def test_refused_connection_request(self, fake_client: S7Client) -> None:
        FakeTransport.responses.append(bytes.fromhex("03 00 00 0b 06 80 00 00 00 00 05"))

        result = await fake_client.connect()

        assert not result.is_success
        assert isinstance(result.error, S7ConnectionError)
        assert "refused" in result.message
        assert fake_client.connection_state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_garbage_setup_reply(self, fake_client: S7Client) -> None:
        FakeTransport.responses.extend([build_connection_confirm(CONNECT_TELEGRAM), b"\x03\x00\x00\x07\x02\xf0\x80"])

        result = await fake_client.connect()

        assert not result.is_success
        assert isinstance(result.error, S7ProtocolError)
        assert fake_client.connection_state == ConnectionState.DISCONNECTED

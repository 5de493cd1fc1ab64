import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .address import AddressDescriptor
from .address_parser import parse_address, parse_addresses
from .constants import (
    DEFAULT_PDU_SIZE,
    DEFAULT_PORT,
    MAX_BLOCK_SIZE,
    MAX_ITEM_SIZE,
    MIN_EFFICIENCY_RATIO,
    READ_PDU_OVERHEAD,
    WRITE_PDU_OVERHEAD,
    ConnectionLifetime,
    ConnectionState,
    PlcFamily,
    Unit,
    ValueType,
)
from .errors import (
    S7ConnectionError,
    S7Error,
    S7PartialBatchError,
    S7ProtocolError,
    S7RemoteRejectedError,
    S7TimeoutError,
    S7ValueError,
)
from .optimizer import AddressBlock, optimize_blocks
from .requests import (
    ConnectionRequest,
    PDUNegotiationRequest,
    ReadRequest,
    WriteRequest,
    read_item,
    write_item,
)
from .responses import (
    ConnectionResponse,
    PDUNegotiationResponse,
    check_return_code,
    extract_area_bytes,
    extract_value,
    parse_write_response,
)
from .result import OperationResult
from .transport import S7Transport
from .values import ByteOrder, Value, value_to_wire_bytes

logger = logging.getLogger(__name__)

BatchReadValues = Dict[str, Tuple[Optional[ValueType], Optional[Value]]]
BatchWriteValues = Mapping[str, Union[Tuple[Optional[ValueType], Value], Value]]

# Per item failures that leave the session usable
ITEM_ERRORS = (S7RemoteRejectedError, S7ProtocolError, S7ValueError)


class S7Client:
    """The S7Client class provides an asyncio interface for communicating with a Siemens S7 programmable logic controller (PLC) over ISO-on-TCP.
    It reads and writes symbolic addresses one at a time or in batches, merging batch reads into as few block reads as possible.

    Every public coroutine returns an :class:`OperationResult` instead of raising on PLC or network failures.

    Attributes:
        address (str): The IP address of the PLC.
        rack (int): The rack number of the PLC.
        slot (int): The slot number of the PLC.
        plc_family (PlcFamily): Selects the connection handshake telegrams. Defaults to PlcFamily.S7_1200.
        port (int): The port number for the network connection. Defaults to 102.
        timeout (float): Default timeout in seconds for connecting, sending and receiving. Defaults to 5.
        lifetime (ConnectionLifetime): PERSISTENT keeps one connection open, DISPOSABLE opens one per operation.
        auto_reconnect (bool): Reconnect a persistent session when it is found disconnected. Defaults to True.
        max_reconnect_attempts (int): Connection attempts made by one reconnect. Defaults to 3.
        reconnect_delay (float): Seconds slept between reconnect attempts. Defaults to 1.
        byte_order (ByteOrder): Byte order of multi-byte values. Defaults to ByteOrder.ABCD.
        max_item_size (int): Largest payload carried by one read or write telegram. Defaults to 180.
        min_efficiency_ratio (float): Batch read merge threshold. Defaults to 0.8.
        max_block_size (int): Largest merged batch read block. Defaults to 180.
    """

    def __init__(
        self,
        address: str,
        rack: int = 0,
        slot: int = 1,
        plc_family: PlcFamily = PlcFamily.S7_1200,
        port: int = DEFAULT_PORT,
        timeout: float = 5.0,
        connect_timeout: Optional[float] = None,
        receive_timeout: Optional[float] = None,
        send_timeout: Optional[float] = None,
        lifetime: ConnectionLifetime = ConnectionLifetime.PERSISTENT,
        auto_reconnect: bool = True,
        max_reconnect_attempts: int = 3,
        reconnect_delay: float = 1.0,
        byte_order: ByteOrder = ByteOrder.ABCD,
        max_item_size: int = MAX_ITEM_SIZE,
        min_efficiency_ratio: float = MIN_EFFICIENCY_RATIO,
        max_block_size: int = MAX_BLOCK_SIZE,
    ) -> None:
        self.address = address
        self.rack = rack
        self.slot = slot
        self.plc_family = plc_family
        self.port = port
        self.timeout = timeout
        self.connect_timeout = timeout if connect_timeout is None else connect_timeout
        self.receive_timeout = timeout if receive_timeout is None else receive_timeout
        self.send_timeout = timeout if send_timeout is None else send_timeout
        self.lifetime = lifetime
        self.auto_reconnect = auto_reconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.byte_order = byte_order
        self.max_item_size = max_item_size
        self.min_efficiency_ratio = min_efficiency_ratio
        self.max_block_size = max_block_size

        self._validate()

        self.pdu_size: int = DEFAULT_PDU_SIZE
        self.max_jobs_calling: int = 1
        self.max_jobs_called: int = 1

        self._transport: Optional[S7Transport] = None
        self._state = ConnectionState.DISCONNECTED
        self._lock: Optional[asyncio.Lock] = None
        self._pdu_reference = 0
        self._last_error: Optional[S7Error] = None

    def _validate(self) -> None:
        if not isinstance(self.address, str) or not self.address:
            raise ValueError(f"Invalid 'address': Expected a non empty string, got {self.address!r}.")
        if not 0 <= self.rack <= 7:
            raise ValueError(f"Invalid 'rack': Expected value between 0 and 7, got {self.rack}.")
        if not 0 <= self.slot <= 31:
            raise ValueError(f"Invalid 'slot': Expected value between 0 and 31, got {self.slot}.")
        if not isinstance(self.plc_family, PlcFamily):
            raise ValueError(f"Invalid 'plc_family': Expected PlcFamily, got {self.plc_family!r}.")
        if not 0 < self.port <= 0xFFFF:
            raise ValueError(f"Invalid 'port': Expected value between 1 and 65535, got {self.port}.")
        for name in ("timeout", "connect_timeout", "receive_timeout", "send_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Invalid '{name}': Expected positive value, got {getattr(self, name)}.")
        if not isinstance(self.lifetime, ConnectionLifetime):
            raise ValueError(f"Invalid 'lifetime': Expected ConnectionLifetime, got {self.lifetime!r}.")
        if self.max_reconnect_attempts < 1:
            raise ValueError(
                f"Invalid 'max_reconnect_attempts': Expected at least 1, got {self.max_reconnect_attempts}."
            )
        if self.reconnect_delay < 0:
            raise ValueError(f"Invalid 'reconnect_delay': Expected value >= 0, got {self.reconnect_delay}.")
        if not isinstance(self.byte_order, ByteOrder):
            raise ValueError(f"Invalid 'byte_order': Expected ByteOrder, got {self.byte_order!r}.")
        if self.max_item_size < 1:
            raise ValueError(f"Invalid 'max_item_size': Expected positive value, got {self.max_item_size}.")
        if not 0 <= self.min_efficiency_ratio <= 1:
            raise ValueError(
                f"Invalid 'min_efficiency_ratio': Expected value in [0, 1], got {self.min_efficiency_ratio}."
            )
        if self.max_block_size < 1:
            raise ValueError(f"Invalid 'max_block_size': Expected positive value, got {self.max_block_size}.")

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._state == ConnectionState.READY
            and self._transport is not None
            and self._transport.is_open
        )

    @property
    def last_error(self) -> Optional[S7Error]:
        return self._last_error

    async def __aenter__(self) -> "S7Client":
        if self.lifetime == ConnectionLifetime.PERSISTENT:
            result = await self.connect()
            if not result.is_success:
                assert result.error is not None, "Unreachable"
                raise result.error
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    def _session_lock(self) -> asyncio.Lock:
        # Created inside the running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _next_pdu_reference(self) -> int:
        self._pdu_reference += 1
        if self._pdu_reference > 0xFFFF:
            self._pdu_reference = 1
        return self._pdu_reference

    # Session handling, always called with the session lock held

    async def _open_session(self) -> None:
        if self._transport is not None:
            await self._close_session()

        self._state = ConnectionState.CONNECTING
        transport = S7Transport(self.address, self.port)
        try:
            await transport.open(timeout=self.connect_timeout)
            self._transport = transport

            self._state = ConnectionState.HANDSHAKING
            connection_request = ConnectionRequest(plc_family=self.plc_family, rack=self.rack, slot=self.slot)
            connection_response = ConnectionResponse(
                await self._exchange(connection_request.serialize())
            ).parse()
            if not connection_response["success"]:
                cotp = connection_response["cotp"]
                raise S7ConnectionError(
                    f"PLC refused the connection: {cotp.get('reason_description', 'no reason given')}"
                )

            pdu_negotiation_request = PDUNegotiationRequest(plc_family=self.plc_family)
            (
                self.max_jobs_calling,
                self.max_jobs_called,
                self.pdu_size,
            ) = PDUNegotiationResponse(await self._exchange(pdu_negotiation_request.serialize())).parse()
        except (S7Error, asyncio.CancelledError):
            await transport.close()
            self._transport = None
            self._state = ConnectionState.DISCONNECTED
            raise

        self._state = ConnectionState.READY
        logger.info(
            "Connected to %s:%s (rack %s, slot %s, %s), PDU size %s",
            self.address,
            self.port,
            self.rack,
            self.slot,
            self.plc_family.value,
            self.pdu_size,
        )

    async def _close_session(self) -> None:
        transport = self._transport
        self._transport = None
        self._state = ConnectionState.DISCONNECTED
        if transport is not None:
            await transport.close()

    async def _reconnect(self) -> None:
        await self._close_session()

        last_error: Optional[S7Error] = None
        for attempt in range(1, self.max_reconnect_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self.reconnect_delay)
            try:
                await self._open_session()
            except S7Error as e:
                last_error = e
                logger.warning(
                    "Reconnect attempt %s/%s to %s:%s failed: %s",
                    attempt,
                    self.max_reconnect_attempts,
                    self.address,
                    self.port,
                    e,
                )
                continue

            logger.info("Reconnected to %s:%s after %s attempt(s)", self.address, self.port, attempt)
            return

        logger.error("Giving up on %s:%s after %s reconnect attempts", self.address, self.port, self.max_reconnect_attempts)
        raise S7ConnectionError(
            f"Reconnect failed after {self.max_reconnect_attempts} attempts: {last_error}"
        ) from last_error

    async def _exchange(self, telegram: bytes) -> bytes:
        if self._transport is None:
            raise S7ConnectionError("Not connected to PLC")

        try:
            return await self._transport.exchange(
                telegram, send_timeout=self.send_timeout, receive_timeout=self.receive_timeout
            )
        except (S7ConnectionError, S7TimeoutError, S7ProtocolError):
            # The stream is no longer in a known state
            await self._close_session()
            raise

    async def _with_session(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        if self.lifetime == ConnectionLifetime.DISPOSABLE:
            await self._open_session()
            try:
                return await operation()
            finally:
                await self._close_session()

        if not self.is_connected:
            if not self.auto_reconnect:
                raise S7ConnectionError("Not connected to PLC. Call 'connect' before performing operations.")
            await self._reconnect()

        try:
            return await operation()
        except S7ConnectionError as e:
            if not self.auto_reconnect:
                raise
            logger.warning("Connection to %s:%s lost: %s", self.address, self.port, e)
            await self._reconnect()
            return await operation()

    async def _run(
        self,
        name: str,
        operation: Callable[[], Awaitable[Any]],
        timeout: Optional[float],
        failure_value: Any = None,
    ) -> OperationResult:
        async with self._session_lock():
            try:
                outcome = await asyncio.wait_for(self._with_session(operation), timeout=timeout)
            except asyncio.TimeoutError:
                await self._close_session()
                error: S7Error = S7TimeoutError(f"{name} timed out after {timeout}s")
            except S7Error as e:
                error = e
            else:
                if isinstance(outcome, OperationResult):
                    if outcome.error is not None:
                        self._last_error = outcome.error
                    return outcome
                return OperationResult.success(value=outcome)

        self._last_error = error
        logger.warning("%s failed: %s", name, error)
        return OperationResult.failure(error, value=failure_value)

    # Paginated transfers

    def _read_chunk_limit(self) -> int:
        return max(1, min(self.max_item_size, self.pdu_size - READ_PDU_OVERHEAD))

    def _write_chunk_limit(self) -> int:
        return max(1, min(self.max_item_size, self.pdu_size - WRITE_PDU_OVERHEAD))

    async def _read_region(self, target: Union[AddressDescriptor, AddressBlock], length: int) -> bytes:
        data = bytearray()
        offset = 0
        limit = self._read_chunk_limit()

        while offset < length:
            chunk_length = min(limit, length - offset)
            request = ReadRequest(
                items=[read_item(target, offset=offset, length=chunk_length)],
                pdu_reference=self._next_pdu_reference(),
            )
            response = await self._exchange(request.serialize())
            data.extend(extract_area_bytes(response, chunk_length))
            offset += chunk_length

        return bytes(data)

    async def _write_region(self, descriptor: AddressDescriptor, data: bytes) -> None:
        offset = 0
        limit = self._write_chunk_limit()

        while offset < len(data):
            chunk = data[offset : offset + limit]
            request = WriteRequest(
                items=[(write_item(descriptor, chunk, offset=offset), chunk)],
                pdu_reference=self._next_pdu_reference(),
            )
            return_codes = parse_write_response(await self._exchange(request.serialize()))
            if not return_codes:
                raise S7ProtocolError(f"{descriptor}: write response carries no return code")
            check_return_code(return_codes[0], f"Write {descriptor}")
            offset += len(chunk)

    # Public API

    async def connect(self, timeout: Optional[float] = None) -> OperationResult:
        """Establishes the TCP connection and runs the COTP and PDU negotiation handshake.

        Args:
            timeout (float | None): Overall deadline for the handshake in seconds.

        Returns:
            OperationResult: Success once the session is ready.
        """
        async with self._session_lock():
            if self.is_connected:
                return OperationResult.success(message="Already connected")
            try:
                await asyncio.wait_for(self._open_session(), timeout=timeout)
            except asyncio.TimeoutError:
                await self._close_session()
                error: S7Error = S7TimeoutError(f"Connect timed out after {timeout}s")
            except S7Error as e:
                error = e
            else:
                return OperationResult.success(value=self.pdu_size, message="Connected")

        self._last_error = error
        logger.warning("Connection to %s:%s failed: %s", self.address, self.port, error)
        return OperationResult.failure(error)

    async def disconnect(self) -> OperationResult:
        """Closes the TCP connection with the S7 PLC."""
        async with self._session_lock():
            was_connected = self._transport is not None
            await self._close_session()
        if was_connected:
            logger.info("Disconnected from %s:%s", self.address, self.port)
        return OperationResult.success(message="Disconnected")

    async def read_bytes(self, address: str, length: int, timeout: Optional[float] = None) -> OperationResult:
        """Reads ``length`` raw bytes starting at the byte of ``address``.

        Transfers larger than ``max_item_size`` are split into sequential reads
        and concatenated; any failing part fails the whole read.

        Example:
            >>> result = await client.read_bytes("DB1.DBB0", 400)
            >>> len(result.value)
            400
        """
        if isinstance(length, bool) or not isinstance(length, int):
            raise TypeError(f"length must be an int, got {type(length).__name__}")
        if length <= 0:
            raise ValueError(f"length must be positive, got {length}")

        try:
            descriptor = parse_address(address)
        except S7Error as e:
            self._last_error = e
            return OperationResult.failure(e)

        return await self._run(
            f"Read of {length} bytes at {address}",
            lambda: self._read_region(descriptor, length),
            timeout,
        )

    async def write_bytes(self, address: str, data: bytes, timeout: Optional[float] = None) -> OperationResult:
        """Writes raw ``data`` starting at the byte of ``address``, split like :meth:`read_bytes`."""
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError(f"data must be bytes, got {type(data).__name__}")
        if not data:
            raise ValueError("data must not be empty")

        try:
            descriptor = parse_address(address)
        except S7Error as e:
            self._last_error = e
            return OperationResult.failure(e)

        payload = bytes(data)
        if descriptor.is_bit:
            # Raw bytes always cover whole bytes
            descriptor = replace(descriptor, unit=Unit.BYTE, bit_offset=0, target_type=None)
        return await self._run(
            f"Write of {len(payload)} bytes at {address}",
            lambda: self._write_region(descriptor, payload),
            timeout,
        )

    async def read(
        self, address: str, value_type: Optional[ValueType] = None, timeout: Optional[float] = None
    ) -> OperationResult:
        """Reads one typed value from the PLC.

        Args:
            address (str): Symbolic address such as ``'DB1.DBW10'`` or ``'M7.1'``.
            value_type (ValueType | None): Interpretation of the fetched bytes. Defaults to the natural unsigned type of the unit.
            timeout (float | None): Overall deadline for the operation in seconds.

        Returns:
            OperationResult: ``value`` holds the decoded value on success.

        Example:
            >>> async with S7Client('192.168.100.10', 0, 1) as client:
            ...     result = await client.read('DB1.DBD4', ValueType.FLOAT32)
            >>> result.value
            20.5
        """
        try:
            descriptor = parse_address(address, value_type)
        except S7Error as e:
            self._last_error = e
            return OperationResult.failure(e)

        async def operation() -> Value:
            # Bits are fetched with their whole byte and masked
            area_bytes = await self._read_region(descriptor, 1 if descriptor.is_bit else descriptor.size)
            return extract_value(area_bytes, 0, descriptor, self.byte_order)

        return await self._run(f"Read of {address}", operation, timeout)

    async def write(
        self,
        address: str,
        value: Value,
        value_type: Optional[ValueType] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Writes one typed value to the PLC.

        Example:
            >>> await client.write('DB1.DBX5.3', True)
            OperationResult(is_success=True, ...)
        """
        try:
            descriptor = parse_address(address, value_type)
            payload = value_to_wire_bytes(descriptor, value, self.byte_order)
        except S7Error as e:
            self._last_error = e
            return OperationResult.failure(e)

        return await self._run(
            f"Write of {address}", lambda: self._write_region(descriptor, payload), timeout
        )

    async def batch_read(
        self, addresses: Mapping[str, Optional[ValueType]], timeout: Optional[float] = None
    ) -> OperationResult:
        """Reads many addresses with as few telegrams as possible.

        Addresses are merged into blocks by :func:`optimize_blocks`, each
        block is read (paginated when needed) and every address is decoded
        from its block. Unparseable addresses and failing blocks leave
        ``None`` values and are listed in ``errors`` while the rest still
        decode.

        Args:
            addresses (Mapping[str, ValueType | None]): Address text to requested value type.
            timeout (float | None): Overall deadline for the batch in seconds.

        Returns:
            OperationResult: ``value`` maps every input address to ``(value_type, value_or_None)``.

        Example:
            >>> result = await client.batch_read({'DB1.DBW0': None, 'DB1.DBD2': ValueType.FLOAT32, 'M0.1': None})
            >>> result.value
            {'DB1.DBW0': (ValueType.UINT16, 42), 'DB1.DBD2': (ValueType.FLOAT32, 1.5), 'M0.1': (ValueType.BOOL, True)}
        """
        if addresses is None:
            raise TypeError("addresses must be a mapping, got None")
        if not isinstance(addresses, Mapping):
            raise TypeError(f"addresses must be a mapping, got {type(addresses).__name__}")

        descriptors = parse_addresses(addresses)

        values: BatchReadValues = {}
        errors: Dict[str, str] = {}
        for address, value_type in addresses.items():
            if address in descriptors:
                values[address] = (descriptors[address].value_type, None)
            else:
                values[address] = (value_type, None)
                errors[address] = "invalid address"

        blocks = optimize_blocks(
            descriptors.values(),
            min_efficiency_ratio=self.min_efficiency_ratio,
            max_block_size=self.max_block_size,
        )
        logger.debug("Batch read of %s addresses planned as %s block(s)", len(descriptors), len(blocks))

        async def operation() -> OperationResult:
            # The operation reruns after a reconnect
            for address, descriptor in descriptors.items():
                values[address] = (descriptor.value_type, None)
                errors.pop(address, None)

            for block in blocks:
                try:
                    area_bytes = await self._read_region(block, block.length)
                except ITEM_ERRORS as e:
                    logger.warning(
                        "Block %s DB%s [%s:%s] failed: %s",
                        block.memory_area.value,
                        block.db_number,
                        block.start,
                        block.end,
                        e,
                    )
                    for member in block.members:
                        errors[member.address] = str(e)
                    continue

                for member in block.members:
                    try:
                        value = extract_value(
                            area_bytes, block.relative_offset(member), member, self.byte_order
                        )
                    except S7ValueError as e:
                        errors[member.address] = str(e)
                        continue
                    values[member.address] = (member.value_type, value)

            return self._batch_outcome(values, errors, len(addresses))

        return await self._run(f"Batch read of {len(addresses)} addresses", operation, timeout, failure_value=values)

    async def batch_write(self, values: BatchWriteValues, timeout: Optional[float] = None) -> OperationResult:
        """Writes many addresses, one telegram per address.

        Args:
            values (Mapping): Address text to ``(value_type, value)``. A bare value uses the natural type of the address.
            timeout (float | None): Overall deadline for the batch in seconds.

        Returns:
            OperationResult: Success only when every address was written. ``value`` maps each address to its outcome.

        Example:
            >>> await client.batch_write({'DB1.DBW0': (ValueType.INT16, -5), 'Q0.1': (ValueType.BOOL, True)})
        """
        if values is None:
            raise TypeError("values must be a mapping, got None")
        if not isinstance(values, Mapping):
            raise TypeError(f"values must be a mapping, got {type(values).__name__}")

        outcomes: Dict[str, bool] = {}
        errors: Dict[str, str] = {}
        pending: List[Tuple[str, AddressDescriptor, bytes]] = []

        for address, entry in values.items():
            outcomes[address] = False
            if isinstance(entry, tuple):
                value_type, value = entry
            else:
                value_type, value = None, entry
            try:
                descriptor = parse_address(address, value_type)
                pending.append((address, descriptor, value_to_wire_bytes(descriptor, value, self.byte_order)))
            except S7Error as e:
                errors[address] = str(e)

        async def operation() -> OperationResult:
            for address, descriptor, payload in pending:
                # Addresses written before a reconnect are not written twice
                if outcomes[address]:
                    continue
                errors.pop(address, None)
                try:
                    await self._write_region(descriptor, payload)
                except ITEM_ERRORS as e:
                    logger.warning("Write of %s failed: %s", address, e)
                    errors[address] = str(e)
                    continue
                outcomes[address] = True

            return self._batch_outcome(outcomes, errors, len(values))

        return await self._run(f"Batch write of {len(values)} addresses", operation, timeout, failure_value=outcomes)

    @staticmethod
    def _batch_outcome(value: Any, errors: Dict[str, str], total: int) -> OperationResult:
        if not errors:
            return OperationResult.success(value=value)

        message = "; ".join(f"{address}: {reason}" for address, reason in errors.items())
        message = f"{len(errors)} of {total} addresses failed: {message}"
        return OperationResult(
            is_success=False,
            message=message,
            value=value,
            error=S7PartialBatchError(message, failures=errors),
            errors=dict(errors),
        )

import struct
from typing import List, NamedTuple, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

from .address import AddressDescriptor
from .constants import (
    ADDRESS_SPEC_LENGTH,
    CONNECT_TELEGRAM,
    CONNECT_TELEGRAM_200,
    CONNECT_TELEGRAM_200_SMART,
    COTP_DATA_HEADER,
    COTP_SIZE,
    PARAM_SIZE_ITEM,
    PARAM_SIZE_NO_ITEMS,
    PROTOCOL_ID,
    RACK_SLOT_OFFSET,
    REQ_OVERHEAD,
    S7_400_TSAP_OFFSET,
    SETUP_TELEGRAM,
    SETUP_TELEGRAM_200,
    SETUP_TELEGRAM_200_SMART,
    SYNTAX_ID_S7ANY,
    TPKT_SIZE,
    TPKT_VERSION,
    VARIABLE_SPEC,
    DataTransportSize,
    Function,
    MessageType,
    PlcFamily,
    TransportSize,
)
from .errors import S7ProtocolError
from .optimizer import AddressBlock

ReadTarget = Union[AddressDescriptor, AddressBlock]

S7_HEADER_SIZE = 10
TPKT_LENGTH_SLICE = slice(2, 4)
PDU_REFERENCE_SLICE = slice(TPKT_SIZE + COTP_SIZE + 4, TPKT_SIZE + COTP_SIZE + 6)
PARAMETER_LENGTH_SLICE = slice(TPKT_SIZE + COTP_SIZE + 6, TPKT_SIZE + COTP_SIZE + 8)
DATA_LENGTH_SLICE = slice(TPKT_SIZE + COTP_SIZE + 8, TPKT_SIZE + COTP_SIZE + 10)
HEADER_SIZE = TPKT_SIZE + COTP_SIZE + S7_HEADER_SIZE


class ItemSpec(NamedTuple):
    """One 12-byte S7ANY address specification."""

    area_code: int
    db_number: int
    start: int
    bit_offset: int
    count: int
    transport_size: TransportSize

    @property
    def is_bit(self) -> bool:
        return self.transport_size == TransportSize.BIT

    @property
    def byte_length(self) -> int:
        return 1 if self.is_bit else self.count

    def serialize(self) -> bytes:
        packet = bytearray()
        packet.extend(VARIABLE_SPEC.to_bytes(1, byteorder="big"))  # Variable specification
        packet.extend(ADDRESS_SPEC_LENGTH.to_bytes(1, byteorder="big"))  # Length of following address specification
        packet.extend(SYNTAX_ID_S7ANY.to_bytes(1, byteorder="big"))  # Syntax ID: S7ANY (0x10)
        packet.extend(self.transport_size.value.to_bytes(1, byteorder="big"))  # Transport size
        packet.extend(self.count.to_bytes(2, byteorder="big"))  # Length
        packet.extend(self.db_number.to_bytes(2, byteorder="big"))  # DB Number
        packet.extend(self.area_code.to_bytes(1, byteorder="big"))  # Area Code (0x84 for DB)
        packet.extend((self.start * 8 + self.bit_offset).to_bytes(3, byteorder="big"))  # Address
        return bytes(packet)


def read_item(target: ReadTarget, offset: int = 0, length: Optional[int] = None) -> ItemSpec:
    """Address specification reading *target*, or the *length* bytes at *offset* inside it.

    Merged blocks are always read byte-wise; a bare bit descriptor is read
    with bit transport unless a byte window is requested explicitly.
    """
    if isinstance(target, AddressBlock):
        return ItemSpec(
            area_code=target.area_code,
            db_number=target.db_number,
            start=target.start + offset,
            bit_offset=0,
            count=target.length - offset if length is None else length,
            transport_size=TransportSize.BYTE,
        )

    if target.is_bit and offset == 0 and length is None:
        return ItemSpec(
            area_code=target.area_code,
            db_number=target.db_number,
            start=target.start,
            bit_offset=target.bit_offset,
            count=1,
            transport_size=TransportSize.BIT,
        )

    return ItemSpec(
        area_code=target.area_code,
        db_number=target.db_number,
        start=target.start + offset,
        bit_offset=0,
        count=target.size - offset if length is None else length,
        transport_size=TransportSize.BYTE,
    )


def write_item(descriptor: AddressDescriptor, data: bytes, offset: int = 0) -> ItemSpec:
    """Address specification for writing *data* at *offset* bytes past *descriptor*."""
    if descriptor.is_bit and offset == 0 and len(data) == 1:
        return ItemSpec(
            area_code=descriptor.area_code,
            db_number=descriptor.db_number,
            start=descriptor.start,
            bit_offset=descriptor.bit_offset,
            count=1,
            transport_size=TransportSize.BIT,
        )

    return ItemSpec(
        area_code=descriptor.area_code,
        db_number=descriptor.db_number,
        start=descriptor.start + offset,
        bit_offset=0,
        count=len(data),
        transport_size=TransportSize.BYTE,
    )


def _init_s7_packet(message_type: MessageType, pdu_reference: int) -> Tuple[bytearray, int]:
    packet = bytearray()
    packet.extend(b"\x03\x00\x00\x00")  # TPKT header with placeholder length
    packet.extend(COTP_DATA_HEADER)  # COTP header
    packet.extend(PROTOCOL_ID.to_bytes(1, byteorder="big"))  # S7 protocol id
    packet.extend(message_type.value.to_bytes(1, byteorder="big"))
    packet.extend(b"\x00\x00")  # Redundancy identification (reserved)
    packet.extend(pdu_reference.to_bytes(2, byteorder="big"))  # PDU reference
    packet.extend(b"\x00\x00")  # Parameter length placeholder
    packet.extend(b"\x00\x00")  # Data length placeholder

    return packet, HEADER_SIZE


def _finalize_packet(packet: bytearray, parameter_start: int, data_start: int) -> None:
    parameter_length = data_start - parameter_start
    data_length = len(packet) - data_start

    packet[PARAMETER_LENGTH_SLICE] = parameter_length.to_bytes(2, byteorder="big")
    packet[DATA_LENGTH_SLICE] = data_length.to_bytes(2, byteorder="big")
    packet[TPKT_LENGTH_SLICE] = len(packet).to_bytes(2, byteorder="big")


@runtime_checkable
class Request(Protocol):
    request: bytearray

    def serialize(self) -> bytes:
        return bytes(self.request)


class ConnectionRequest(Request):
    """COTP connection request carrying the family specific TSAP pair."""

    def __init__(self, plc_family: PlcFamily, rack: int, slot: int) -> None:
        self.request = self.__prepare_packet(plc_family=plc_family, rack=rack, slot=slot)

    def __prepare_packet(self, plc_family: PlcFamily, rack: int, slot: int) -> bytearray:
        if plc_family == PlcFamily.S7_200:
            return bytearray(CONNECT_TELEGRAM_200)
        if plc_family == PlcFamily.S7_200_SMART:
            return bytearray(CONNECT_TELEGRAM_200_SMART)

        packet = bytearray(CONNECT_TELEGRAM)

        # Rack and Slot
        packet[RACK_SLOT_OFFSET] = rack * 0x20 + slot

        if plc_family == PlcFamily.S7_400:
            packet[S7_400_TSAP_OFFSET] = 0x00

        return packet


class PDUNegotiationRequest(Request):
    """Setup communication request negotiating the PDU size with the S7 device."""

    def __init__(self, plc_family: PlcFamily) -> None:
        if plc_family == PlcFamily.S7_200:
            self.request = bytearray(SETUP_TELEGRAM_200)
        elif plc_family == PlcFamily.S7_200_SMART:
            self.request = bytearray(SETUP_TELEGRAM_200_SMART)
        else:
            self.request = bytearray(SETUP_TELEGRAM)


class ReadRequest(Request):
    """Request for reading data from an S7 device."""

    def __init__(self, items: Sequence[ItemSpec], pdu_reference: int = 1) -> None:
        if not items:
            raise ValueError("A read request needs at least one item")
        self.items = list(items)
        self.pdu_reference = pdu_reference
        self.request = self.__prepare_packet(items=self.items, pdu_reference=pdu_reference)

    def __prepare_packet(self, items: Sequence[ItemSpec], pdu_reference: int) -> bytearray:
        packet, parameter_start = _init_s7_packet(MessageType.REQUEST, pdu_reference)

        # S7: PARAMETER
        packet.extend(Function.READ_VAR.value.to_bytes(1, byteorder="big"))
        packet.extend(len(items).to_bytes(1, byteorder="big"))

        for item in items:
            packet.extend(item.serialize())

        data_start = len(packet)
        _finalize_packet(packet, parameter_start, data_start)

        return packet


class WriteRequest(Request):
    """Request for writing data to an S7 device."""

    def __init__(self, items: Sequence[Tuple[ItemSpec, bytes]], pdu_reference: int = 1) -> None:
        if not items:
            raise ValueError("A write request needs at least one item")
        self.items = list(items)
        self.pdu_reference = pdu_reference
        self.request = self.__prepare_packet(items=self.items, pdu_reference=pdu_reference)

    def __prepare_packet(self, items: Sequence[Tuple[ItemSpec, bytes]], pdu_reference: int) -> bytearray:
        packet, parameter_start = _init_s7_packet(MessageType.REQUEST, pdu_reference)

        # S7: PARAMETER
        packet.extend(Function.WRITE_VAR.value.to_bytes(1, byteorder="big"))  # Function Write Var
        packet.extend(len(items).to_bytes(1, byteorder="big"))

        for item, _ in items:
            packet.extend(item.serialize())

        data_start = len(packet)

        # S7 : DATA
        for i, (item, data) in enumerate(items):
            packet.extend(b"\x00")  # Reserved (0x00)

            if item.is_bit:
                transport_size = DataTransportSize.BIT
                bit_length = len(data)
            else:
                transport_size = DataTransportSize.BYTE_WORD_DWORD
                bit_length = len(data) * 8

            # Data transport size - This is not the transport size of the address
            packet.extend(transport_size.value.to_bytes(1, byteorder="big"))
            packet.extend(bit_length.to_bytes(2, byteorder="big"))
            packet.extend(data)

            # Fill byte between items
            if len(data) == 1 and i < len(items) - 1:
                packet.extend(b"\x00")

        _finalize_packet(packet, parameter_start, data_start)

        return packet


def build_read_request(target: ReadTarget, pdu_reference: int = 1) -> bytes:
    """Telegram reading a whole descriptor or merged block."""
    return ReadRequest(items=[read_item(target)], pdu_reference=pdu_reference).serialize()


def build_write_request(descriptor: AddressDescriptor, data: bytes, pdu_reference: int = 1) -> bytes:
    """Telegram writing *data* at *descriptor*."""
    item = write_item(descriptor, data)
    return WriteRequest(items=[(item, bytes(data))], pdu_reference=pdu_reference).serialize()


class JobHeader(NamedTuple):
    message_type: int
    pdu_reference: int
    parameter_length: int
    data_length: int


def parse_job_header(telegram: bytes) -> JobHeader:
    """Validate the TPKT/COTP envelope of a job telegram and return its S7 header."""
    if len(telegram) < HEADER_SIZE:
        raise S7ProtocolError(f"Job telegram too short: {len(telegram)} bytes")

    version, _, tpkt_length = struct.unpack_from(">BBH", telegram, 0)
    if version != TPKT_VERSION or tpkt_length != len(telegram):
        raise S7ProtocolError("Invalid TPKT header in job telegram")
    if telegram[TPKT_SIZE : TPKT_SIZE + COTP_SIZE] != COTP_DATA_HEADER:
        raise S7ProtocolError("Job telegram is not a COTP data transfer")
    if telegram[TPKT_SIZE + COTP_SIZE] != PROTOCOL_ID:
        raise S7ProtocolError("Job telegram does not carry the S7 protocol id")

    message_type = telegram[TPKT_SIZE + COTP_SIZE + 1]
    pdu_reference, parameter_length, data_length = struct.unpack_from(
        ">HHH", telegram, TPKT_SIZE + COTP_SIZE + 4
    )
    if HEADER_SIZE + parameter_length + data_length != len(telegram):
        raise S7ProtocolError("Parameter/data lengths do not match the telegram size")

    return JobHeader(message_type, pdu_reference, parameter_length, data_length)


def _parse_item_specs(telegram: bytes, function: Function) -> Tuple[JobHeader, List[ItemSpec], int]:
    header = parse_job_header(telegram)
    if header.parameter_length < PARAM_SIZE_NO_ITEMS or telegram[REQ_OVERHEAD] != function.value:
        raise S7ProtocolError(f"Telegram is not a {function.name} job")

    item_count = telegram[REQ_OVERHEAD + 1]
    if header.parameter_length != PARAM_SIZE_NO_ITEMS + item_count * PARAM_SIZE_ITEM:
        raise S7ProtocolError("Parameter length does not match the item count")

    items: List[ItemSpec] = []
    offset = REQ_OVERHEAD + PARAM_SIZE_NO_ITEMS
    for _ in range(item_count):
        spec_id, length, syntax, transport, count, db_number, area_code = struct.unpack_from(
            ">BBBBHHB", telegram, offset
        )
        bit_address = int.from_bytes(telegram[offset + 9 : offset + 12], byteorder="big")
        if spec_id != VARIABLE_SPEC or length != ADDRESS_SPEC_LENGTH or syntax != SYNTAX_ID_S7ANY:
            raise S7ProtocolError("Unsupported variable specification")
        try:
            transport_size = TransportSize(transport)
        except ValueError as e:
            raise S7ProtocolError(f"Unsupported transport size 0x{transport:02X}") from e

        items.append(
            ItemSpec(
                area_code=area_code,
                db_number=db_number,
                start=bit_address // 8,
                bit_offset=bit_address % 8,
                count=count,
                transport_size=transport_size,
            )
        )
        offset += PARAM_SIZE_ITEM

    return header, items, offset


def parse_read_request(telegram: bytes) -> Tuple[int, List[ItemSpec]]:
    """Decode a read-var job into its PDU reference and item specifications."""
    header, items, _ = _parse_item_specs(telegram, Function.READ_VAR)
    return header.pdu_reference, items


def parse_write_request(telegram: bytes) -> Tuple[int, List[Tuple[ItemSpec, bytes]]]:
    """Decode a write-var job into its PDU reference and (item, payload) pairs."""
    header, items, offset = _parse_item_specs(telegram, Function.WRITE_VAR)

    writes: List[Tuple[ItemSpec, bytes]] = []
    for i, item in enumerate(items):
        if offset + 4 > len(telegram):
            raise S7ProtocolError("Write telegram truncated in data section")
        _, tag, bit_length = struct.unpack_from(">BBH", telegram, offset)
        offset += 4
        byte_length = bit_length if tag == DataTransportSize.BIT.value else (bit_length + 7) // 8
        data = telegram[offset : offset + byte_length]
        if len(data) != byte_length:
            raise S7ProtocolError("Write telegram truncated in payload")
        offset += byte_length
        if byte_length == 1 and i < len(items) - 1:
            offset += 1
        writes.append((item, bytes(data)))

    return header.pdu_reference, writes

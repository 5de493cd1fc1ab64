from enum import Enum
from typing import Dict, NamedTuple, Optional, Tuple

DEFAULT_PORT = 102

MAX_ITEM_SIZE = 180  # bytes per read/write item in one telegram
MIN_EFFICIENCY_RATIO = 0.8
MAX_BLOCK_SIZE = 180

MAX_BYTE_OFFSET = (1 << 21) - 1  # 24-bit bit address
MAX_BLOCK_NUMBER = 0xFFFF

TPKT_SIZE = 4
COTP_SIZE = 3

REQ_HEADER_SIZE = 10
RES_HEADER_SIZE = 12
PARAM_SIZE_NO_ITEMS = 2
PARAM_SIZE_ITEM = 12

REQ_OVERHEAD = TPKT_SIZE + COTP_SIZE + REQ_HEADER_SIZE  # 17
RES_OVERHEAD = TPKT_SIZE + COTP_SIZE + RES_HEADER_SIZE  # 19
RES_ITEMS_OFFSET = RES_OVERHEAD + PARAM_SIZE_NO_ITEMS  # 21

# PDU bytes spent around the payload of a single item job
READ_PDU_OVERHEAD = RES_HEADER_SIZE + PARAM_SIZE_NO_ITEMS + 4  # 18
WRITE_PDU_OVERHEAD = REQ_HEADER_SIZE + PARAM_SIZE_NO_ITEMS + PARAM_SIZE_ITEM + 4  # 28

DEFAULT_PDU_SIZE = 0x01E0

TPKT_VERSION = 0x03
PROTOCOL_ID = 0x32
COTP_DATA_HEADER = b"\x02\xf0\x80"

VARIABLE_SPEC = 0x12
ADDRESS_SPEC_LENGTH = 0x0A
SYNTAX_ID_S7ANY = 0x10


class MessageType(Enum):
    REQUEST = 1
    ACK = 2
    RESPONSE = 3
    USERDATA = 7


class Function(Enum):
    COMM_SETUP = 0xF0
    READ_VAR = 0x04
    WRITE_VAR = 0x05


class MemoryArea(Enum):
    DB = "DB"  # Data blocks
    INPUT = "I"  # Inputs (I)
    OUTPUT = "Q"  # Outputs (Q)
    MERKER = "M"  # Flags (M) (Merker)
    V = "V"  # V-memory, mapped onto DB1


class Unit(Enum):
    BIT = "X"
    BYTE = "B"
    WORD = "W"
    DWORD = "D"


UnitLength: Dict[Unit, int] = {
    Unit.BIT: 1,
    Unit.BYTE: 1,
    Unit.WORD: 2,
    Unit.DWORD: 4,
}


class ValueType(Enum):
    BOOL = "bool"
    BYTE = "uint8"
    SBYTE = "int8"
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    UINT64 = "uint64"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"


ValueTypeSize: Dict[ValueType, int] = {
    ValueType.BOOL: 1,
    ValueType.BYTE: 1,
    ValueType.SBYTE: 1,
    ValueType.UINT16: 2,
    ValueType.INT16: 2,
    ValueType.UINT32: 4,
    ValueType.INT32: 4,
    ValueType.UINT64: 8,
    ValueType.INT64: 8,
    ValueType.FLOAT32: 4,
    ValueType.FLOAT64: 8,
}

# Natural interpretation of a unit when the caller asks for no target type
NaturalValueType: Dict[Unit, ValueType] = {
    Unit.BIT: ValueType.BOOL,
    Unit.BYTE: ValueType.BYTE,
    Unit.WORD: ValueType.UINT16,
    Unit.DWORD: ValueType.UINT32,
}


class TransportSize(Enum):
    # Transport size in the address specification
    BIT = 0x01
    BYTE = 0x02


class DataTransportSize(Enum):
    # Transport size in the data section
    NULL = 0x00
    BIT = 0x03
    BYTE_WORD_DWORD = 0x04
    INTEGER = 0x05
    REAL = 0x07
    OCTET_STRING = 0x09


class AreaLayout(NamedTuple):
    area_code: int
    transport_size: TransportSize
    length: int
    fixed_block: Optional[int]


def _layout(area_code: int, fixed_block: Optional[int]) -> Dict[Unit, AreaLayout]:
    return {
        unit: AreaLayout(
            area_code=area_code,
            transport_size=TransportSize.BIT if unit == Unit.BIT else TransportSize.BYTE,
            length=UnitLength[unit],
            fixed_block=fixed_block,
        )
        for unit in Unit
    }


# (area, unit) -> wire area code, transport size, unit length, forced block number
AREA_LAYOUT: Dict[Tuple[MemoryArea, Unit], AreaLayout] = {
    (area, unit): layout
    for area, code, block in (
        (MemoryArea.DB, 0x84, None),
        (MemoryArea.INPUT, 0x81, 0),
        (MemoryArea.OUTPUT, 0x82, 0),
        (MemoryArea.MERKER, 0x83, 0),
        (MemoryArea.V, 0x84, 1),
    )
    for unit, layout in _layout(code, block).items()
}

AREA_BY_CODE: Dict[int, MemoryArea] = {
    0x81: MemoryArea.INPUT,
    0x82: MemoryArea.OUTPUT,
    0x83: MemoryArea.MERKER,
    0x84: MemoryArea.DB,
}


class ReturnCode(Enum):
    RESERVED = 0x00
    HW_FAULT = 0x01
    NO_ACCESS = 0x03
    OUT_OF_RANGE = 0x05
    UNSUPPORTED_DATA_TYPE = 0x06
    INCONSISTENT_DATA_TYPE = 0x07
    OBJECT_DOES_NOT_EXIST = 0x0A
    INVALID_DATA_SIZE = 0xFE
    SUCCESS = 0xFF


ADDRESS_MISSING_CODES = (ReturnCode.OBJECT_DOES_NOT_EXIST.value, ReturnCode.OUT_OF_RANGE.value)


class PlcFamily(Enum):
    S7_200 = "S7-200"
    S7_200_SMART = "S7-200 Smart"
    S7_300 = "S7-300"
    S7_400 = "S7-400"
    S7_1200 = "S7-1200"
    S7_1500 = "S7-1500"


class ConnectionLifetime(Enum):
    PERSISTENT = "persistent"
    DISPOSABLE = "disposable"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"


# COTP connection request, rack/slot TSAP at offset 21
CONNECT_TELEGRAM = bytes.fromhex(
    "03 00 00 16 11 E0 00 00 00 01 00 C0 01 0A C1 02 01 02 C2 02 01 00"
)
CONNECT_TELEGRAM_200 = bytes.fromhex(
    "03 00 00 16 11 E0 00 00 00 01 00 C1 02 4D 57 C2 02 4D 57 C0 01 09"
)
CONNECT_TELEGRAM_200_SMART = bytes.fromhex(
    "03 00 00 16 11 E0 00 00 00 01 00 C1 02 10 00 C2 02 03 00 C0 01 0A"
)
RACK_SLOT_OFFSET = 21
S7_400_TSAP_OFFSET = 17

SETUP_TELEGRAM = bytes.fromhex(
    "03 00 00 19 02 F0 80 32 01 00 00 04 00 00 08 00 00 F0 00 00 01 00 01 01 E0"
)
SETUP_TELEGRAM_200 = bytes.fromhex(
    "03 00 00 19 02 F0 80 32 01 00 00 00 00 00 08 00 00 F0 00 00 01 00 01 03 C0"
)
SETUP_TELEGRAM_200_SMART = bytes.fromhex(
    "03 00 00 19 02 F0 80 32 01 00 00 CC C1 00 08 00 00 F0 00 00 01 00 01 03 C0"
)

COTP_CONNECTION_REQUEST = 0xE0
COTP_CONNECTION_CONFIRM = 0xD0
COTP_DATA = 0xF0


ReturnCodeDict: Dict[int, str] = {
    0x00: "Reserved",
    0x01: "Hardware fault",
    0x03: "Accessing the object not allowed",
    0x05: "Address out of range",
    0x06: "Data type not supported",
    0x07: "Data type inconsistent",
    0x0A: "Object does not exist",
    0xFE: "Invalid data size",
    0xFF: "Success",
}

ErrorClassDict: Dict[int, str] = {
    0x00: "No error",
    0x81: "Application relationship error",
    0x82: "Object definition error",
    0x83: "No ressources available error",
    0x84: "Error on service processing",
    0x85: "Error on supplies",
    0x87: "Access error",
}

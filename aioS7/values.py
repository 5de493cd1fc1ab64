import struct
from enum import Enum
from typing import Dict, Union

from .address import AddressDescriptor
from .constants import Unit, ValueType, ValueTypeSize
from .errors import S7ValueError

Value = Union[bool, int, float]


class ByteOrder(Enum):
    """Order of the bytes of multi-byte values, ``A`` being the most significant."""

    ABCD = "ABCD"  # big endian, S7 native
    BADC = "BADC"  # big endian words, bytes swapped
    CDAB = "CDAB"  # words swapped
    DCBA = "DCBA"  # little endian


# struct format chars, always packed big endian and reordered afterwards
fmt_map: Dict[ValueType, str] = {
    ValueType.BYTE: "B",
    ValueType.SBYTE: "b",
    ValueType.UINT16: "H",
    ValueType.INT16: "h",
    ValueType.UINT32: "I",
    ValueType.INT32: "i",
    ValueType.UINT64: "Q",
    ValueType.INT64: "q",
    ValueType.FLOAT32: "f",
    ValueType.FLOAT64: "d",
}


def _reorder(data: bytes, byte_order: ByteOrder) -> bytes:
    if len(data) < 2 or byte_order == ByteOrder.ABCD:
        return data
    if byte_order == ByteOrder.DCBA:
        return data[::-1]

    words = [data[i : i + 2] for i in range(0, len(data), 2)]
    if byte_order == ByteOrder.BADC:
        return b"".join(word[::-1] for word in words)
    # CDAB
    return b"".join(reversed(words))


def encode_value(value: Value, value_type: ValueType, byte_order: ByteOrder = ByteOrder.ABCD) -> bytes:
    """Pack *value* as *value_type* using *byte_order*."""
    if value_type == ValueType.BOOL:
        if not isinstance(value, (bool, int)):
            raise S7ValueError(f"Expected a bool for {value_type.name}, got {type(value).__name__}")
        return b"\x01" if value else b"\x00"

    fmt_char = fmt_map[value_type]
    if fmt_char not in "fd" and not isinstance(value, int):
        raise S7ValueError(f"Expected an int for {value_type.name}, got {type(value).__name__}")
    if fmt_char in "fd" and not isinstance(value, (int, float)):
        raise S7ValueError(f"Expected a float for {value_type.name}, got {type(value).__name__}")

    try:
        packed = struct.pack(f">{fmt_char}", value)
    except struct.error as e:
        raise S7ValueError(f"Value {value!r} does not fit {value_type.name}: {e}") from e

    return _reorder(packed, byte_order)


def decode_value(
    data: bytes, value_type: ValueType, byte_order: ByteOrder = ByteOrder.ABCD, offset: int = 0
) -> Value:
    """Unpack a *value_type* found at *offset* of *data*."""
    size = ValueTypeSize[value_type]
    if offset < 0 or offset + size > len(data):
        raise S7ValueError(
            f"Need {size} bytes at offset {offset} to decode {value_type.name}, buffer holds {len(data)}"
        )

    if value_type == ValueType.BOOL:
        return data[offset] != 0

    chunk = _reorder(bytes(data[offset : offset + size]), byte_order)
    return struct.unpack(f">{fmt_map[value_type]}", chunk)[0]


def value_to_wire_bytes(
    descriptor: AddressDescriptor, value: Value, byte_order: ByteOrder = ByteOrder.ABCD
) -> bytes:
    """Convert *value* into the payload written at *descriptor*.

    Bits are sent as one byte with the addressed bit set, or ``0x00``.
    """
    value_type = descriptor.value_type

    if descriptor.unit == Unit.BIT:
        if value_type != ValueType.BOOL:
            raise S7ValueError(f"{descriptor}: bit addresses only accept BOOL, got {value_type.name}")
        if not isinstance(value, (bool, int)):
            raise S7ValueError(f"{descriptor}: expected a bool, got {type(value).__name__}")
        return bytes([1 << descriptor.bit_offset]) if value else b"\x00"

    size = ValueTypeSize[value_type]
    if size != descriptor.size:
        raise S7ValueError(
            f"{descriptor}: {value_type.name} ({size} bytes) does not fit a {descriptor.unit.name} unit"
        )

    return encode_value(value, value_type, byte_order)

import logging
import re
from typing import Dict, Mapping, Optional

from .address import AddressDescriptor
from .constants import MemoryArea, Unit, ValueType
from .errors import S7AddressError

"""
### Supported addresses

| Address          | Area         | Unit        | Description |
| ---------------- | ------------ | ----------- | ----------- |
| `DB2.DBX0.7`     | DB           | bit         | Bit 7 of byte 0 of DB 2 |
| `DB36.DBB2`      | DB           | byte        | Byte 2 of DB 36 |
| `DB17.DBW4`      | DB           | word        | 16-bit word at byte 4 of DB 17 |
| `DB51.DBD6`      | DB           | double word | 32-bit double word at byte 6 of DB 51 |
| `V700`           | V (DB1)      | byte        | Byte 700 of V-memory |
| `V3.1`           | V (DB1)      | bit         | Bit 1 of byte 3 of V-memory |
| `VB4` `VW4` `VD4`| V (DB1)      | byte/word/dword | Byte 4 of V-memory as byte, word or double word |
| `I3.0`           | input        | bit         | Bit 0 of byte 3 of the input area |
| `I10`            | input        | word        | Word at byte 10 of the input area |
| `Q2.6`           | output       | bit         | Bit 6 of byte 2 of the output area |
| `Q10`            | output       | word        | Word at byte 10 of the output area |
| `M7.1`           | marker       | bit         | Bit 1 of byte 7 of the marker area |
| `M10`            | marker       | byte        | Byte 10 of the marker area |
| `IB/IW/ID<n>`, `QB/QW/QD<n>`, `MB/MW/MD<n>` | I/Q/M | byte/word/dword | Explicit unit forms |

A bare `I<n>` or `Q<n>` is a word while a bare `M<n>` is a byte. The
asymmetry is historical and kept for compatibility with existing address
lists.
"""

logger = logging.getLogger(__name__)

TOKEN_TABLE: Dict[str, Unit] = {
    "X": Unit.BIT,
    "B": Unit.BYTE,
    "W": Unit.WORD,
    "D": Unit.DWORD,
}

# Unit used when an I/Q/M/V address carries neither a unit letter nor a bit offset
DEFAULT_UNIT: Dict[MemoryArea, Unit] = {
    MemoryArea.INPUT: Unit.WORD,
    MemoryArea.OUTPUT: Unit.WORD,
    MemoryArea.MERKER: Unit.BYTE,
    MemoryArea.V: Unit.BYTE,
}

AREA_PREFIX: Dict[str, MemoryArea] = {
    "I": MemoryArea.INPUT,
    "Q": MemoryArea.OUTPUT,
    "M": MemoryArea.MERKER,
    "V": MemoryArea.V,
}

_DB_PATTERN = re.compile(r"DB(\d+)\.DB([XBWD])(\d+)(?:\.(\d+))?")
_AREA_PATTERN = re.compile(r"([IQMV])([BWD])?(\d+)(?:\.(\d+))?")


def _build_descriptor(
    original: str,
    memory_area: MemoryArea,
    db_number: int,
    unit: Unit,
    start: int,
    bit_offset: Optional[str],
    target_type: Optional[ValueType],
) -> AddressDescriptor:
    if unit == Unit.BIT:
        if bit_offset is None:
            raise S7AddressError(f"Missing bit offset in address '{original}'")
        bit_offset_int = int(bit_offset)
        if not 0 <= bit_offset_int <= 7:
            raise S7AddressError(
                f"The bit offset must be a value between 0 and 7 included, got {bit_offset_int} in '{original}'"
            )
    else:
        if bit_offset is not None:
            raise S7AddressError(f"Bit offset non supported for address '{original}'")
        bit_offset_int = 0

    try:
        return AddressDescriptor(
            address=original,
            memory_area=memory_area,
            db_number=db_number,
            unit=unit,
            start=start,
            bit_offset=bit_offset_int,
            target_type=target_type,
        )
    except (TypeError, ValueError) as e:
        raise S7AddressError(f"Invalid address '{original}': {e}") from e


def parse_address(address: str, target_type: Optional[ValueType] = None) -> AddressDescriptor:
    """Parse a symbolic address into an :class:`AddressDescriptor`.

    Raises:
        S7AddressError: If the prefix is unknown or a numeric component does not parse.
    """
    if not isinstance(address, str):
        raise S7AddressError(f"Address must be a string, got {type(address).__name__}")

    normalized = "".join(address.split()).upper()
    match: Optional[re.Match[str]]

    if normalized.startswith("DB"):
        match = _DB_PATTERN.fullmatch(normalized)
        if match is None:
            raise S7AddressError(f"Impossible to parse address '{address}'")
        db_number_s, token, start_s, bit_offset = match.groups()
        return _build_descriptor(
            address,
            MemoryArea.DB,
            int(db_number_s),
            TOKEN_TABLE[token],
            int(start_s),
            bit_offset,
            target_type,
        )

    match = _AREA_PATTERN.fullmatch(normalized)
    if match is None:
        raise S7AddressError(f"Unsupported address '{address}'")

    prefix, token, start_s, bit_offset = match.groups()
    memory_area = AREA_PREFIX[prefix]
    if token is not None:
        unit = TOKEN_TABLE[token]
    elif bit_offset is not None:
        unit = Unit.BIT
    else:
        unit = DEFAULT_UNIT[memory_area]

    db_number = 1 if memory_area == MemoryArea.V else 0
    return _build_descriptor(
        address, memory_area, db_number, unit, int(start_s), bit_offset, target_type
    )


def parse_addresses(addresses: Mapping[str, Optional[ValueType]]) -> Dict[str, AddressDescriptor]:
    """Parse many addresses at once, dropping the ones that do not parse.

    The returned dict keeps the input order; callers find the rejected
    entries by comparing its keys with their own.
    """
    if addresses is None:
        raise TypeError("addresses must be a mapping, got None")

    descriptors: Dict[str, AddressDescriptor] = {}
    for address, target_type in addresses.items():
        try:
            descriptors[address] = parse_address(address, target_type)
        except S7AddressError as e:
            logger.debug("Skipping address %r: %s", address, e)

    return descriptors


def construct_address(descriptor: AddressDescriptor) -> str:
    """Render the canonical address text of *descriptor*."""
    area = descriptor.memory_area
    unit = descriptor.unit

    if area == MemoryArea.DB:
        text = f"DB{descriptor.db_number}.DB{unit.value}{descriptor.start}"
        if unit == Unit.BIT:
            text += f".{descriptor.bit_offset}"
        return text

    if unit == Unit.BIT:
        return f"{area.value}{descriptor.start}.{descriptor.bit_offset}"

    return f"{area.value}{unit.value}{descriptor.start}"

from dataclasses import dataclass
from typing import Any, Optional, Tuple

from .constants import (
    AREA_LAYOUT,
    MAX_BLOCK_NUMBER,
    MAX_BYTE_OFFSET,
    AreaLayout,
    MemoryArea,
    NaturalValueType,
    Unit,
    UnitLength,
    ValueType,
    ValueTypeSize,
)

GroupKey = Tuple[MemoryArea, int]


@dataclass(frozen=True)
class AddressDescriptor:
    """Parsed form of a symbolic PLC address such as ``DB1.DBW10`` or ``Q1.3``.

    ``length`` is the wire unit (1, 2 or 4 bytes). ``target_type`` only
    changes how the fetched bytes are interpreted, never what is fetched,
    except that a 64-bit target on a double-word unit covers two adjacent
    double words (see :attr:`size`).
    """

    address: str
    memory_area: MemoryArea
    db_number: int
    unit: Unit
    start: int
    bit_offset: int = 0
    target_type: Optional[ValueType] = None

    def __post_init__(self) -> None:
        self._validate_memory_area()
        self._validate_unit()
        self._validate_db_number()
        self._validate_start()
        self._validate_bit_offset()
        self._validate_target_type()

    def _validate_memory_area(self) -> None:
        self._ensure_instance(self.memory_area, MemoryArea, "memory_area")

    def _validate_unit(self) -> None:
        self._ensure_instance(self.unit, Unit, "unit")

    def _validate_db_number(self) -> None:
        self._ensure_instance(self.db_number, int, "db_number")
        fixed_block = self.layout.fixed_block
        if fixed_block is not None and self.db_number != fixed_block:
            raise ValueError(
                f"Invalid 'db_number': Must be {fixed_block} when memory_area is {self.memory_area}, but got {self.db_number}."
            )
        self._ensure_range(self.db_number, "db_number", 0, MAX_BLOCK_NUMBER)

    def _validate_start(self) -> None:
        self._ensure_instance(self.start, int, "start")
        self._ensure_range(self.start, "start", 0, MAX_BYTE_OFFSET)

    def _validate_bit_offset(self) -> None:
        self._ensure_instance(self.bit_offset, int, "bit_offset")
        if self.unit != Unit.BIT and self.bit_offset > 0:
            raise ValueError(
                f"Invalid 'bit_offset': Must be 0 when unit is not Unit.BIT, but got {self.bit_offset}."
            )
        self._ensure_range(self.bit_offset, "bit_offset", 0, 7)

    def _validate_target_type(self) -> None:
        if self.target_type is not None:
            self._ensure_instance(self.target_type, ValueType, "target_type")

    @staticmethod
    def _ensure_instance(value: Any, expected_type: type, field_name: str) -> None:
        # bool is an int subclass, it is never a valid offset
        if not isinstance(value, expected_type) or (expected_type is int and isinstance(value, bool)):
            raise TypeError(
                f"Invalid '{field_name}': Expected type {expected_type.__name__}, got {type(value)}."
            )

    @staticmethod
    def _ensure_range(value: int, field_name: str, minimum: int, maximum: int) -> None:
        if value < minimum or value > maximum:
            raise ValueError(
                f"Invalid '{field_name}': Expected value between {minimum} and {maximum}, got {value}."
            )

    @property
    def layout(self) -> AreaLayout:
        return AREA_LAYOUT[(self.memory_area, self.unit)]

    @property
    def area_code(self) -> int:
        return self.layout.area_code

    @property
    def length(self) -> int:
        """Length in bytes of the wire unit."""
        return UnitLength[self.unit]

    @property
    def is_bit(self) -> bool:
        return self.unit == Unit.BIT

    @property
    def value_type(self) -> ValueType:
        """Type used to interpret the fetched bytes."""
        if self.target_type is None:
            return NaturalValueType[self.unit]
        return self.target_type

    @property
    def size(self) -> int:
        """Number of bytes that have to be fetched to decode the value."""
        if self.unit == Unit.DWORD and self.target_type is not None:
            return max(self.length, ValueTypeSize[self.target_type])
        return self.length

    @property
    def group_key(self) -> GroupKey:
        return (self.memory_area, self.db_number)

    @property
    def bit_address(self) -> int:
        return self.start * 8 + self.bit_offset

    def __str__(self) -> str:
        return self.address

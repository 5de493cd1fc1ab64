from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Tuple

from .address import AddressDescriptor, GroupKey
from .constants import MAX_BLOCK_SIZE, MIN_EFFICIENCY_RATIO, MemoryArea

BlockKey = Tuple[MemoryArea, int, int, int]


@dataclass
class AddressBlock:
    """A contiguous byte range fetched with a single read item."""

    memory_area: MemoryArea
    db_number: int
    start: int
    length: int
    members: List[AddressDescriptor] = field(default_factory=list)
    efficiency_ratio: float = 1.0

    @property
    def key(self) -> BlockKey:
        return (self.memory_area, self.db_number, self.start, self.length)

    @property
    def end(self) -> int:
        return self.start + self.length

    @property
    def area_code(self) -> int:
        return self.members[0].area_code

    def relative_offset(self, descriptor: AddressDescriptor) -> int:
        return descriptor.start - self.start

    def __contains__(self, descriptor: AddressDescriptor) -> bool:
        return (
            descriptor.group_key == (self.memory_area, self.db_number)
            and self.start <= descriptor.start
            and descriptor.start + descriptor.size <= self.end
        )


def efficiency_ratio(members: Sequence[AddressDescriptor], start: int, length: int) -> float:
    """Summed member sizes over the ``length`` bytes at ``start``.

    Overlapping members are counted once per member, so the result can
    exceed 1.0; blocks store it clamped to 1.0.
    """
    if length <= 0:
        return 0.0
    return sum(m.size for m in members) / length


def _new_block(descriptor: AddressDescriptor) -> AddressBlock:
    return AddressBlock(
        memory_area=descriptor.memory_area,
        db_number=descriptor.db_number,
        start=descriptor.start,
        length=descriptor.size,
        members=[descriptor],
    )


def _close(block: AddressBlock) -> AddressBlock:
    block.efficiency_ratio = min(1.0, efficiency_ratio(block.members, block.start, block.length))
    return block


def _optimize_bit_addresses(descriptors: List[AddressDescriptor]) -> List[AddressBlock]:
    ordered = sorted(descriptors, key=lambda d: (d.bit_offset, d.start, d.db_number))

    by_byte: Dict[int, List[AddressDescriptor]] = {}
    for descriptor in ordered:
        by_byte.setdefault(descriptor.start, []).append(descriptor)

    blocks: List[AddressBlock] = []
    for byte_offset, members in by_byte.items():
        members.sort(key=lambda d: d.bit_offset)
        blocks.append(
            AddressBlock(
                memory_area=members[0].memory_area,
                db_number=members[0].db_number,
                start=byte_offset,
                length=1,
                members=members,
                efficiency_ratio=1.0,
            )
        )

    return blocks


def _optimize_non_bit_addresses(
    descriptors: List[AddressDescriptor], min_efficiency_ratio: float, max_block_size: int
) -> List[AddressBlock]:
    ordered = sorted(descriptors, key=lambda d: (d.db_number, d.start))

    blocks: List[AddressBlock] = []
    current = _new_block(ordered[0])

    for descriptor in ordered[1:]:
        new_start = min(current.start, descriptor.start)
        new_end = max(current.end, descriptor.start + descriptor.size)
        new_length = new_end - new_start

        if new_length > max_block_size:
            blocks.append(_close(current))
            current = _new_block(descriptor)
            continue

        candidate = current.members + [descriptor]
        if efficiency_ratio(candidate, new_start, new_length) >= min_efficiency_ratio:
            current.start = new_start
            current.length = new_length
            current.members = candidate
        else:
            blocks.append(_close(current))
            current = _new_block(descriptor)

    blocks.append(_close(current))
    return blocks


def optimize_blocks(
    descriptors: Iterable[AddressDescriptor],
    min_efficiency_ratio: float = MIN_EFFICIENCY_RATIO,
    max_block_size: int = MAX_BLOCK_SIZE,
) -> List[AddressBlock]:
    """Merge descriptors into as few read blocks as the efficiency threshold allows.

    Descriptors are grouped by (area, block number). Bit descriptors become
    one single-byte block per distinct byte. The others are merged in one
    greedy left-to-right pass over the start offsets: a member joins the
    open block when the merged span stays within ``max_block_size`` and the
    summed member sizes over that span stay at or above
    ``min_efficiency_ratio``; otherwise the open block is closed and the
    member seeds the next one. Members larger than ``max_block_size`` still
    get a block of their own, splitting is left to the transport.
    """
    if descriptors is None:
        raise TypeError("descriptors must be an iterable, got None")
    if not 0 <= min_efficiency_ratio <= 1:
        raise ValueError(
            f"Invalid 'min_efficiency_ratio': Expected value in [0, 1], got {min_efficiency_ratio}."
        )
    if max_block_size <= 0:
        raise ValueError(f"Invalid 'max_block_size': Expected positive value, got {max_block_size}.")

    groups: Dict[GroupKey, List[AddressDescriptor]] = {}
    for descriptor in descriptors:
        groups.setdefault(descriptor.group_key, []).append(descriptor)

    blocks: List[AddressBlock] = []
    for members in groups.values():
        bit_members = [d for d in members if d.is_bit]
        other_members = [d for d in members if not d.is_bit]

        if bit_members:
            blocks.extend(_optimize_bit_addresses(bit_members))
        if other_members:
            blocks.extend(
                _optimize_non_bit_addresses(other_members, min_efficiency_ratio, max_block_size)
            )

    return blocks

"""Split virtqueue ring layout on top of a shared memory region.

A ring is laid out as one contiguous block: the descriptor table, then the
available ring, then (aligned) the used ring. All fields are little endian.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

VRING_DESC_F_NEXT = 1
VRING_DESC_F_WRITE = 2
VRING_DESC_F_INDIRECT = 4

VRING_USED_F_NO_NOTIFY = 1
VRING_AVAIL_F_NO_INTERRUPT = 1

_DESC = struct.Struct("<QIHH")
_USED_ELEM = struct.Struct("<II")
_U16 = struct.Struct("<H")

DESC_SIZE = _DESC.size
USED_ELEM_SIZE = _USED_ELEM.size
_RING_HEADER_SIZE = 4  # flags + idx, both u16


def _align_up(value: int, align: int) -> int:
    return (value + align - 1) & ~(align - 1)


class SharedMemory:
    """A byte region shared with a remote side, mapped at a physical base."""

    def __init__(self, size: int, phys_base: int = 0) -> None:
        if size < 0:
            raise ValueError("size must not be negative")
        self.size = size
        self.phys_base = phys_base
        self.data = bytearray(size)

    def _check_range(self, offset: int, length: int) -> None:
        if offset < 0 or length < 0 or offset + length > self.size:
            raise ValueError(
                f"range {offset}+{length} lies outside region of {self.size} bytes"
            )

    def virt_to_phys(self, offset: int) -> int:
        """Physical address of the byte at ``offset``."""
        self._check_range(offset, 0)
        return self.phys_base + offset

    def phys_to_virt(self, phys: int) -> int:
        """Offset into the region of a physical address."""
        offset = phys - self.phys_base
        if offset < 0 or offset >= self.size:
            raise ValueError(f"physical address {phys:#x} is not in this region")
        return offset

    def fill(self, offset: int, value: int, length: int) -> None:
        """Set ``length`` bytes starting at ``offset`` to ``value``."""
        self._check_range(offset, length)
        self.data[offset:offset + length] = bytes([value & 0xFF]) * length


def vring_size(num: int, align: int) -> int:
    """Number of bytes a ring of ``num`` descriptors occupies."""
    size = num * DESC_SIZE
    size += _RING_HEADER_SIZE + num * 2 + 2
    size = _align_up(size, align)
    size += _RING_HEADER_SIZE + num * USED_ELEM_SIZE + 2
    return size


def vring_need_event(event_idx: int, new_idx: int, old: int) -> bool:
    """Whether moving an index from ``old`` to ``new_idx`` passes ``event_idx``."""
    return ((new_idx - event_idx - 1) & 0xFFFF) < ((new_idx - old) & 0xFFFF)


@dataclass
class VRingDesc:
    """One entry of the descriptor table."""

    addr: int = 0
    length: int = 0
    flags: int = 0
    next: int = 0


class VRing:
    """View of a split ring placed in ``memory`` at ``offset``."""

    def __init__(self, memory: SharedMemory, num: int, offset: int = 0,
                 align: int = 4096) -> None:
        if num <= 0:
            raise ValueError("a ring needs at least one descriptor")
        if align <= 0 or align & (align - 1):
            raise ValueError("alignment must be a power of two")
        self.memory = memory
        self.num = num
        self.desc_offset = offset
        self.avail_offset = offset + num * DESC_SIZE
        self.used_offset = _align_up(self.avail_offset + _RING_HEADER_SIZE
                                     + num * 2 + 2, align)
        end = self.used_offset + _RING_HEADER_SIZE + num * USED_ELEM_SIZE + 2
        memory._check_range(offset, end - offset)

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.num:
            raise IndexError(f"ring index {index} out of range 0..{self.num - 1}")

    def _read_u16(self, offset: int) -> int:
        return _U16.unpack_from(self.memory.data, offset)[0]

    def _write_u16(self, offset: int, value: int) -> None:
        _U16.pack_into(self.memory.data, offset, value & 0xFFFF)

    def _desc_at(self, index: int) -> int:
        self._check_index(index)
        return self.desc_offset + index * DESC_SIZE

    def desc(self, index: int) -> VRingDesc:
        """Read descriptor ``index``."""
        addr, length, flags, nxt = _DESC.unpack_from(self.memory.data,
                                                     self._desc_at(index))
        return VRingDesc(addr, length, flags, nxt)

    def write_desc(self, index: int, desc: VRingDesc) -> None:
        """Store ``desc`` as descriptor ``index``."""
        position = self._desc_at(index)
        try:
            _DESC.pack_into(self.memory.data, position, desc.addr, desc.length,
                            desc.flags, desc.next)
        except struct.error as exc:
            raise ValueError(f"descriptor field out of range: {exc}") from None

    def set_desc_next(self, index: int, next_index: int) -> None:
        """Change only the ``next`` link of descriptor ``index``."""
        self._write_u16(self._desc_at(index) + 14, next_index)

    def avail_entry(self, slot: int) -> int:
        self._check_index(slot)
        return self._read_u16(self.avail_offset + _RING_HEADER_SIZE + slot * 2)

    def set_avail_entry(self, slot: int, head: int) -> None:
        self._check_index(slot)
        self._write_u16(self.avail_offset + _RING_HEADER_SIZE + slot * 2, head)

    def _used_elem_at(self, slot: int) -> int:
        self._check_index(slot)
        return self.used_offset + _RING_HEADER_SIZE + slot * USED_ELEM_SIZE

    def used_entry(self, slot: int) -> tuple[int, int]:
        """The ``(id, length)`` pair in used ring slot ``slot``."""
        elem_id, length = _USED_ELEM.unpack_from(self.memory.data,
                                                 self._used_elem_at(slot))
        return elem_id, length

    def set_used_entry(self, slot: int, elem_id: int, length: int) -> None:
        _USED_ELEM.pack_into(self.memory.data, self._used_elem_at(slot),
                             elem_id & 0xFFFFFFFF, length & 0xFFFFFFFF)

    @property
    def avail_flags(self) -> int:
        return self._read_u16(self.avail_offset)

    @avail_flags.setter
    def avail_flags(self, value: int) -> None:
        self._write_u16(self.avail_offset, value)

    @property
    def avail_idx(self) -> int:
        return self._read_u16(self.avail_offset + 2)

    @avail_idx.setter
    def avail_idx(self, value: int) -> None:
        self._write_u16(self.avail_offset + 2, value)

    @property
    def used_flags(self) -> int:
        return self._read_u16(self.used_offset)

    @used_flags.setter
    def used_flags(self, value: int) -> None:
        self._write_u16(self.used_offset, value)

    @property
    def used_idx(self) -> int:
        return self._read_u16(self.used_offset + 2)

    @used_idx.setter
    def used_idx(self, value: int) -> None:
        self._write_u16(self.used_offset + 2, value)

    @property
    def used_event(self) -> int:
        """Event index published after the available ring."""
        return self._read_u16(self.avail_offset + _RING_HEADER_SIZE + self.num * 2)

    @used_event.setter
    def used_event(self, value: int) -> None:
        self._write_u16(self.avail_offset + _RING_HEADER_SIZE + self.num * 2, value)

    @property
    def avail_event(self) -> int:
        """Event index published after the used ring."""
        return self._read_u16(self.used_offset + _RING_HEADER_SIZE
                              + self.num * USED_ELEM_SIZE)

    @avail_event.setter
    def avail_event(self, value: int) -> None:
        self._write_u16(self.used_offset + _RING_HEADER_SIZE
                        + self.num * USED_ELEM_SIZE, value)
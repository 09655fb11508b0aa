"""Split virtqueue: buffer exchange between a driver and a device side.

The driver places buffers on the available ring and collects them back from
the used ring; the device takes buffers from the available ring and returns
them through the used ring. Both sides work on the same shared memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional, Sequence

from amplink.vring import (
    VRING_AVAIL_F_NO_INTERRUPT,
    VRING_DESC_F_INDIRECT,
    VRING_DESC_F_NEXT,
    VRING_DESC_F_WRITE,
    VRING_USED_F_NO_NOTIFY,
    SharedMemory,
    VRing,
    VRingDesc,
    vring_need_event,
)

logger = logging.getLogger(__name__)

VIRTIO_RING_F_EVENT_IDX = 1 << 29
VQ_RING_DESC_CHAIN_END = 32768

_U16_MASK = 0xFFFF


class VirtqueueError(Exception):
    """Base class for virtqueue failures."""


class InvalidParameterError(VirtqueueError, ValueError):
    """A parameter passed to a virtqueue operation is not acceptable."""


class RingAlignError(VirtqueueError, ValueError):
    """The number of ring descriptors is not a power of two."""


class RingFullError(VirtqueueError):
    """Not enough free descriptors for the requested buffers."""


class NoBufferError(VirtqueueError):
    """The referenced buffer does not exist in the ring."""


class Role(IntEnum):
    """Which side of the virtqueue a device plays."""

    DRIVER = 0
    DEVICE = 1


@dataclass(frozen=True)
class Buffer:
    """A buffer in shared memory, given by its offset and length."""

    offset: int
    length: int


@dataclass
class _DescExtra:
    cookie: Any = None
    ndescs: int = 0


class Virtqueue:
    """One virtqueue laid over a ring in shared memory.

    ``device`` is any object with a ``role`` (a :class:`Role`) and an integer
    ``features`` attribute; both are read on every operation.
    """

    def __init__(self, device: Any, index: int, name: str, memory: SharedMemory,
                 num_descs: int, align: int = 4096, offset: int = 0,
                 callback: Optional[Callable[["Virtqueue"], None]] = None,
                 notify: Optional[Callable[["Virtqueue"], None]] = None) -> None:
        if num_descs <= 0:
            raise InvalidParameterError("a virtqueue needs at least one descriptor")
        if num_descs & (num_descs - 1):
            raise RingAlignError(f"descriptor count {num_descs} is not a power of two")
        self.device = device
        self.index = index
        self.name = name
        self.memory = memory
        self.num_entries = num_descs
        self.free_count = num_descs
        self.queued_count = 0
        self.desc_head_idx = 0
        self.used_cons_idx = 0
        self.available_idx = 0
        self.callback = callback
        self.notify = notify
        self.priv: Any = None
        self.ring = VRing(memory, num_descs, offset, align)
        self._extra = [_DescExtra() for _ in range(num_descs)]

        if self._is_driver:
            for i in range(num_descs - 1):
                self.ring.set_desc_next(i, i + 1)
            self.ring.set_desc_next(num_descs - 1, VQ_RING_DESC_CHAIN_END)

    @property
    def _is_driver(self) -> bool:
        return self.device.role == Role.DRIVER

    @property
    def _is_device(self) -> bool:
        return self.device.role == Role.DEVICE

    @property
    def _event_idx(self) -> bool:
        return bool(self.device.features & VIRTIO_RING_F_EVENT_IDX)

    @property
    def _mask(self) -> int:
        return self.num_entries - 1

    def _check_valid(self, idx: int) -> None:
        if not 0 <= idx < self.num_entries:
            raise VirtqueueError(f"{self.name}: invalid descriptor index {idx}")

    # Driver side

    def add_buffer(self, buffers: Sequence[Buffer], readable: int, writable: int,
                   cookie: Any) -> None:
        """Chain ``readable`` then ``writable`` buffers and make them available."""
        needed = readable + writable
        if needed < 1:
            raise InvalidParameterError("at least one buffer is needed")
        if len(buffers) < needed:
            raise InvalidParameterError(
                f"{needed} buffers announced but only {len(buffers)} given")
        if self.free_count < needed:
            raise RingFullError(
                f"{self.name}: {needed} descriptors needed, {self.free_count} free")
        if cookie is None:
            raise InvalidParameterError("enqueuing with no cookie")

        head_idx = self.desc_head_idx
        self._check_valid(head_idx)
        extra = self._extra[head_idx]
        if extra.cookie is not None:
            raise VirtqueueError(f"{self.name}: cookie already exists for index {head_idx}")
        extra.cookie = cookie
        extra.ndescs = needed

        idx = self._ring_add_buffer(head_idx, buffers[:needed], readable)

        self.desc_head_idx = idx
        self.free_count -= needed
        if self.free_count == 0:
            if idx != VQ_RING_DESC_CHAIN_END:
                raise VirtqueueError(f"{self.name}: full ring not terminated")
        else:
            self._check_valid(idx)

        self._ring_update_avail(head_idx)

    def _ring_add_buffer(self, head_idx: int, buffers: Sequence[Buffer],
                         readable: int) -> int:
        needed = len(buffers)
        idx = head_idx
        for position, buf in enumerate(buffers):
            if idx == VQ_RING_DESC_CHAIN_END:
                raise VirtqueueError(f"{self.name}: premature end of free desc chain")
            current = self.ring.desc(idx)
            flags = 0
            if position < needed - 1:
                flags |= VRING_DESC_F_NEXT
            if position >= readable:
                flags |= VRING_DESC_F_WRITE
            self.ring.write_desc(idx, VRingDesc(
                addr=self.memory.virt_to_phys(buf.offset),
                length=buf.length,
                flags=flags,
                next=current.next,
            ))
            idx = current.next
        return idx

    def _ring_update_avail(self, desc_idx: int) -> None:
        slot = self.ring.avail_idx & self._mask
        self.ring.set_avail_entry(slot, desc_idx)
        self.ring.avail_idx = self.ring.avail_idx + 1
        self.queued_count += 1

    def get_buffer(self) -> Optional[tuple[Any, int, int]]:
        """Take the next used buffer back.

        Returns ``(cookie, length, used_slot)`` or ``None`` when nothing is used.
        """
        if self.used_cons_idx == self.ring.used_idx:
            return None

        used_slot = self.used_cons_idx & self._mask
        self.used_cons_idx = (self.used_cons_idx + 1) & _U16_MASK
        elem_id, length = self.ring.used_entry(used_slot)
        desc_idx = elem_id & _U16_MASK

        self._free_chain(desc_idx)

        extra = self._extra[desc_idx]
        cookie = extra.cookie
        extra.cookie = None
        return cookie, length, used_slot

    def _free_chain(self, desc_idx: int) -> None:
        self._check_valid(desc_idx)
        extra = self._extra[desc_idx]
        if self.free_count == 0 and self.desc_head_idx != VQ_RING_DESC_CHAIN_END:
            raise VirtqueueError(f"{self.name}: full ring not terminated")

        self.free_count += extra.ndescs
        remaining = extra.ndescs - 1

        last = desc_idx
        dp = self.ring.desc(last)
        if not dp.flags & VRING_DESC_F_INDIRECT:
            while dp.flags & VRING_DESC_F_NEXT:
                self._check_valid(dp.next)
                last = dp.next
                dp = self.ring.desc(last)
                remaining -= 1

        extra.ndescs = 0
        if remaining != 0:
            raise VirtqueueError(
                f"{self.name}: failed to free entire desc chain, remaining {remaining}")

        self.ring.set_desc_next(last, self.desc_head_idx)
        self.desc_head_idx = desc_idx

    # Device side

    def get_buffer_length(self, idx: int) -> int:
        """Length recorded in descriptor ``idx``."""
        return self.ring.desc(idx).length

    def get_buffer_addr(self, idx: int) -> int:
        """Offset in shared memory of the buffer in descriptor ``idx``."""
        return self.memory.phys_to_virt(self.ring.desc(idx).addr)

    def get_available_buffer(self) -> Optional[tuple[int, int, int]]:
        """Take the next available buffer.

        Returns ``(offset, head_idx, length)`` or ``None`` when none is available.
        """
        if self.available_idx == self.ring.avail_idx:
            return None

        slot = self.available_idx & self._mask
        self.available_idx = (self.available_idx + 1) & _U16_MASK
        head_idx = self.ring.avail_entry(slot)
        return self.get_buffer_addr(head_idx), head_idx, self.get_buffer_length(head_idx)

    def add_consumed_buffer(self, head_idx: int, length: int) -> None:
        """Return the chain starting at ``head_idx`` to the driver."""
        if not 0 <= head_idx < self.num_entries:
            raise NoBufferError(f"{self.name}: no buffer at index {head_idx}")

        slot = self.ring.used_idx & self._mask
        self.ring.set_used_entry(slot, head_idx, length)
        self.ring.used_idx = self.ring.used_idx + 1
        self.queued_count += 1

    def get_desc_size(self) -> int:
        """Length of the next available buffer without taking it, 0 if none."""
        if self.available_idx == self.ring.avail_idx:
            return 0
        slot = self.available_idx & self._mask
        head_idx = self.ring.avail_entry(slot)
        return self.ring.desc(head_idx).length

    # Notifications

    def enable_cb(self) -> bool:
        """Ask for notifications; True if work is already pending."""
        return self._enable_interrupt(0)

    def _enable_interrupt(self, ndesc: int) -> bool:
        if self._event_idx:
            if self._is_driver:
                self.ring.used_event = self.used_cons_idx + ndesc
            if self._is_device:
                self.ring.avail_event = self.available_idx + ndesc
        else:
            if self._is_driver:
                self.ring.avail_flags = self.ring.avail_flags & ~VRING_AVAIL_F_NO_INTERRUPT
            if self._is_device:
                self.ring.used_flags = self.ring.used_flags & ~VRING_USED_F_NO_NOTIFY

        if self._is_driver and self._nused() > ndesc:
            return True
        if self._is_device and self._navail() > ndesc:
            return True
        return False

    def disable_cb(self) -> None:
        """Tell the other side that notifications are not wanted."""
        if self._event_idx:
            if self._is_driver:
                self.ring.used_event = self.used_cons_idx - self.num_entries - 1
            if self._is_device:
                self.ring.avail_event = self.available_idx - self.num_entries - 1
        else:
            if self._is_driver:
                self.ring.avail_flags = self.ring.avail_flags | VRING_AVAIL_F_NO_INTERRUPT
            if self._is_device:
                self.ring.used_flags = self.ring.used_flags | VRING_USED_F_NO_NOTIFY

    def kick(self) -> None:
        """Notify the other side if it asked for it, and reset the queued count."""
        if self._must_notify() and self.notify is not None:
            self.notify(self)
        self.queued_count = 0

    def _must_notify(self) -> bool:
        if self._event_idx:
            if self._is_driver:
                new_idx = self.ring.avail_idx
                prev_idx = new_idx - self.queued_count
                return vring_need_event(self.ring.avail_event, new_idx, prev_idx)
            if self._is_device:
                new_idx = self.ring.used_idx
                prev_idx = new_idx - self.queued_count
                return vring_need_event(self.ring.used_event, new_idx, prev_idx)
        else:
            if self._is_driver:
                return not self.ring.used_flags & VRING_USED_F_NO_NOTIFY
            if self._is_device:
                return not self.ring.avail_flags & VRING_AVAIL_F_NO_INTERRUPT
        return False

    def _nused(self) -> int:
        nused = (self.ring.used_idx - self.used_cons_idx) & _U16_MASK
        if nused > self.num_entries:
            raise VirtqueueError(f"{self.name}: used more than available")
        return nused

    def _navail(self) -> int:
        navail = (self.ring.avail_idx - self.available_idx) & _U16_MASK
        if navail > self.num_entries:
            raise VirtqueueError(f"{self.name}: avail more than available")
        return navail

    def notification(self) -> None:
        """Handle a notification from the other side by running the callback."""
        if self.callback is not None:
            self.callback(self)

    # Diagnostics

    def dump(self) -> str:
        """Describe the queue state; the text is also logged at debug level."""
        text = (
            f"VQ: {self.name} - size={self.num_entries}; free={self.free_count}; "
            f"queued={self.queued_count}; desc_head_idx={self.desc_head_idx}; "
            f"available_idx={self.available_idx}; avail.idx={self.ring.avail_idx}; "
            f"used_cons_idx={self.used_cons_idx}; used.idx={self.ring.used_idx}; "
            f"avail.flags={self.ring.avail_flags:#x}; used.flags={self.ring.used_flags:#x}"
        )
        logger.debug(text)
        return text

    def free(self) -> None:
        """Release the queue, warning if buffers are still outstanding."""
        if self.free_count != self.num_entries:
            logger.warning("%s: freeing non-empty virtqueue", self.name)
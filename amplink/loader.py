"""Firmware loader states and an image store that feeds image data to it."""

from __future__ import annotations

from enum import IntFlag
from pathlib import Path
from typing import Mapping, Optional

from amplink.vring import SharedMemory

SUPPORT_SEEK = 1

# Device address meaning "not for target memory".
RPROC_LOAD_ANYADDR = -1

RPROC_LOADER_MASK = 0x00FF0000
RPROC_LOADER_PRIVATE_MASK = 0x0000FFFF
RPROC_LOADER_RESERVED_MASK = 0x0F000000


class LoaderState(IntFlag):
    """Parsing states of an executable image loader."""

    NOT_READY = 0x0
    READY_TO_LOAD = 0x10000
    POST_DATA_LOAD = 0x20000
    LOAD_COMPLETE = 0x40000


def loader_state(value: int) -> LoaderState:
    """The generic loader state bits of a combined state value."""
    return LoaderState(value & RPROC_LOADER_MASK)


def private_state(value: int) -> int:
    """The loader-specific bits of a combined state value."""
    return value & RPROC_LOADER_PRIVATE_MASK


class ImageStore:
    """Serves firmware images, from a mapping of names or from files.

    Chunks asked for at a device address are also copied into ``memory``
    at that physical address. Loads always complete at once, so blocking
    and non-blocking requests behave alike.
    """

    def __init__(self, images: Optional[Mapping[str, bytes]] = None,
                 memory: Optional[SharedMemory] = None,
                 features: int = SUPPORT_SEEK) -> None:
        self.images = dict(images) if images is not None else None
        self.memory = memory
        self.features = features
        self.image: Optional[bytes] = None

    def open(self, path: str) -> bytes:
        """Open the image named ``path`` and return its contents."""
        self.close()
        if self.images is not None:
            try:
                image = self.images[path]
            except KeyError:
                raise FileNotFoundError(f"no image named {path!r}") from None
        else:
            image = Path(path).read_bytes()
        self.image = bytes(image)
        return self.image

    def close(self) -> None:
        """Forget the open image."""
        self.image = None

    def load(self, offset: int, size: int, pa: int = RPROC_LOAD_ANYADDR,
             is_blocking: bool = True) -> bytes:
        """Return up to ``size`` bytes of the image from ``offset``.

        With a device address ``pa`` the bytes are also written to target
        memory there. Fewer bytes come back at the end of the image.
        """
        if self.image is None:
            raise RuntimeError("no image is open")
        if offset < 0 or size < 0:
            raise ValueError("offset and size must not be negative")
        if offset > len(self.image):
            raise ValueError(f"offset {offset} lies beyond the image of {len(self.image)} bytes")
        chunk = self.image[offset:offset + size]
        if pa != RPROC_LOAD_ANYADDR:
            if self.memory is None:
                raise ValueError("no target memory to load into")
            start = self.memory.phys_to_virt(pa)
            if start + len(chunk) > self.memory.size:
                raise ValueError(f"{len(chunk)} bytes at {pa:#x} overrun target memory")
            self.memory.data[start:start + len(chunk)] = chunk
        return chunk
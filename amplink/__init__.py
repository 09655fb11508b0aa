"""Virtio rings, virtqueues and devices, ELF header parsing and firmware loader states."""

__version__ = "0.1.0"

__all__ = ["elf", "loader", "virtio", "virtqueue", "vring"]
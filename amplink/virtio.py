"""Virtio device model: device identifiers and virtqueue creation over vrings."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Iterable, Optional, Sequence

from amplink.virtqueue import InvalidParameterError, Role, Virtqueue
from amplink.vring import SharedMemory, vring_size


class DeviceId(IntEnum):
    """Virtio device type identifiers."""

    NETWORK = 1
    BLOCK = 2
    CONSOLE = 3
    ENTROPY = 4
    BALLOON = 5
    IOMEMORY = 6
    RPMSG = 7
    SCSI = 8
    NINE_P = 9
    MAC80211_WLAN = 10
    RPROC_SERIAL = 11
    GPU = 16
    INPUT = 18
    VSOCK = 19
    SOUND = 25
    FS = 26
    MAC80211_HWSIM = 29
    I2C_ADAPTER = 34
    BT = 40
    GPIO = 41


_DEVICE_NAMES = {
    DeviceId.NETWORK: "Network",
    DeviceId.BLOCK: "Block",
    DeviceId.CONSOLE: "Console",
    DeviceId.ENTROPY: "Entropy",
    DeviceId.BALLOON: "Balloon",
    DeviceId.IOMEMORY: "IOMemory",
    DeviceId.SCSI: "SCSI",
    DeviceId.NINE_P: "9P Transport",
    DeviceId.MAC80211_WLAN: "MAC80211 WLAN",
    DeviceId.RPROC_SERIAL: "Remoteproc Serial",
    DeviceId.GPU: "GPU",
    DeviceId.INPUT: "Input",
    DeviceId.VSOCK: "Vsock Transport",
    DeviceId.SOUND: "Sound",
    DeviceId.FS: "File System",
    DeviceId.MAC80211_HWSIM: "MAC80211 HWSIM",
    DeviceId.I2C_ADAPTER: "I2C Adapter",
    DeviceId.BT: "Bluetooth",
    DeviceId.GPIO: "GPIO",
}


def dev_name(devid: int) -> Optional[str]:
    """Human readable name of a device type, or None if it has none."""
    return _DEVICE_NAMES.get(devid)


@dataclass
class VringInfo:
    """Where a vring lives and the virtqueue built over it."""

    memory: Optional[SharedMemory] = None
    num_descs: int = 0
    align: int = 4096
    offset: int = 0
    vq: Optional[Virtqueue] = None


class VirtioDevice:
    """A virtio device with a set of vrings to carry its virtqueues."""

    def __init__(self, role: Role = Role.DRIVER, features: int = 0,
                 vrings: Optional[Iterable[VringInfo]] = None) -> None:
        self.role = Role(role)
        self.features = features
        self.vrings: list[VringInfo] = list(vrings) if vrings is not None else []

    def create_virtqueues(
        self,
        names: Sequence[str],
        callbacks: Optional[Sequence[Optional[Callable[[Virtqueue], None]]]] = None,
    ) -> list[Virtqueue]:
        """Build one virtqueue per name over the device's vrings, in order."""
        names = list(names)
        if len(names) > len(self.vrings):
            raise InvalidParameterError(
                f"{len(names)} virtqueues requested but only {len(self.vrings)} vrings")
        if callbacks is None:
            callbacks = [None] * len(names)
        elif len(callbacks) < len(names):
            raise InvalidParameterError("one callback is needed for each virtqueue")

        queues = []
        for index, (name, info, callback) in enumerate(zip(names, self.vrings, callbacks)):
            if info.memory is None:
                raise InvalidParameterError(f"vring {index} has no memory region")
            if self.role == Role.DRIVER:
                info.memory.fill(info.offset, 0, vring_size(info.num_descs, info.align))
            vq = Virtqueue(self, index, name, info.memory, info.num_descs,
                           info.align, info.offset, callback, self.notify)
            info.vq = vq
            queues.append(vq)
        return queues

    def notify(self, vq: Any) -> None:
        """Signal the other side that ``vq`` has work; a transport overrides this."""
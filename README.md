# amplink

Building blocks for inter-processor communication in asymmetric
multiprocessing systems. Everything works over in-memory shared regions, so
the protocol logic can be exercised, simulated and tested in pure Python.

## What is inside

- `amplink.vring` lays out a split virtio ring over a `SharedMemory` region.
  `SharedMemory` is a byte region mapped at a physical base. It provides
  `virt_to_phys`, `phys_to_virt` and `fill`. The module also has:
  - `vring_size(num, align)`, the number of bytes a ring occupies.
  - `vring_need_event(event_idx, new_idx, old)`, the event index test.
  - `VRing`, with accessors for descriptors (`desc`, `write_desc`,
    `set_desc_next`), the available ring (`avail_entry`, `set_avail_entry`,
    `avail_flags`, `avail_idx`) and the used ring (`used_entry`,
    `set_used_entry`, `used_flags`, `used_idx`). It also exposes the
    published `used_event` and `avail_event` indices.
  - `VRingDesc`, one descriptor as a dataclass.

  All ring fields are little endian.
- `amplink.virtqueue` provides `Virtqueue`, which serves either side of a
  ring.
  - The driver side uses `add_buffer`, `get_buffer` and `kick`.
  - The device side uses `get_available_buffer`, `get_desc_size`,
    `get_buffer_addr`, `get_buffer_length` and `add_consumed_buffer`.
  - Notifications are controlled with `enable_cb` and `disable_cb`. These
    use either the ring flags or event indices, depending on whether the
    device's `features` include `VIRTIO_RING_F_EVENT_IDX`.
  - `notification` runs the queue's callback.
  - `dump` returns a one-line description of the queue state and logs it
    at debug level.
  - `free` logs a warning if descriptors are still outstanding.

  Buffers are given as `Buffer(offset, length)`, where `offset` is the
  buffer's offset in shared memory. `Role.DRIVER` and `Role.DEVICE` select
  the side. Errors are raised as `VirtqueueError` or one of its subclasses:
  `InvalidParameterError`, `RingAlignError`, `RingFullError` and
  `NoBufferError`.
- `amplink.virtio` provides `VirtioDevice`, which holds a role, a feature
  word and a list of `VringInfo`. Its `create_virtqueues(names, callbacks)`
  builds one `Virtqueue` per name. On the driver side it zeroes each ring
  first. The module also has the `DeviceId` table and `dev_name(devid)`,
  which returns a readable device type name, or `None`.
- `amplink.elf` handles ELF32 and ELF64 images, in either byte order.
  - `elf_identify` checks the magic number.
  - `parse_elf_header`, `parse_program_headers`, `parse_section_headers`
    and `parse_symbol` decode the headers and symbols into frozen
    dataclasses: `ElfHeader`, `ProgramHeader`, `SectionHeader` and `Symbol`.
  - `r_sym` and `r_type` split a relocation `r_info` field.

  Malformed input raises `ElfError`, which is a `ValueError`.
- `amplink.loader` holds the loader state bits.
  - `LoaderState` names the bits. `loader_state` and `private_state` split
    a combined state value.
  - `ImageStore` serves firmware images, either from a mapping of names to
    bytes or from files. `open` returns an image. `load` returns a chunk of
    it, and when given a device address it also copies the chunk into a
    target `SharedMemory`.

## Installing

```
pip install .
```

Nothing beyond the standard library is required at run time.

## A short example

A driver offers a buffer, and a device on the same memory takes it and
hands it back:

```python
from amplink.vring import SharedMemory, vring_size
from amplink.virtio import VirtioDevice
from amplink.virtqueue import Buffer, Role, Virtqueue

memory = SharedMemory(vring_size(8, 4096) + 4096, 0x1000_0000)

driver_vq = Virtqueue(VirtioDevice(Role.DRIVER, 0, []), 0, "tx",
                      memory, 8, 4096, 0, None, None)
device_vq = Virtqueue(VirtioDevice(Role.DEVICE, 0, []), 0, "rx",
                      memory, 8, 4096, 0, None, None)

driver_vq.add_buffer([Buffer(0x2000, 64)], 1, 0, "cookie")
driver_vq.kick()

offset, head, length = device_vq.get_available_buffer()   # (0x2000, 0, 64)
device_vq.add_consumed_buffer(head, 16)

print(driver_vq.get_buffer())                             # ('cookie', 16, 0)
```

## What it does not do

- There is no transport. Notifications between the two sides are plain
  Python callbacks, and no memory-mapped register transport is provided.
- There is no messaging layer on top of the virtqueues. No endpoints, name
  service or message framing are included.
- The ELF support decodes headers only. Nothing places an image's segments
  into target memory, and nothing locates a resource table.
- There is no command-line program.

## Running the tests

```
pip install .[test]
pytest
```
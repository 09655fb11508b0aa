import logging
from dataclasses import dataclass

import pytest

from amplink.virtqueue import (
    VIRTIO_RING_F_EVENT_IDX,
    VQ_RING_DESC_CHAIN_END,
    Buffer,
    InvalidParameterError,
    NoBufferError,
    RingAlignError,
    RingFullError,
    Role,
    Virtqueue,
)
from amplink.vring import (
    VRING_DESC_F_NEXT,
    VRING_DESC_F_WRITE,
    VRING_USED_F_NO_NOTIFY,
    SharedMemory,
    vring_size,
)

ALIGN = 16
NUM = 4
BUF_BASE = vring_size(NUM, ALIGN)


@dataclass
class FakeDevice:
    role: Role
    features: int = 0


def make_pair(features=0, driver_notify=None, device_notify=None, callback=None):
    mem = SharedMemory(BUF_BASE + 512, phys_base=0x8000)
    drv = Virtqueue(FakeDevice(Role.DRIVER, features), 0, "tx", mem, NUM, ALIGN, 0,
                    callback, driver_notify)
    dev = Virtqueue(FakeDevice(Role.DEVICE, features), 0, "rx", mem, NUM, ALIGN, 0,
                    None, device_notify)
    return mem, drv, dev


def test_driver_initialises_free_chain():
    _, drv, _ = make_pair()
    nexts = [drv.ring.desc(i).next for i in range(NUM)]
    assert nexts == [1, 2, 3, VQ_RING_DESC_CHAIN_END]
    assert drv.free_count == NUM


def test_zero_descriptors_rejected():
    mem = SharedMemory(1024)
    with pytest.raises(InvalidParameterError):
        Virtqueue(FakeDevice(Role.DRIVER), 0, "q", mem, 0, ALIGN, 0, None, None)


def test_non_power_of_two_rejected():
    mem = SharedMemory(1024)
    with pytest.raises(RingAlignError):
        Virtqueue(FakeDevice(Role.DRIVER), 0, "q", mem, 3, ALIGN, 0, None, None)


def test_round_trip_between_driver_and_device():
    mem, drv, dev = make_pair()
    drv.add_buffer([Buffer(BUF_BASE, 32)], 1, 0, "cookie-a")
    assert drv.free_count == NUM - 1
    assert drv.ring.desc(0).addr == mem.virt_to_phys(BUF_BASE)

    assert dev.get_desc_size() == 32
    offset, head, length = dev.get_available_buffer()
    assert (offset, head, length) == (BUF_BASE, 0, 32)
    assert dev.get_available_buffer() is None

    dev.add_consumed_buffer(head, 10)
    cookie, used_len, slot = drv.get_buffer()
    assert (cookie, used_len, slot) == ("cookie-a", 10, 0)
    assert drv.free_count == NUM
    assert drv.get_buffer() is None


def test_chain_flags_and_reuse():
    _, drv, dev = make_pair()
    drv.add_buffer([Buffer(BUF_BASE, 8), Buffer(BUF_BASE + 8, 16)], 1, 1, "pair")
    assert drv.ring.desc(0).flags == VRING_DESC_F_NEXT
    assert drv.ring.desc(1).flags == VRING_DESC_F_WRITE
    assert drv.free_count == NUM - 2
    assert drv.desc_head_idx == 2

    _, head, _ = dev.get_available_buffer()
    dev.add_consumed_buffer(head, 24)
    assert drv.get_buffer()[0] == "pair"
    assert drv.free_count == NUM
    assert drv.desc_head_idx == 0
    assert drv.ring.desc(1).next == 2


def test_indices_wrap_over_many_cycles():
    _, drv, dev = make_pair()
    for cycle in range(3 * NUM + 1):
        drv.add_buffer([Buffer(BUF_BASE, cycle + 1)], 1, 0, cycle)
        _, head, length = dev.get_available_buffer()
        assert length == cycle + 1
        dev.add_consumed_buffer(head, length)
        cookie, used_len, _ = drv.get_buffer()
        assert (cookie, used_len) == (cycle, cycle + 1)
    assert drv.free_count == NUM
    assert drv.ring.avail_idx == dev.available_idx == 3 * NUM + 1


def test_add_buffer_needs_at_least_one():
    _, drv, _ = make_pair()
    with pytest.raises(InvalidParameterError):
        drv.add_buffer([], 0, 0, "x")


def test_add_buffer_needs_cookie():
    _, drv, _ = make_pair()
    with pytest.raises(InvalidParameterError):
        drv.add_buffer([Buffer(BUF_BASE, 4)], 1, 0, None)


def test_ring_full():
    _, drv, _ = make_pair()
    for n in range(NUM):
        drv.add_buffer([Buffer(BUF_BASE + n, 1)], 1, 0, n)
    assert drv.free_count == 0
    assert drv.desc_head_idx == VQ_RING_DESC_CHAIN_END
    with pytest.raises(RingFullError):
        drv.add_buffer([Buffer(BUF_BASE, 1)], 1, 0, "late")


def test_consumed_buffer_index_out_of_range():
    _, _, dev = make_pair()
    with pytest.raises(NoBufferError):
        dev.add_consumed_buffer(NUM, 1)


def test_desc_size_peeks_without_consuming():
    _, drv, dev = make_pair()
    assert dev.get_desc_size() == 0
    drv.add_buffer([Buffer(BUF_BASE, 48)], 1, 0, "peek")
    assert dev.get_desc_size() == 48
    assert dev.get_desc_size() == 48
    assert dev.available_idx == 0


def test_kick_notifies_and_resets_queued():
    calls = []
    _, drv, _ = make_pair(driver_notify=calls.append)
    drv.add_buffer([Buffer(BUF_BASE, 4)], 1, 0, "k")
    assert drv.queued_count == 1
    drv.kick()
    assert calls == [drv]
    assert drv.queued_count == 0


def test_device_disable_cb_suppresses_driver_kick():
    calls = []
    _, drv, dev = make_pair(driver_notify=calls.append)
    dev.disable_cb()
    assert dev.ring.used_flags & VRING_USED_F_NO_NOTIFY
    drv.add_buffer([Buffer(BUF_BASE, 4)], 1, 0, "k")
    drv.kick()
    assert calls == []
    assert dev.enable_cb() is True
    assert not dev.ring.used_flags & VRING_USED_F_NO_NOTIFY
    drv.kick()
    assert calls == [drv]


def test_driver_enable_cb_reports_pending_used():
    _, drv, dev = make_pair()
    assert drv.enable_cb() is False
    drv.add_buffer([Buffer(BUF_BASE, 4)], 1, 0, "e")
    _, head, _ = dev.get_available_buffer()
    dev.add_consumed_buffer(head, 4)
    assert drv.enable_cb() is True


def test_notification_runs_callback():
    seen = []
    _, drv, _ = make_pair(callback=seen.append)
    drv.notification()
    assert seen == [drv]


def test_dump_describes_state():
    _, drv, _ = make_pair()
    drv.add_buffer([Buffer(BUF_BASE, 4)], 1, 0, "d")
    text = drv.dump()
    assert "VQ: tx" in text
    assert "free=3" in text
    assert "avail.idx=1" in text


def test_free_warns_when_not_empty(caplog):
    _, drv, _ = make_pair()
    drv.add_buffer([Buffer(BUF_BASE, 4)], 1, 0, "w")
    with caplog.at_level(logging.WARNING, logger="amplink.virtqueue"):
        drv.free()
    assert "freeing non-empty virtqueue" in caplog.text


def test_free_silent_when_empty(caplog):
    _, drv, _ = make_pair()
    with caplog.at_level(logging.WARNING, logger="amplink.virtqueue"):
        drv.free()
    assert caplog.records == []
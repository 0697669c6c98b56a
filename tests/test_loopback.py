"""End-to-end transactions between USBConnection and the simulated device."""

import threading

import pytest
import usb.core

from usb_io_mcp.device.dispatcher import DispatcherState
from usb_io_mcp.device.loopback import EP_IN, EP_OUT, LoopbackDevice
from usb_io_mcp.errors import TransferTimeoutError, TransportError
from usb_io_mcp.protocol.framing import encode_message
from usb_io_mcp.protocol.messages import (
    Ack,
    Data,
    DataMessage,
    DataSize,
    Get,
    Nop,
    Ping,
    Pong,
    Set,
)
from usb_io_mcp.transport.usb_connection import USBConnection

GPIOC_MODER = 0x40020800
RCC_AHB1ENR = 0x40023830


@pytest.fixture
def device():
    return LoopbackDevice()


@pytest.fixture
def conn(device):
    conn = USBConnection()
    conn.attach(device)
    yield conn
    conn.close()


def test_set_then_get(conn):
    """Set(0x40021830, U32(4)) is acknowledged and reads back."""
    assert conn.request(Set(0x40021830, Data.u32(0x00000004))) == Ack()
    assert conn.request(Get(0x40021830, DataSize.U32)) == DataMessage(Data.u32(0x00000004))


def test_ping_is_idempotent(conn):
    for _ in range(5):
        assert conn.request(Ping()) == Pong()
    assert conn.ready_to_use()


@pytest.mark.parametrize("data", [Data.u8(0x5A), Data.u16(0x1234), Data.u32(0x89ABCDEF)])
def test_width_fidelity(conn, data):
    address = 0x20001000
    assert conn.request(Set(address, data)) == Ack()
    assert conn.request(Get(address, data.size)) == DataMessage(data)


def test_nop_for_reply_tags(conn):
    assert conn.request(Ack()) == Nop()


def test_device_returns_to_idle(conn, device):
    conn.request(Ping())
    assert device.usb_class.state is DispatcherState.IDLE
    assert not device.out_endpoint.stalled
    assert device.usb_class.transactions == 1


def test_second_request_refused_while_reply_pending(conn, device):
    """The device stalls OUT until the pending reply is collected."""
    conn.send(Ping())
    assert device.usb_class.state is DispatcherState.STALLED

    with pytest.raises(TransportError):
        conn.send(Get(0x1000, DataSize.U8))

    assert conn.receive() == Pong()
    assert device.memory.log == []
    assert conn.request(Get(0x1000, DataSize.U8)) == DataMessage(Data.u8(0))


def test_malformed_frame_times_out(conn, device):
    """Garbage gets no reply; the host sees a timeout, not a message."""
    device.write(EP_OUT, b"\x05\x80")
    with pytest.raises(TransferTimeoutError):
        conn.receive()
    assert device.usb_class.dropped_frames == 1
    assert conn.ready_to_use()


def test_transient_errors_retried(conn, device):
    conn.send(Ping())
    device.inject_io_errors(2)
    assert conn.receive() == Pong()


def test_transient_errors_exhaust_budget(conn, device):
    conn.send(Ping())
    device.inject_io_errors(3)
    with pytest.raises(TransportError) as excinfo:
        conn.receive()
    assert type(excinfo.value) is TransportError
    # reply is still waiting and gets collected on the next read
    assert conn.receive() == Pong()


def test_attach_recovers_abandoned_transaction(device):
    """A reply left by a dead session is drained before the first request."""
    device.abandon_request(Get(0x1000, DataSize.U32))
    assert device.out_endpoint.stalled

    conn = USBConnection()
    conn.attach(device)

    assert device.usb_class.state is DispatcherState.IDLE
    assert conn.request(Ping()) == Pong()


def test_memory_interface(conn, device):
    conn.write32(RCC_AHB1ENR, 0x00100000)
    assert conn.modify32(RCC_AHB1ENR, set_bits=1 << 2) == 0x00100004
    assert conn.read32(RCC_AHB1ENR) == 0x00100004

    conn.write8(GPIOC_MODER + 3, 0x04)
    assert conn.read8(GPIOC_MODER + 3) == 0x04
    assert conn.read32(GPIOC_MODER) == 0x04000000
    conn.write16(GPIOC_MODER, 0xFFFF)
    assert conn.read16(GPIOC_MODER) == 0xFFFF


def test_oversized_frame_rejected(device):
    with pytest.raises(usb.core.USBError):
        device.write(EP_OUT, encode_message(Ping()) * 17)


def test_short_read_keeps_reply_queued(device):
    """A read buffer too small for the reply fails without losing the reply."""
    device.write(EP_OUT, encode_message(Get(GPIOC_MODER, DataSize.U32)))

    with pytest.raises(usb.core.USBError):
        device.read(EP_IN, 1)
    assert device.usb_class.state is DispatcherState.STALLED

    frame = device.read(EP_IN, 16)
    assert bytes(frame) == encode_message(DataMessage(Data.u32(0)))
    assert device.usb_class.state is DispatcherState.IDLE


def test_concurrent_transactions_do_not_interleave(conn, device):
    """Threads sharing one connection each get their own replies."""
    errors = []

    def worker(base):
        try:
            for i in range(25):
                address = base + 4 * i
                assert conn.request(Set(address, Data.u32(address))) == Ack()
                assert conn.try_read32(address) == address
        except Exception as e:  # collected for the main thread
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(0x20000000 + 0x1000 * n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert device.usb_class.transactions == 4 * 25 * 2

"""Tests for the device-side command dispatcher."""

from unittest.mock import MagicMock

import pytest

from usb_io_mcp.device.dispatcher import DispatcherState, UsbIoClass
from usb_io_mcp.device.loopback import BulkEndpoint
from usb_io_mcp.device.memory import RegisterAccessor, SimulatedMemory
from usb_io_mcp.protocol.framing import decode_message, encode_message
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

RCC_AHB1ENR = 0x40023830


@pytest.fixture
def memory():
    return SimulatedMemory()


@pytest.fixture
def endpoints():
    return BulkEndpoint(0x01), BulkEndpoint(0x81)


@pytest.fixture
def usb_io(memory, endpoints):
    out_ep, in_ep = endpoints
    return UsbIoClass(memory, out_ep, in_ep)


def _deliver(usb_io, endpoints, frame: bytes) -> None:
    out_ep, _ = endpoints
    out_ep.put(frame)
    usb_io.endpoint_out(out_ep.address)


def _reply(endpoints):
    _, in_ep = endpoints
    frame = in_ep.take()
    return None if frame is None else decode_message(frame)


def test_starts_idle(usb_io):
    assert usb_io.state is DispatcherState.IDLE
    assert usb_io.interface_class == 0xFF
    assert usb_io.max_packet_size == 16


def test_ping_pong(usb_io, endpoints):
    _deliver(usb_io, endpoints, encode_message(Ping()))
    assert _reply(endpoints) == Pong()


def test_set_writes_and_acks(usb_io, endpoints, memory):
    _deliver(usb_io, endpoints, encode_message(Set(RCC_AHB1ENR, Data.u32(0x4))))
    assert _reply(endpoints) == Ack()
    assert memory.read(RCC_AHB1ENR, DataSize.U32) == 0x4


@pytest.mark.parametrize("data", [Data.u8(0xA5), Data.u16(0xBEEF), Data.u32(0xDEADBEEF)])
def test_get_matches_width(usb_io, endpoints, memory, data):
    """A Get reply carries the requested width."""
    memory.write(0x20000000, data)
    _deliver(usb_io, endpoints, encode_message(Get(0x20000000, data.size)))
    assert _reply(endpoints) == DataMessage(data)


def test_single_access_per_request(usb_io, endpoints, memory):
    """Each Set/Get performs exactly one width-sized access."""
    _deliver(usb_io, endpoints, encode_message(Get(0x1000, DataSize.U16)))
    assert [(a.op, a.address, a.size) for a in memory.log] == [("read", 0x1000, DataSize.U16)]


@pytest.mark.parametrize("message", [Pong(), Ack(), Nop(), DataMessage(Data.u8(1))])
def test_other_tags_answer_nop(usb_io, endpoints, message):
    _deliver(usb_io, endpoints, encode_message(message))
    assert _reply(endpoints) == Nop()


def test_stalls_until_reply_collected(usb_io, endpoints):
    """OUT stays stalled from frame consumption until the IN transfer completes."""
    out_ep, in_ep = endpoints
    _deliver(usb_io, endpoints, encode_message(Ping()))
    assert out_ep.stalled
    assert usb_io.state is DispatcherState.STALLED

    in_ep.take()
    usb_io.endpoint_in_complete(in_ep.address)
    assert not out_ep.stalled
    assert usb_io.state is DispatcherState.IDLE
    assert usb_io.transactions == 1


def test_empty_frame_discarded(usb_io, endpoints):
    out_ep, in_ep = endpoints
    _deliver(usb_io, endpoints, b"")
    assert not in_ep.pending
    assert not out_ep.stalled
    assert usb_io.state is DispatcherState.IDLE
    assert usb_io.dropped_frames == 1


def test_malformed_frame_gets_no_reply(usb_io, endpoints, memory):
    """Garbage is dropped silently and nothing touches memory."""
    out_ep, in_ep = endpoints
    _deliver(usb_io, endpoints, b"\x04\x80")
    assert not in_ep.pending
    assert not out_ep.stalled
    assert usb_io.state is DispatcherState.IDLE
    assert memory.log == []


@pytest.mark.parametrize(
    "request_, reply",
    [(Ping(), Pong()), (Set(RCC_AHB1ENR, Data.u32(0x4)), Ack())],
)
def test_zero_padded_frame_executes(usb_io, endpoints, request_, reply):
    """Unused bytes after the message in a full-size buffer are ignored."""
    _deliver(usb_io, endpoints, encode_message(request_).ljust(16, b"\x00"))
    assert _reply(endpoints) == reply
    assert usb_io.dropped_frames == 0


def test_frame_ignored_while_reply_pending(usb_io, endpoints, memory):
    """A frame arriving in STALLED is left unread and the pending reply survives."""
    out_ep, in_ep = endpoints
    _deliver(usb_io, endpoints, encode_message(Ping()))

    out_ep.put(b"\x05\x00\x00")
    usb_io.endpoint_out(out_ep.address)
    assert usb_io.state is DispatcherState.STALLED
    assert out_ep.pending
    assert memory.log == []
    assert _reply(endpoints) == Pong()

    # once the reply is collected the queued Get is picked up
    usb_io.endpoint_in_complete(in_ep.address)
    usb_io.endpoint_out(out_ep.address)
    assert _reply(endpoints) == DataMessage(Data.u8(0))


def test_other_endpoint_addresses_ignored(usb_io, endpoints):
    out_ep, in_ep = endpoints
    out_ep.put(encode_message(Ping()))
    usb_io.endpoint_out(0x02)
    assert out_ep.pending
    assert usb_io.state is DispatcherState.IDLE

    usb_io.endpoint_in_complete(0x82)
    assert usb_io.transactions == 0


def test_in_complete_without_pending_reply(usb_io, endpoints):
    """A stray IN completion in IDLE changes nothing."""
    _, in_ep = endpoints
    usb_io.endpoint_in_complete(in_ep.address)
    assert usb_io.state is DispatcherState.IDLE
    assert usb_io.transactions == 0


def test_handle_frame_with_mock_accessor():
    """The decode/dispatch step only touches memory through the accessor."""
    accessor = MagicMock(spec=RegisterAccessor)
    accessor.read.return_value = 0x1234
    usb_io = UsbIoClass(accessor, MagicMock(), MagicMock())

    reply = usb_io.handle_frame(encode_message(Get(0x40000000, DataSize.U16)))

    assert reply == DataMessage(Data.u16(0x1234))
    accessor.read.assert_called_once_with(0x40000000, DataSize.U16)


def test_handle_frame_set_with_mock_accessor():
    accessor = MagicMock(spec=RegisterAccessor)
    usb_io = UsbIoClass(accessor, MagicMock(), MagicMock())

    assert usb_io.handle_frame(encode_message(Set(0x10, Data.u8(7)))) == Ack()
    accessor.write.assert_called_once_with(0x10, Data.u8(7))


def test_simulated_memory_little_endian():
    memory = SimulatedMemory()
    memory.write(0x100, Data.u32(0x11223344))
    assert memory.read(0x100, DataSize.U8) == 0x44
    assert memory.read(0x102, DataSize.U16) == 0x1122


def test_simulated_memory_fill():
    memory = SimulatedMemory(fill=0xFF)
    memory.load(0x10, b"\x01")
    assert memory.read(0x10, DataSize.U16) == 0xFF01
    assert len(memory.log) == 1

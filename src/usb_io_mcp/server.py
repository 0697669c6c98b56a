"""MCP server entry point for USB-IO register access.

Exposes device discovery and register read/write tools via the Model
Context Protocol using the official Python MCP SDK with stdio transport.

Environment:
    USB_IO_VID, USB_IO_PID: vendor/product identifier (hex or decimal).
    USB_IO_TIMEOUT_MS: per-transfer timeout in milliseconds.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from mcp.server.fastmcp import FastMCP

from .device.loopback import LoopbackDevice
from .errors import UsbIoError
from .protocol.messages import Data, DataSize
from .transport.usb_connection import (
    DEFAULT_TIMEOUT_MS,
    PRODUCT_ID,
    VENDOR_ID,
    DeviceInfo,
    USBConnection,
    find_devices,
)

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "usb-io",
    instructions="Remote 8/16/32-bit register access on a USB-IO microcontroller",
)

# Global connection state
_connection: USBConnection | None = None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    return int(raw, 0)


def _settings() -> tuple[int, int, int]:
    return (
        _env_int("USB_IO_VID", VENDOR_ID),
        _env_int("USB_IO_PID", PRODUCT_ID),
        _env_int("USB_IO_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
    )


def _get_connection() -> USBConnection:
    """Get the active USB connection, raising if not connected."""
    if _connection is None or not _connection.connected:
        raise RuntimeError(
            "Not connected to device. Use the 'connect' tool first."
        )
    return _connection


def _parse_int(value: int | str) -> int:
    """Accept ints and decimal or ``0x``-prefixed strings."""
    if isinstance(value, int):
        return value
    return int(value.strip(), 0)


def _info_dict(info: DeviceInfo) -> dict[str, Any]:
    return {
        "manufacturer": info.manufacturer,
        "product": info.product,
        "serial_number": info.serial_number,
        "bus": info.bus,
        "address": info.address,
    }


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def list_devices() -> dict[str, Any]:
    """List attached USB-IO devices by vendor/product identifier."""
    try:
        vendor_id, product_id, _ = _settings()
        devices = find_devices(vendor_id, product_id)
    except (UsbIoError, ValueError) as e:
        return {"error": str(e)}
    return {"devices": [_info_dict(info) for info in devices]}


@mcp.tool()
def connect(serial_number: str | None = None, simulated: bool = False) -> dict[str, Any]:
    """Open a connection to a USB-IO board and check that it answers Ping.

    Args:
        serial_number: Pick a specific board when several are attached.
        simulated: Connect to an in-process simulated device instead of hardware.
    """
    global _connection
    if _connection is not None and _connection.connected:
        return {
            "connected": True,
            "message": "Already connected",
            "serial_number": _connection.device_info.serial_number,
        }

    try:
        vendor_id, product_id, timeout_ms = _settings()
        conn = USBConnection(vendor_id, product_id, timeout_ms, serial_number=serial_number)
        if simulated:
            info = conn.attach(
                LoopbackDevice(),
                DeviceInfo(product="Loopback", serial_number="SIMULATED"),
            )
        else:
            info = conn.open()
    except (UsbIoError, ValueError) as e:
        return {"connected": False, "error": str(e)}

    _connection = conn
    result: dict[str, Any] = {"connected": True, "ready": conn.ready_to_use()}
    result.update(_info_dict(info))
    return result


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Close the USB connection."""
    global _connection
    if _connection is None:
        return {"disconnected": True}
    _connection.close()
    _connection = None
    return {"disconnected": True}


@mcp.tool()
def ping() -> dict[str, Any]:
    """Send Ping and report whether the board answered Pong."""
    conn = _get_connection()
    return {"ready": conn.ready_to_use()}


# ─── REGISTER TOOLS ───────────────────────────────────────────────────

@mcp.tool()
def read_register(address: int | str, width: int = 32) -> dict[str, Any]:
    """Read a register.

    Args:
        address: 32-bit address, e.g. "0x40021830".
        width: Access width in bits (8, 16 or 32).
    """
    conn = _get_connection()
    try:
        addr = _parse_int(address)
        size = DataSize.from_bits(width)
        value = conn.try_read(addr, size)
    except (UsbIoError, ValueError) as e:
        return {"error": str(e)}
    return {
        "address": f"0x{addr:08X}",
        "width": width,
        "value": value,
        "hex": f"0x{value:0{size.num_bytes * 2}X}",
    }


@mcp.tool()
def write_register(address: int | str, value: int | str, width: int = 32) -> dict[str, Any]:
    """Write a register.

    Args:
        address: 32-bit address, e.g. "0x40021830".
        value: Value to write; must fit in ``width`` bits.
        width: Access width in bits (8, 16 or 32).
    """
    conn = _get_connection()
    try:
        addr = _parse_int(address)
        data = Data(DataSize.from_bits(width), _parse_int(value))
        conn.try_write(addr, data)
    except (UsbIoError, ValueError) as e:
        return {"error": str(e)}
    return {"address": f"0x{addr:08X}", "width": width, "written": data.value}


@mcp.tool()
def modify_register(
    address: int | str,
    set_bits: int | str = 0,
    clear_bits: int | str = 0,
) -> dict[str, Any]:
    """Read-modify-write a 32-bit register.

    Two separate transactions; not atomic with respect to the hardware.

    Args:
        address: 32-bit address.
        set_bits: Mask of bits to set.
        clear_bits: Mask of bits to clear (applied before ``set_bits``).
    """
    conn = _get_connection()
    try:
        addr = _parse_int(address)
        value = conn.try_modify32(addr, _parse_int(set_bits), _parse_int(clear_bits))
    except (UsbIoError, ValueError) as e:
        return {"error": str(e)}
    return {"address": f"0x{addr:08X}", "value": f"0x{value:08X}"}


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

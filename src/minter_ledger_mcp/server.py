"""MCP server entry point for a Ledger Nano S running the Minter app.

Exposes tools via the Model Context Protocol using the official Python
MCP SDK with stdio transport.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from .aio import AsyncMinterLedger
from .errors import LedgerError, ResponseError
from .ledger import MinterLedger
from .transport.session import PRODUCT_ID, VENDOR_ID

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30.0

mcp = FastMCP(
    "minter-ledger",
    instructions="MCP server for signing Minter transactions on a Ledger Nano S",
)

# Global connection state
_ledger: AsyncMinterLedger | None = None


def _new_ledger() -> AsyncMinterLedger:
    return AsyncMinterLedger(MinterLedger.open())


def _get_ledger() -> AsyncMinterLedger:
    """Get the ready ledger, raising if not connected."""
    if _ledger is None or not _ledger.is_ready():
        raise RuntimeError(
            "Not connected to device. Use the 'connect' tool first."
        )
    return _ledger


def _error(e: Exception) -> dict[str, Any]:
    result: dict[str, Any] = {"error": str(e)}
    if isinstance(e, ResponseError):
        result["status"] = e.status.name
        result["code"] = f"0x{e.code:04x}"
    elif isinstance(e, LedgerError):
        result["code"] = f"0x{e.code:03x}"
    return result


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
async def connect(timeout: float = CONNECT_TIMEOUT) -> dict[str, Any]:
    """Connect to the Ledger Nano S.

    Polls for the device by USB vendor/product ID (0x2c97:0x0001) until it
    is opened, then reads the Minter app version to confirm it is running.

    Args:
        timeout: Seconds to wait for the device to become ready.
    """
    global _ledger
    if _ledger is not None and _ledger.is_ready():
        return {"connected": True, "message": "Already connected"}

    if _ledger is None:
        _ledger = _new_ledger()

    try:
        await _ledger.wait_ready(timeout)
    except asyncio.TimeoutError:
        _ledger.stop_discovery()
        return {
            "connected": False,
            "error": f"Device {VENDOR_ID:04x}:{PRODUCT_ID:04x} not ready after {timeout}s",
        }
    except LedgerError as e:
        return {"connected": False, **_error(e)}

    result: dict[str, Any] = {"connected": True}
    try:
        result["app_version"] = await _ledger.get_version()
    except ResponseError as e:
        result["version_error"] = str(e)
    return result


@mcp.tool()
async def disconnect() -> dict[str, bool]:
    """Close the USB connection to the device."""
    global _ledger
    if _ledger is None:
        return {"disconnected": True}
    await _ledger.destroy()
    _ledger = None
    return {"disconnected": True}


@mcp.tool()
def device_status() -> dict[str, Any]:
    """Report the connection state without touching the device."""
    if _ledger is None:
        return {"state": "disconnected", "ready": False, "discovering": False}
    session = _ledger.ledger.session
    return {
        "state": session.state.value,
        "ready": _ledger.is_ready(),
        "discovering": _ledger.discovering,
    }


# ─── COMMAND TOOLS ────────────────────────────────────────────────────

@mcp.tool()
async def get_version() -> dict[str, Any]:
    """Read the Minter application version from the device."""
    ledger = _get_ledger()
    try:
        return {"version": await ledger.get_version()}
    except ResponseError as e:
        return _error(e)


@mcp.tool()
async def get_address(derive_index: int = 0, silent: bool = False) -> dict[str, Any]:
    """Derive a Minter address on the device.

    Args:
        derive_index: Key-derivation index (0-4294967295).
        silent: Skip the confirmation screen on the device.
    """
    ledger = _get_ledger()
    try:
        address = await ledger.get_address(derive_index, silent)
    except (ValueError, ResponseError) as e:
        return _error(e)
    result = address.to_dict()
    result["derive_index"] = derive_index
    return result


@mcp.tool()
async def sign_tx_hash(tx_hash: str, derive_index: int = 0) -> dict[str, Any]:
    """Sign an unsigned transaction hash on the device.

    The user must confirm on the device.

    Args:
        tx_hash: 32-byte hash as hex (with or without 0x prefix).
        derive_index: Key-derivation index (0-4294967295).
    """
    ledger = _get_ledger()
    try:
        raw = bytes.fromhex(tx_hash.removeprefix("0x"))
        signature = await ledger.sign_tx_hash(raw, derive_index)
    except (ValueError, ResponseError) as e:
        return _error(e)
    return signature.to_dict()


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

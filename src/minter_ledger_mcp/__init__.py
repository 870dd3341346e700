"""Ledger Nano S connector for the Minter application, with an MCP tool server."""

from .aio import AsyncMinterLedger
from .errors import ConnectionLostError, LedgerError, ResponseError
from .ledger import MinterLedger
from .protocol.commands import Command, StatusCode
from .transport.session import DeviceListener, DeviceSession

__version__ = "0.1.0"

"""Command table, status codes, and high-level command builders.

Each command maps to a fixed ``(instruction, p1, p2)`` triple. Adding a
command to the device only needs a new :class:`Command` entry and a
payload builder.
"""

from __future__ import annotations

from enum import Enum, IntEnum

from .framing import build_frame

DERIVE_INDEX_SIZE = 4
TX_HASH_SIZE = 32


class Command(Enum):
    """Minter application instructions."""

    GET_VERSION = (0x01, 0x00, 0x00)
    GET_ADDRESS = (0x01 << 1, 0x00, 0x00)
    GET_ADDRESS_SILENT = (0x01 << 1, 0x01, 0x00)
    SIGN_HASH = (0x01 << 2, 0x00, 0x00)

    def __init__(self, ins: int, p1: int, p2: int) -> None:
        self.ins = ins
        self.p1 = p1
        self.p2 = p2


class StatusCode(IntEnum):
    """Device-reported status words plus host-synthesized failures."""

    OK = 0x9000
    USER_REJECTED = 0x6985
    INVALID_PARAMETER = 0x6B01

    UNKNOWN = 0xFF00
    CONNECTION_LOST = 0xFF01
    EMPTY_RESPONSE = 0xFF02
    INVALID_RESPONSE = 0xFF03
    READ_TIMEOUT = 0xFF04
    COMMON_IO_ERROR = 0xFF05
    DEVICE_ERROR = 0xFF06
    CANCELED = 0xFF07

    @classmethod
    def find_by_value(cls, value: int) -> StatusCode:
        """Look up a status word, falling back to ``UNKNOWN``."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


def encode(command: Command, payload: bytes | None = None) -> bytes:
    """Build a single 64-byte HID report for a command."""
    return build_frame(command.ins, command.p1, command.p2, payload)


def encode_derive_index(derive_index: int) -> bytes:
    """Serialize a key-derivation index as a 4-byte big-endian integer."""
    if not 0 <= derive_index <= 0xFFFFFFFF:
        raise ValueError(f"Derive index must be 0-4294967295, got {derive_index}")
    return derive_index.to_bytes(DERIVE_INDEX_SIZE, "big")


def sign_hash_payload(tx_hash: bytes, derive_index: int = 0) -> bytes:
    """Payload for SignHash: derive index followed by the 32-byte hash.

    Raises:
        ValueError: If the hash is not exactly 32 bytes.
    """
    if len(tx_hash) != TX_HASH_SIZE:
        raise ValueError(
            f"Transaction hash must have exact {TX_HASH_SIZE} bytes, got {len(tx_hash)}"
        )
    return encode_derive_index(derive_index) + bytes(tx_hash)

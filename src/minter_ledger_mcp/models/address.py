"""Minter address model."""

from __future__ import annotations

from dataclasses import dataclass

ADDRESS_SIZE = 20
ADDRESS_PREFIX = "Mx"


@dataclass(frozen=True)
class Address:
    """A 20-byte Minter address, rendered as ``Mx`` + lowercase hex."""

    raw: bytes

    def __post_init__(self) -> None:
        if len(self.raw) != ADDRESS_SIZE:
            raise ValueError(
                f"Address must be {ADDRESS_SIZE} bytes, got {len(self.raw)}"
            )

    def __str__(self) -> str:
        return ADDRESS_PREFIX + self.raw.hex()

    def to_dict(self) -> dict:
        return {"address": str(self), "raw_hex": self.raw.hex()}

    @classmethod
    def from_bytes(cls, data: bytes) -> Address:
        return cls(raw=bytes(data))

    @classmethod
    def from_string(cls, value: str) -> Address:
        """Parse an ``Mx``-prefixed (or bare) hex address."""
        if value[:2].lower() == ADDRESS_PREFIX.lower():
            value = value[2:]
        return cls(raw=bytes.fromhex(value))

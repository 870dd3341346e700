"""Transaction signature model.

Layout of the SignHash response body::

    +-----------+-----------+-----+
    |     R     |     S     |  V  |
    | 32 bytes  | 32 bytes  | 1 B |
    +-----------+-----------+-----+
"""

from __future__ import annotations

from dataclasses import dataclass

COMPONENT_SIZE = 32
SIGNATURE_SIZE = COMPONENT_SIZE * 2 + 1


@dataclass(frozen=True)
class Signature:
    """An ECDSA signature with its recovery id."""

    r: bytes
    s: bytes
    v: int

    def to_bytes(self) -> bytes:
        return self.r + self.s + bytes([self.v])

    def to_dict(self) -> dict:
        return {
            "r": self.r.hex(),
            "s": self.s.hex(),
            "v": self.v,
        }

    @classmethod
    def from_bytes(cls, data: bytes) -> Signature:
        """Split a device response into r, s and v.

        Raises:
            ValueError: If fewer than 65 bytes are given.
        """
        if len(data) < SIGNATURE_SIZE:
            raise ValueError(
                f"Signature needs {SIGNATURE_SIZE} bytes, got {len(data)}"
            )
        return cls(
            r=bytes(data[0:COMPONENT_SIZE]),
            s=bytes(data[COMPONENT_SIZE : COMPONENT_SIZE * 2]),
            v=data[COMPONENT_SIZE * 2],
        )

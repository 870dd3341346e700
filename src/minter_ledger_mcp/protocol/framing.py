"""Frame builder and parser for 64-byte Ledger HID reports.

Outbound frame layout::

    +---------+-----+----------+----------+-----+-----+----+----+-----+-----------+---------+
    | Channel | Tag | Sequence | APDU len | CLA | INS | P1 | P2 | Len |  Payload  | Padding |
    | 2 bytes | 1 B | 2 bytes  | 2 bytes  | 1 B | 1 B | 1B | 1B | 1 B | <= 52 B   | to 64 B |
    +---------+-----+----------+----------+-----+-----+----+----+-----+-----------+---------+

Inbound frames share the 5-byte channel/tag/sequence header. The first
inbound frame carries the 2-byte total response length right after it.

- Channel: always 0x0101
- Tag: always 0x05
- All multi-byte fields are big-endian
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import InvalidResponseError

HID_REPORT_SIZE = 64
CHANNEL_ID = 0x0101
COMMAND_TAG = 0x05
APDU_CLASS = 0xE0

FRAME_HEADER_SIZE = 5  # channel(2) + tag(1) + sequence(2)
APDU_HEADER_SIZE = 5  # cla + ins + p1 + p2 + len
FRAME_DATA_SIZE = HID_REPORT_SIZE - FRAME_HEADER_SIZE  # 59
# 64 - 5(frame header) - 2(apdu len) - 5(apdu header)
MAX_PAYLOAD_SIZE = HID_REPORT_SIZE - FRAME_HEADER_SIZE - 2 - APDU_HEADER_SIZE


@dataclass
class Apdu:
    """A decoded outbound APDU."""

    ins: int
    p1: int
    p2: int
    payload: bytes
    cla: int = APDU_CLASS

    def __repr__(self) -> str:
        return (
            f"Apdu(cla=0x{self.cla:02X}, ins=0x{self.ins:02X}, "
            f"p1=0x{self.p1:02X}, p2=0x{self.p2:02X}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


@dataclass
class InboundFrame:
    """Header fields and data region of one inbound HID report."""

    channel_id: int
    command_tag: int
    sequence: int
    data: bytes


def build_frame(ins: int, p1: int = 0, p2: int = 0, payload: bytes | None = None) -> bytes:
    """Build a 64-byte HID report carrying a single APDU.

    Args:
        ins: Instruction byte.
        p1: First parameter byte.
        p2: Second parameter byte.
        payload: Command data. ``None`` is treated as empty.

    Returns:
        A 64-byte ``bytes`` object ready to write to the bulk OUT endpoint.

    Raises:
        ValueError: If the payload does not fit in a single frame.
    """
    payload = bytes(payload or b"")
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(
            f"Payload must be at most {MAX_PAYLOAD_SIZE} bytes, got {len(payload)}"
        )

    header = (
        CHANNEL_ID.to_bytes(2, "big")
        + bytes([COMMAND_TAG])
        + (0).to_bytes(2, "big")  # outbound commands always fit in sequence 0
    )
    apdu_len = (APDU_HEADER_SIZE + len(payload)).to_bytes(2, "big")
    apdu = bytes([APDU_CLASS, ins & 0xFF, p1 & 0xFF, p2 & 0xFF, len(payload)]) + payload
    frame = header + apdu_len + apdu
    return frame + b"\x00" * (HID_REPORT_SIZE - len(frame))


def parse_outbound_frame(data: bytes) -> Apdu:
    """Decode an outbound report back into its APDU fields.

    Raises:
        InvalidResponseError: If the report header or lengths are malformed.
    """
    if len(data) != HID_REPORT_SIZE:
        raise InvalidResponseError(
            f"HID report must be {HID_REPORT_SIZE} bytes, got {len(data)}"
        )
    frame = parse_frame(data)
    apdu_len = int.from_bytes(frame.data[0:2], "big")
    body = frame.data[2:]
    if apdu_len < APDU_HEADER_SIZE or apdu_len > len(body):
        raise InvalidResponseError(f"Bad APDU length {apdu_len}")

    size = body[4]
    if APDU_HEADER_SIZE + size != apdu_len:
        raise InvalidResponseError(
            f"Payload length {size} disagrees with APDU length {apdu_len}"
        )
    return Apdu(
        cla=body[0],
        ins=body[1],
        p1=body[2],
        p2=body[3],
        payload=bytes(body[5 : 5 + size]),
    )


def parse_frame(data: bytes) -> InboundFrame:
    """Split a HID report into its header fields and data region.

    Raises:
        InvalidResponseError: If the report is too short, or the channel id
            or command tag do not match.
    """
    if len(data) < FRAME_HEADER_SIZE:
        raise InvalidResponseError(f"Frame too short: {len(data)} bytes")

    channel_id = int.from_bytes(data[0:2], "big")
    if channel_id != CHANNEL_ID:
        raise InvalidResponseError(f"Unknown channel id 0x{channel_id:04X}")

    command_tag = data[2]
    if command_tag != COMMAND_TAG:
        raise InvalidResponseError(f"Response has invalid command tag 0x{command_tag:02X}")

    return InboundFrame(
        channel_id=channel_id,
        command_tag=command_tag,
        sequence=int.from_bytes(data[3:5], "big"),
        data=bytes(data[FRAME_HEADER_SIZE:HID_REPORT_SIZE]),
    )


def response_length(first: InboundFrame) -> int:
    """Total response length announced by the first inbound frame."""
    if len(first.data) < 2:
        raise InvalidResponseError("First frame is missing the response length")
    return int.from_bytes(first.data[0:2], "big")


def reassemble(frames: list[InboundFrame]) -> bytes:
    """Concatenate the data regions of frames in order.

    Headers are already stripped by :func:`parse_frame`, so each frame
    contributes at most :data:`FRAME_DATA_SIZE` bytes.
    """
    return b"".join(frame.data for frame in frames)

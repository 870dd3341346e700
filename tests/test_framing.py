"""Tests for frame building and parsing."""

import pytest

from minter_ledger_mcp.errors import InvalidResponseError
from minter_ledger_mcp.protocol.framing import (
    FRAME_DATA_SIZE,
    HID_REPORT_SIZE,
    MAX_PAYLOAD_SIZE,
    build_frame,
    parse_frame,
    parse_outbound_frame,
    reassemble,
    response_length,
)


def test_build_frame_size():
    """Every built frame must be exactly 64 bytes."""
    assert len(build_frame(0x02, payload=b"\x00\x00\x00\x01")) == HID_REPORT_SIZE
    assert len(build_frame(0x01)) == HID_REPORT_SIZE


def test_build_frame_layout():
    """Verify every header byte for a GetAddress frame with index 1."""
    frame = build_frame(0x02, 0x01, 0x00, b"\x00\x00\x00\x01")
    assert frame[0:2] == b"\x01\x01"  # channel id
    assert frame[2] == 0x05  # command tag
    assert frame[3:5] == b"\x00\x00"  # sequence
    assert frame[5:7] == b"\x00\x09"  # 5 + payload length
    assert frame[7] == 0xE0  # class
    assert frame[8] == 0x02  # instruction
    assert frame[9] == 0x01  # p1
    assert frame[10] == 0x00  # p2
    assert frame[11] == 0x04  # payload length
    assert frame[12:16] == b"\x00\x00\x00\x01"
    assert frame[16:] == b"\x00" * 48


def test_build_frame_no_payload():
    """A missing payload encodes as an empty one."""
    assert build_frame(0x01, payload=None) == build_frame(0x01, payload=b"")
    frame = build_frame(0x01)
    assert frame[5:7] == b"\x00\x05"
    assert frame[11] == 0


def test_build_frame_max_payload():
    """52 bytes is the largest payload that fits."""
    payload = bytes(range(MAX_PAYLOAD_SIZE))
    frame = build_frame(0x04, payload=payload)
    assert MAX_PAYLOAD_SIZE == 52
    assert frame[12:64] == payload


def test_build_frame_payload_too_large():
    """53 bytes must be rejected."""
    with pytest.raises(ValueError):
        build_frame(0x04, payload=bytes(53))


def test_roundtrip_parse_outbound():
    """Build a frame and decode its APDU back."""
    payload = bytes(range(36))
    apdu = parse_outbound_frame(build_frame(0x04, 0x00, 0x00, payload))
    assert apdu.cla == 0xE0
    assert apdu.ins == 0x04
    assert apdu.p1 == 0x00
    assert apdu.p2 == 0x00
    assert apdu.payload == payload


def test_parse_outbound_bad_length():
    """An APDU length that disagrees with the payload length is rejected."""
    frame = bytearray(build_frame(0x01, payload=b"\x01\x02"))
    frame[11] = 0x05
    with pytest.raises(InvalidResponseError):
        parse_outbound_frame(bytes(frame))


def test_parse_frame_header():
    frame = b"\x01\x01\x05\x00\x02" + bytes(range(59))
    parsed = parse_frame(frame)
    assert parsed.channel_id == 0x0101
    assert parsed.command_tag == 0x05
    assert parsed.sequence == 2
    assert parsed.data == bytes(range(59))


def test_parse_frame_wrong_channel():
    with pytest.raises(InvalidResponseError):
        parse_frame(b"\x01\x02\x05\x00\x00" + bytes(59))


def test_parse_frame_wrong_tag():
    with pytest.raises(InvalidResponseError):
        parse_frame(b"\x01\x01\x06\x00\x00" + bytes(59))


def test_parse_frame_too_short():
    with pytest.raises(InvalidResponseError):
        parse_frame(b"\x01\x01")


def test_response_length_and_reassemble():
    """Data regions are concatenated with headers stripped."""
    first = parse_frame(b"\x01\x01\x05\x00\x00\x00\x46" + b"\xaa" * 57)
    second = parse_frame(b"\x01\x01\x05\x00\x01" + b"\xbb" * 59)
    assert response_length(first) == 0x46
    buffer = reassemble([first, second])
    assert len(buffer) == 2 * FRAME_DATA_SIZE
    assert buffer[:2] == b"\x00\x46"
    assert buffer[59:] == b"\xbb" * 59

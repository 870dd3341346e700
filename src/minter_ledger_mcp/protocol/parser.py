"""Response parsing for device messages.

A reassembled response (frame headers stripped) has the layout::

    +------------+------------------+-------------+
    | Length (n) |       Data       | Status word |
    |  2 bytes   |     n bytes      |   2 bytes   |
    +------------+------------------+-------------+
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import InvalidResponseError, ResponseError
from ..models.address import ADDRESS_SIZE, Address
from ..models.signature import SIGNATURE_SIZE, Signature
from .commands import StatusCode


@dataclass
class ExchangeResult:
    """Status and data of a single command exchange."""

    status: StatusCode = StatusCode.UNKNOWN
    data: bytes = b""

    @property
    def ok(self) -> bool:
        return self.status == StatusCode.OK

    def __repr__(self) -> str:
        return (
            f"ExchangeResult(status={self.status.name}, "
            f"data={self.data.hex(' ') if self.data else '(empty)'})"
        )


def decode_response(buffer: bytes) -> ExchangeResult:
    """Split a reassembled response into data and status.

    Returns ``UNKNOWN`` with empty data if the buffer cannot hold a
    length prefix.

    Raises:
        InvalidResponseError: If the buffer is shorter than the announced
            length plus the status word.
    """
    if len(buffer) < 2:
        return ExchangeResult(status=StatusCode.UNKNOWN, data=b"")

    length = int.from_bytes(buffer[0:2], "big")
    end = 2 + length
    if len(buffer) < end + 2:
        raise InvalidResponseError(
            f"Response announces {length} data bytes but only "
            f"{max(len(buffer) - 4, 0)} arrived"
        )

    status = StatusCode.find_by_value(int.from_bytes(buffer[end : end + 2], "big"))
    return ExchangeResult(status=status, data=bytes(buffer[2:end]))


def check_result(result: ExchangeResult | None) -> ExchangeResult:
    """Reject anything but a successful, non-empty result.

    Raises:
        ResponseError: Carrying the status and raw data of the failure.
    """
    if result is None:
        raise ResponseError(StatusCode.EMPTY_RESPONSE)
    if result.status != StatusCode.OK:
        raise ResponseError(result)
    if not result.data:
        raise ResponseError(ExchangeResult(status=StatusCode.EMPTY_RESPONSE))
    return result


def parse_version(result: ExchangeResult) -> str:
    """Parse a GetVersion response into ``major.minor.patch``."""
    data = check_result(result).data
    if len(data) < 3:
        raise ResponseError(
            ExchangeResult(status=StatusCode.INVALID_RESPONSE, data=data)
        )
    return f"{data[0]}.{data[1]}.{data[2]}"


def parse_address(result: ExchangeResult) -> Address:
    """Parse a GetAddress response. The whole body is the address."""
    data = check_result(result).data
    if len(data) != ADDRESS_SIZE:
        raise ResponseError(
            ExchangeResult(status=StatusCode.INVALID_RESPONSE, data=data)
        )
    return Address.from_bytes(data)


def parse_signature(result: ExchangeResult) -> Signature:
    """Parse a SignHash response into r, s and v."""
    data = check_result(result).data
    if len(data) < SIGNATURE_SIZE:
        raise ResponseError(
            ExchangeResult(status=StatusCode.INVALID_RESPONSE, data=data)
        )
    return Signature.from_bytes(data)

"""Protocol layer: frame codec, command table, and response parsing."""

from .framing import build_frame, parse_frame
from .commands import Command, StatusCode, encode
from .parser import ExchangeResult, decode_response

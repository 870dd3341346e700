"""Command/response engine for the Minter application on a Ledger Nano S."""

from __future__ import annotations

import logging

from .errors import ConnectionLostError, InvalidResponseError, ReadTimeoutError, ResponseError
from .models.address import Address
from .models.signature import Signature
from .protocol.commands import Command, StatusCode, encode, encode_derive_index, sign_hash_payload
from .protocol.framing import (
    FRAME_DATA_SIZE,
    HID_REPORT_SIZE,
    InboundFrame,
    parse_frame,
    reassemble,
    response_length,
)
from .protocol.parser import ExchangeResult, decode_response, parse_address, parse_signature, parse_version
from .transport.platform import UsbPlatform
from .transport.session import DeviceSession

logger = logging.getLogger(__name__)

# Each cycle is one empty bulk read, i.e. one transport read timeout.
READ_TIMEOUT_CYCLES = 60


class MinterLedger:
    """Sends Minter commands to the device and decodes the responses.

    Usage::

        ledger = MinterLedger(DeviceSession(PyUsbPlatform()))
        ledger.session.search()
        ...                         # wait for on_device_ready
        version = ledger.get_version()
        address = ledger.get_address(0)
        signature = ledger.sign_tx_hash(tx_hash)
    """

    def __init__(
        self,
        session: DeviceSession,
        read_timeout_cycles: int = READ_TIMEOUT_CYCLES,
    ) -> None:
        self._session = session
        self._read_timeout_cycles = read_timeout_cycles

    @classmethod
    def open(cls, platform: UsbPlatform | None = None, **session_options) -> MinterLedger:
        """Build a ledger on the desktop platform, or on ``platform`` if given."""
        if platform is None:
            from .transport.pyusb_platform import PyUsbPlatform

            platform = PyUsbPlatform()
        return cls(DeviceSession(platform, **session_options))

    @property
    def session(self) -> DeviceSession:
        return self._session

    def is_ready(self) -> bool:
        return self._session.is_ready()

    # ─── EXCHANGE ─────────────────────────────────────────────────────

    def exchange(
        self,
        command: Command,
        payload: bytes | None = None,
        timeout: int | None = None,
    ) -> ExchangeResult:
        """Send one command and read back its complete response.

        Args:
            command: The instruction to send.
            payload: Command data, at most 52 bytes.
            timeout: Maximum number of empty reads to wait through.

        Returns:
            The decoded result. Transport and framing failures are reported
            as ``CONNECTION_LOST``, ``READ_TIMEOUT`` or ``INVALID_RESPONSE``.

        Raises:
            ValueError: If the payload does not fit in one frame.
            ResponseError: For any other I/O failure, with the cause attached.
        """
        cycles = self._read_timeout_cycles if timeout is None else timeout
        frame = encode(command, payload)
        logger.debug("Write APDU frame: %s", frame.hex(" "))

        try:
            self._session.write(frame)
        except ConnectionLostError as e:
            logger.warning("Connection lost while writing %s: %s", command.name, e)
            return ExchangeResult(status=StatusCode.CONNECTION_LOST)

        try:
            buffer = self._read_response(cycles)
        except ReadTimeoutError:
            logger.warning("No response to %s", command.name)
            return ExchangeResult(status=StatusCode.READ_TIMEOUT)
        except InvalidResponseError as e:
            logger.warning("Invalid response to %s: %s", command.name, e)
            return ExchangeResult(status=StatusCode.INVALID_RESPONSE)
        except ConnectionLostError as e:
            logger.warning("Connection lost while reading %s: %s", command.name, e)
            self._session.disconnect()
            return ExchangeResult(status=StatusCode.CONNECTION_LOST)
        except OSError as e:
            raise ResponseError(e) from e

        try:
            result = decode_response(buffer)
        except InvalidResponseError as e:
            logger.warning("Malformed response to %s: %s", command.name, e)
            return ExchangeResult(status=StatusCode.INVALID_RESPONSE)

        logger.debug("Response[%d]: %r", len(result.data), result)
        return result

    def _read_response(self, cycles: int) -> bytes:
        first = parse_frame(self._read_frame(cycles))
        length = response_length(first)
        # length prefix + data + status word
        needed = 2 + length + 2
        frames: list[InboundFrame] = [first]

        sequence = 1
        while len(frames) * FRAME_DATA_SIZE < needed:
            frame = parse_frame(self._read_frame(cycles))
            if frame.sequence != sequence:
                logger.warning(
                    "Frame sequence %d, expected %d", frame.sequence, sequence
                )
            frames.append(frame)
            sequence += 1

        return reassemble(frames)

    def _read_frame(self, cycles: int) -> bytes:
        """Read one full HID report, counting empty reads against ``cycles``."""
        buf = b""
        waited = 0
        while len(buf) < HID_REPORT_SIZE:
            chunk = self._session.read()
            if not chunk:
                waited += 1
                if waited >= cycles:
                    raise ReadTimeoutError(f"No data after {waited} reads")
                continue
            buf += chunk
        frame = buf[:HID_REPORT_SIZE]
        logger.debug("Read frame: %s", frame.hex(" "))
        return frame

    # ─── COMMANDS ─────────────────────────────────────────────────────

    def get_version(self) -> str:
        """Return the Minter application version as ``major.minor.patch``.

        Raises:
            ResponseError: If the device reports failure or sends no data.
        """
        return parse_version(self.exchange(Command.GET_VERSION))

    def get_address(self, derive_index: int = 0, silent: bool = False) -> Address:
        """Derive the address at ``derive_index``.

        Args:
            derive_index: Key-derivation index.
            silent: Skip the on-device confirmation screen.

        Raises:
            ValueError: If ``derive_index`` does not fit in 32 bits.
            ResponseError: If the device rejects the request.
        """
        payload = encode_derive_index(derive_index)
        command = Command.GET_ADDRESS_SILENT if silent else Command.GET_ADDRESS
        return parse_address(self.exchange(command, payload))

    def sign_tx_hash(self, tx_hash: bytes, derive_index: int = 0) -> Signature:
        """Sign a 32-byte transaction hash with the key at ``derive_index``.

        Raises:
            ValueError: If the hash is not exactly 32 bytes. Checked before
                anything is sent.
            ResponseError: If the user rejects the signature on the device.
        """
        payload = sign_hash_payload(tx_hash, derive_index)
        return parse_signature(self.exchange(Command.SIGN_HASH, payload))

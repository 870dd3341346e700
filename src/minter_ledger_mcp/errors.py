"""Exception types raised by the connector."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .protocol.commands import StatusCode
    from .protocol.parser import ExchangeResult


class LedgerError(Exception):
    """A discovery or lifecycle failure reported through ``on_error``.

    Args:
        code: One of the ``CODE_*`` constants in :mod:`.transport.session`.
        cause: The underlying exception, if any.
    """

    def __init__(self, code: int, cause: BaseException | None = None) -> None:
        self.code = code
        self.cause = cause
        message = f"Ledger error 0x{code:03X}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class ConnectionLostError(ConnectionError):
    """A bulk write transferred nothing, or the device went away."""


class ReadTimeoutError(TimeoutError):
    """No response frame arrived within the read-wait budget."""


class InvalidResponseError(ValueError):
    """An inbound frame did not carry the expected header or lengths."""


class ResponseError(Exception):
    """A command did not produce a usable result.

    Built from an :class:`ExchangeResult` (device-reported failure), a bare
    :class:`StatusCode`, or a cause exception which is mapped onto the
    matching host status.
    """

    def __init__(
        self,
        result: ExchangeResult | StatusCode | BaseException | None = None,
        message: str | None = None,
    ) -> None:
        from .protocol.commands import StatusCode
        from .protocol.parser import ExchangeResult

        self._message = message
        if isinstance(result, ExchangeResult):
            self.result = result
        elif isinstance(result, StatusCode):
            self.result = ExchangeResult(status=result)
        elif isinstance(result, BaseException):
            self.__cause__ = result
            self.result = ExchangeResult(status=_status_for(result))
            if self._message is None and not isinstance(result, ReadTimeoutError):
                self._message = str(result) or None
        else:
            self.result = ExchangeResult(status=StatusCode.UNKNOWN)
        super().__init__(self.message)

    @property
    def status(self) -> StatusCode:
        return self.result.status

    @property
    def code(self) -> int:
        return int(self.result.status)

    @property
    def data(self) -> bytes:
        return self.result.data

    @property
    def message(self) -> str:
        if self._message:
            return self._message
        return f"Response error: [0x{self.code:04x}] {self.status.name}"

    def __str__(self) -> str:
        return self.message


def _status_for(cause: BaseException) -> StatusCode:
    from .protocol.commands import StatusCode

    if isinstance(cause, ReadTimeoutError):
        return StatusCode.READ_TIMEOUT
    if isinstance(cause, ConnectionLostError):
        return StatusCode.CONNECTION_LOST
    if isinstance(cause, InvalidResponseError):
        return StatusCode.INVALID_RESPONSE
    if isinstance(cause, OSError):
        return StatusCode.COMMON_IO_ERROR
    return StatusCode.UNKNOWN

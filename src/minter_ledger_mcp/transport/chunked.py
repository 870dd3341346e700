"""Chunked bulk transport over an IN/OUT endpoint pair."""

from __future__ import annotations

import logging
import threading

from ..errors import ConnectionLostError
from .platform import Endpoint, UsbDeviceConnection

logger = logging.getLogger(__name__)

READ_TIMEOUT_MS = 1000
WRITE_TIMEOUT_MS = 1000
BUFFER_SIZE = 4096


class ChunkedTransport:
    """Moves raw byte buffers across a bulk endpoint pair.

    Writes are split into ``max_packet_size`` chunks. Every transfer,
    read or write, runs under one lock so callers on different threads
    never drive the endpoints concurrently.

    Usage::

        transport = ChunkedTransport(ep_in, ep_out, connection)
        transport.write(frame_bytes)
        data = transport.read()
    """

    def __init__(
        self,
        in_endpoint: Endpoint,
        out_endpoint: Endpoint,
        connection: UsbDeviceConnection,
        read_timeout_ms: int = READ_TIMEOUT_MS,
        write_timeout_ms: int = WRITE_TIMEOUT_MS,
        buffer_size: int = BUFFER_SIZE,
    ) -> None:
        self._in = in_endpoint
        self._out = out_endpoint
        self._connection = connection
        self._read_timeout_ms = read_timeout_ms
        self._write_timeout_ms = write_timeout_ms
        self._buffer_size = buffer_size
        self._lock = threading.Lock()

    @property
    def connection(self) -> UsbDeviceConnection:
        return self._connection

    def read(self) -> bytes:
        """Perform one bounded bulk read.

        Returns:
            The bytes actually received. May be short, or empty if the
            transfer timed out.
        """
        size = min(self._buffer_size, self._in.max_packet_size)
        with self._lock:
            data = self._connection.bulk_read(self._in, size, self._read_timeout_ms)
        return bytes(data or b"")

    def write(self, data: bytes) -> int:
        """Write ``data`` in ``max_packet_size`` chunks.

        Returns:
            Total number of bytes written.

        Raises:
            ConnectionLostError: If any chunk transfers nothing or the
                backend reports an I/O error.
        """
        length = len(data)
        offset = 0
        while offset < length:
            size = min(length - offset, self._out.max_packet_size)
            chunk = bytes(data[offset : offset + size])
            with self._lock:
                try:
                    written = self._connection.bulk_write(
                        self._out, chunk, self._write_timeout_ms
                    )
                except OSError as e:
                    raise ConnectionLostError(f"Bulk write failed: {e}") from e

            if written is None or written <= 0:
                raise ConnectionLostError(
                    f"Bulk write transferred nothing at offset {offset}"
                )
            offset += written
        return offset

"""USB backends for an opened Ledger device.

Supports both ``pyusb`` (preferred, real bulk endpoints) and ``hidapi``
backends. hidapi is used where the kernel HID driver owns the interface
and cannot be detached (macOS, Windows).
"""

from __future__ import annotations

import errno
import logging

from ..errors import ConnectionLostError
from .platform import Endpoint, UsbDeviceConnection, UsbInterface

logger = logging.getLogger(__name__)

HID_REPORT_ID = 0x00


class PyUsbConnection(UsbDeviceConnection):
    """Bulk transfers through ``pyusb`` + libusb."""

    def __init__(self, device) -> None:
        self._device = device
        self._claimed: set[int] = set()

    def bulk_read(self, endpoint: Endpoint, size: int, timeout_ms: int) -> bytes:
        import usb.core

        try:
            return bytes(self._device.read(endpoint.address, size, timeout=timeout_ms))
        except usb.core.USBTimeoutError:
            return b""
        except usb.core.USBError as e:
            if e.errno == errno.ENODEV:
                raise ConnectionLostError("Device is gone") from e
            raise

    def bulk_write(self, endpoint: Endpoint, data: bytes, timeout_ms: int) -> int:
        import usb.core

        try:
            return self._device.write(endpoint.address, data, timeout=timeout_ms)
        except usb.core.USBTimeoutError:
            return 0

    def claim_interface(self, interface: UsbInterface, force: bool = True) -> None:
        import usb.util

        # Detach kernel driver if needed
        if force and self._device.is_kernel_driver_active(interface.number):
            self._device.detach_kernel_driver(interface.number)

        usb.util.claim_interface(self._device, interface.number)
        self._claimed.add(interface.number)

    def release_interface(self, interface: UsbInterface) -> None:
        import usb.util

        if interface.number in self._claimed:
            usb.util.release_interface(self._device, interface.number)
            self._claimed.discard(interface.number)

    def close(self) -> None:
        import usb.util

        usb.util.dispose_resources(self._device)
        self._claimed.clear()


class HidapiConnection(UsbDeviceConnection):
    """Report-level I/O through the ``hidapi`` library.

    Endpoints are ignored: hidapi talks to the single HID interface the
    device exposes. Each write is prefixed with the report id byte.
    """

    def __init__(self, device) -> None:
        self._device = device

    def bulk_read(self, endpoint: Endpoint, size: int, timeout_ms: int) -> bytes:
        try:
            data = self._device.read(size, timeout_ms)
        except (OSError, ValueError) as e:
            raise ConnectionLostError(f"hidapi read failed: {e}") from e
        return bytes(data) if data else b""

    def bulk_write(self, endpoint: Endpoint, data: bytes, timeout_ms: int) -> int:
        written = self._device.write(bytes([HID_REPORT_ID]) + bytes(data))
        # report id is not part of the payload
        return written - 1 if written > 0 else written

    def claim_interface(self, interface: UsbInterface, force: bool = True) -> None:
        self._device.set_nonblocking(False)

    def release_interface(self, interface: UsbInterface) -> None:
        pass

    def close(self) -> None:
        self._device.close()

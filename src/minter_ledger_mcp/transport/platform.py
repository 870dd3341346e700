"""Host platform interfaces: USB enumeration, permission, and bulk I/O.

The session in :mod:`.session` only talks to these abstractions. The
desktop implementation lives in :mod:`.pyusb_platform`; tests provide
in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Protocol

USB_CLASS_HID = 0x03


class Direction(IntEnum):
    """Endpoint direction, matching the USB bEndpointAddress bit 7."""

    OUT = 0x00
    IN = 0x80


@dataclass(frozen=True)
class Endpoint:
    """A bulk/interrupt endpoint of a claimed interface."""

    address: int
    direction: Direction
    max_packet_size: int = 64


@dataclass(frozen=True)
class UsbInterface:
    """One interface of the active configuration."""

    number: int
    interface_class: int
    endpoints: tuple[Endpoint, ...] = ()


@dataclass
class UsbDevice:
    """An attached USB device as seen by the platform enumerator.

    ``handle`` is the backend's own device object and ``path`` the
    hidapi device path, when known.
    """

    vendor_id: int
    product_id: int
    interfaces: list[UsbInterface] = field(default_factory=list)
    bus: int | None = None
    address: int | None = None
    path: bytes = b""
    handle: Any = field(default=None, repr=False, compare=False)

    @property
    def interface_count(self) -> int:
        return len(self.interfaces)

    def same_device(self, other: UsbDevice) -> bool:
        return (
            self.vendor_id == other.vendor_id
            and self.product_id == other.product_id
            and self.bus == other.bus
            and self.address == other.address
            and self.path == other.path
        )


class UsbDeviceConnection(ABC):
    """An opened device: bulk transfers plus interface claiming."""

    @abstractmethod
    def bulk_read(self, endpoint: Endpoint, size: int, timeout_ms: int) -> bytes:
        """Read up to ``size`` bytes. Returns ``b""`` on timeout."""

    @abstractmethod
    def bulk_write(self, endpoint: Endpoint, data: bytes, timeout_ms: int) -> int:
        """Write ``data`` and return the number of bytes transferred."""

    @abstractmethod
    def claim_interface(self, interface: UsbInterface, force: bool = True) -> None:
        """Claim an interface, detaching a kernel driver if ``force``."""

    @abstractmethod
    def release_interface(self, interface: UsbInterface) -> None:
        """Release a previously claimed interface."""

    @abstractmethod
    def close(self) -> None:
        """Free the underlying handle."""


class PlatformListener(Protocol):
    """Receives asynchronous events from a :class:`UsbPlatform`."""

    def on_permission_result(self, device: UsbDevice, granted: bool) -> None: ...

    def on_device_detached(self, device: UsbDevice) -> None: ...


class UsbPlatform(ABC):
    """Enumerates devices, negotiates access, and opens connections."""

    def __init__(self) -> None:
        self._listeners: list[PlatformListener] = []

    @abstractmethod
    def list_devices(self) -> list[UsbDevice]:
        """Return every attached device."""

    @abstractmethod
    def has_permission(self, device: UsbDevice) -> bool:
        """Whether the process may open ``device`` right now."""

    @abstractmethod
    def request_permission(self, device: UsbDevice) -> None:
        """Ask for access to ``device``.

        Must return immediately. The outcome is delivered later through
        :meth:`PlatformListener.on_permission_result`.
        """

    @abstractmethod
    def open_device(self, device: UsbDevice) -> UsbDeviceConnection | None:
        """Open ``device``, or return ``None`` if it cannot be opened."""

    def add_listener(self, listener: PlatformListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: PlatformListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listeners(self) -> list[PlatformListener]:
        return list(self._listeners)

    def notify_permission_result(self, device: UsbDevice, granted: bool) -> None:
        for listener in self.listeners:
            listener.on_permission_result(device, granted)

    def notify_detached(self, device: UsbDevice) -> None:
        for listener in self.listeners:
            listener.on_device_detached(device)

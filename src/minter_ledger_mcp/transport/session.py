"""Connection lifecycle for a single Ledger device.

State machine::

    DISCONNECTED -> DISCOVERING -> PERMISSION_PENDING -> PERMISSION_GRANTED -> READY
         ^                                                                       |
         +------------------------------ detach / disconnect -------------------+

``ERROR`` is reachable from any state when opening the device fails; the
caller recovers by invoking :meth:`DeviceSession.search` again.

All state lives behind one re-entrant lock. Listener callbacks are queued
while the lock is held and delivered after it is released.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Protocol

from ..errors import ConnectionLostError
from .chunked import BUFFER_SIZE, READ_TIMEOUT_MS, WRITE_TIMEOUT_MS, ChunkedTransport
from .platform import (
    USB_CLASS_HID,
    Direction,
    Endpoint,
    UsbDevice,
    UsbDeviceConnection,
    UsbInterface,
    UsbPlatform,
)

logger = logging.getLogger(__name__)

VENDOR_ID = 0x2C97
PRODUCT_ID = 0x0001
INTERFACE_COUNT = 1

CODE_PERMISSION_DENIED = 0x100
CODE_DEVICE_NO_OUTPUTS = 0x101
CODE_CANT_OPEN_DEVICE = 0x102
CODE_NO_CONNECTION = 0x103
CODE_DEVICE_NO_INPUTS = 0x104


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    PERMISSION_PENDING = "permission_pending"
    PERMISSION_GRANTED = "permission_granted"
    READY = "ready"
    ERROR = "error"


class DeviceListener(Protocol):
    """Observer for lifecycle events of a :class:`DeviceSession`."""

    def on_device_ready(self) -> None: ...

    def on_disconnected(self) -> None: ...

    def on_error(self, code: int, cause: BaseException | None) -> None: ...


class DeviceSession:
    """Discovers, opens, and owns the connection to one Ledger device.

    Usage::

        session = DeviceSession(PyUsbPlatform())
        session.set_device_listener(listener)
        session.search()          # listener.on_device_ready() fires once open
        session.write(frame)
        session.destroy()
    """

    def __init__(
        self,
        platform: UsbPlatform,
        vendor_id: int = VENDOR_ID,
        product_id: int = PRODUCT_ID,
        interface_count: int = INTERFACE_COUNT,
        read_timeout_ms: int = READ_TIMEOUT_MS,
        write_timeout_ms: int = WRITE_TIMEOUT_MS,
        buffer_size: int = BUFFER_SIZE,
    ) -> None:
        self._platform = platform
        self._vendor_id = vendor_id
        self._product_id = product_id
        self._interface_count = interface_count
        self._read_timeout_ms = read_timeout_ms
        self._write_timeout_ms = write_timeout_ms
        self._buffer_size = buffer_size

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._permission_requested = False
        self._destroyed = False
        self._pending: list[tuple[str, tuple]] = []
        self._listener: DeviceListener | None = None

        self._device: UsbDevice | None = None
        self._interface: UsbInterface | None = None
        self._in_endpoint: Endpoint | None = None
        self._out_endpoint: Endpoint | None = None
        self._connection: UsbDeviceConnection | None = None
        self._transport: ChunkedTransport | None = None

        platform.add_listener(self)

    # ─── STATE ────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def permission_granted(self) -> bool:
        with self._lock:
            return self._state in (ConnectionState.PERMISSION_GRANTED, ConnectionState.READY)

    @property
    def device_ready(self) -> bool:
        return self.is_ready()

    @property
    def permission_request_in_flight(self) -> bool:
        with self._lock:
            return self._permission_requested

    @property
    def device(self) -> UsbDevice | None:
        with self._lock:
            return self._device

    @property
    def destroyed(self) -> bool:
        with self._lock:
            return self._destroyed

    def is_ready(self) -> bool:
        with self._lock:
            return self._state == ConnectionState.READY

    def set_device_listener(self, listener: DeviceListener | None) -> None:
        with self._lock:
            self._listener = listener

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug("State %s -> %s", self._state.value, state.value)
            self._state = state

    # ─── DISCOVERY ────────────────────────────────────────────────────

    def find_device(self) -> UsbDevice | None:
        """Return the first attached device matching VID, PID and interface count."""
        for device in self._platform.list_devices():
            if (
                device.vendor_id == self._vendor_id
                and device.product_id == self._product_id
                and device.interface_count == self._interface_count
            ):
                return device
        return None

    def is_connected(self) -> bool:
        """Whether a matching device is attached, opened or not."""
        return self.find_device() is not None

    def search(self) -> bool:
        """Look for the device and start opening it.

        Returns:
            ``True`` if the device is ready or an attempt is under way,
            ``False`` if no matching device is attached.
        """
        with self._lock:
            if self._destroyed:
                return False
            if self._state == ConnectionState.READY:
                return True

            logger.info("Searching device...")
            device = self.find_device()
            if device is None:
                logger.debug(
                    "No device %04x:%04x attached", self._vendor_id, self._product_id
                )
                if self._state != ConnectionState.PERMISSION_PENDING:
                    self._set_state(ConnectionState.DISCONNECTED)
                return False

            self._device = device
            if self._state != ConnectionState.PERMISSION_PENDING:
                self._set_state(ConnectionState.DISCOVERING)
            self._ask_permission()
        self._flush()
        return True

    def _ask_permission(self) -> None:
        device = self._device
        if self._platform.has_permission(device):
            logger.debug("Permissions already granted for dev: %s", device)
            self._set_state(ConnectionState.PERMISSION_GRANTED)
            self._init_device()
            return

        self._set_state(ConnectionState.PERMISSION_PENDING)
        if self._permission_requested:
            return
        logger.debug("Asking permissions for dev: %s", device)
        self._permission_requested = True
        self._platform.request_permission(device)

    def on_permission_result(self, device: UsbDevice, granted: bool) -> None:
        """Platform callback carrying the outcome of a permission request."""
        with self._lock:
            if self._destroyed:
                return
            self._permission_requested = False
            if self._device is not None and not device.same_device(self._device):
                logger.debug("Ignoring permission result for other device %s", device)
                return
            if self._state != ConnectionState.PERMISSION_PENDING:
                logger.debug(
                    "Ignoring permission result in state %s", self._state.value
                )
                return

            if granted:
                logger.info("Permissions granted")
                if self._device is None:
                    self._device = device
                self._set_state(ConnectionState.PERMISSION_GRANTED)
                self._init_device()
            else:
                logger.warning("Permission denied for device %s", device)
                self._set_state(ConnectionState.DISCONNECTED)
                self._emit("on_error", CODE_PERMISSION_DENIED, None)
        self._flush()

    # ─── OPEN ─────────────────────────────────────────────────────────

    def _init_device(self) -> None:
        logger.debug("Start init device")
        interface = _find_hid_interface(self._device)
        if interface is None:
            self._fail(CODE_CANT_OPEN_DEVICE, "No HID interface found")
            return

        out_endpoint = _first_endpoint(interface, Direction.OUT)
        in_endpoint = _first_endpoint(interface, Direction.IN)
        if out_endpoint is None:
            self._fail(CODE_DEVICE_NO_OUTPUTS, "No output endpoints")
            return
        if in_endpoint is None:
            self._fail(CODE_DEVICE_NO_INPUTS, "No input endpoints")
            return

        connection = self._platform.open_device(self._device)
        if connection is None:
            self._fail(CODE_CANT_OPEN_DEVICE, "Can't open device")
            return

        logger.debug("Claiming interface %d", interface.number)
        try:
            connection.claim_interface(interface, force=True)
        except OSError as e:
            connection.close()
            self._fail(CODE_CANT_OPEN_DEVICE, f"Can't claim interface: {e}", e)
            return

        self._interface = interface
        self._in_endpoint = in_endpoint
        self._out_endpoint = out_endpoint
        self._connection = connection
        self._transport = ChunkedTransport(
            in_endpoint,
            out_endpoint,
            connection,
            read_timeout_ms=self._read_timeout_ms,
            write_timeout_ms=self._write_timeout_ms,
            buffer_size=self._buffer_size,
        )
        self._set_state(ConnectionState.READY)
        logger.info("Device is ready")
        self._emit("on_device_ready")

    def _fail(self, code: int, message: str, cause: BaseException | None = None) -> None:
        logger.error("%s (code 0x%03X)", message, code)
        self._set_state(ConnectionState.ERROR)
        self._emit("on_error", code, cause)

    # ─── TEARDOWN ─────────────────────────────────────────────────────

    def on_device_detached(self, device: UsbDevice) -> None:
        """Platform callback for an unplugged device."""
        with self._lock:
            if self._destroyed or self._state != ConnectionState.READY:
                return
            if self._device is not None and not device.same_device(self._device):
                return
            logger.info("Ledger app closed")
            self._teardown()
        self._flush()

    def disconnect(self) -> None:
        """Release the interface and close the connection."""
        with self._lock:
            self._teardown()
        self._flush()

    def destroy(self) -> None:
        """Tear down unconditionally and detach from the platform.

        Safe to call more than once. No listener callback fires after the
        first call returns.
        """
        with self._lock:
            if self._destroyed:
                return
            self._teardown()
            self._destroyed = True
        self._flush()
        with self._lock:
            self._listener = None
        self._platform.remove_listener(self)
        logger.debug("Session destroyed")

    def _teardown(self) -> None:
        active = (
            self._state != ConnectionState.DISCONNECTED or self._connection is not None
        )
        if self._connection is not None:
            if self._interface is not None:
                try:
                    self._connection.release_interface(self._interface)
                except OSError as e:
                    logger.warning("Error releasing interface: %s", e)
            try:
                self._connection.close()
            except OSError as e:
                logger.warning("Error closing device: %s", e)

        self._transport = None
        self._connection = None
        self._interface = None
        self._in_endpoint = None
        self._out_endpoint = None
        self._device = None
        self._permission_requested = False
        self._set_state(ConnectionState.DISCONNECTED)

        if active:
            logger.info("Disconnected")
            self._emit("on_disconnected")

    # ─── I/O ──────────────────────────────────────────────────────────

    def write(self, data: bytes) -> int:
        """Write through the transport. A lost connection disconnects the session.

        Raises:
            ConnectionLostError: If not ready, or the write fails.
        """
        transport = self._require_transport()
        try:
            return transport.write(data)
        except ConnectionLostError:
            self.disconnect()
            raise

    def read(self) -> bytes:
        """Perform one bounded read through the transport."""
        return self._require_transport().read()

    def _require_transport(self) -> ChunkedTransport:
        with self._lock:
            transport = self._transport
        if transport is None:
            raise ConnectionLostError("Device is not connected")
        return transport

    # ─── EVENTS ───────────────────────────────────────────────────────

    def _emit(self, name: str, *args) -> None:
        self._pending.append((name, args))

    def _flush(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, []
            listener = self._listener
        if listener is None:
            return
        for name, args in pending:
            getattr(listener, name)(*args)


def _find_hid_interface(device: UsbDevice) -> UsbInterface | None:
    logger.debug("Searching for HID interface...")
    for interface in device.interfaces:
        if interface.interface_class == USB_CLASS_HID:
            return interface
    logger.debug("No HID interface found")
    return None


def _first_endpoint(interface: UsbInterface, direction: Direction) -> Endpoint | None:
    for endpoint in interface.endpoints:
        if endpoint.direction == direction:
            return endpoint
    return None

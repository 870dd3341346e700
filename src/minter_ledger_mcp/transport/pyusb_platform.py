"""Desktop USB platform built on ``pyusb``, with ``hidapi`` as fallback.

There is no interactive permission prompt on a desktop host. Access is
governed by file permissions on the usbfs node (udev rules on Linux), so
:meth:`PyUsbPlatform.request_permission` re-checks access on a
background thread and reports the outcome like a platform grant dialog
would.
"""

from __future__ import annotations

import logging
import os
import sys
import threading

from .platform import (
    USB_CLASS_HID,
    Direction,
    Endpoint,
    UsbDevice,
    UsbDeviceConnection,
    UsbInterface,
    UsbPlatform,
)
from .usb_connection import HidapiConnection, PyUsbConnection

logger = logging.getLogger(__name__)

DETACH_POLL_INTERVAL = 0.5
HID_EP_IN = 0x82
HID_EP_OUT = 0x02
HID_PACKET_SIZE = 64


class PyUsbPlatform(UsbPlatform):
    """Enumerates devices with pyusb and watches for unplug events."""

    def __init__(self, detach_poll_interval: float = DETACH_POLL_INTERVAL) -> None:
        super().__init__()
        self._detach_poll_interval = detach_poll_interval
        self._monitor: threading.Thread | None = None
        self._stop = threading.Event()
        self._monitor_lock = threading.Lock()

    # ─── ENUMERATION ──────────────────────────────────────────────────

    def list_devices(self) -> list[UsbDevice]:
        return self._enumerate()[1]

    def _enumerate(self) -> tuple[str | None, list[UsbDevice]]:
        """Return the backend that answered and the devices it found."""
        try:
            return "pyusb", self._list_pyusb()
        except Exception as e:
            logger.debug("pyusb enumeration failed: %s, trying hidapi", e)

        try:
            return "hidapi", self._list_hidapi()
        except Exception as e:
            logger.warning("USB enumeration failed: %s", e)
            return None, []

    def _list_pyusb(self) -> list[UsbDevice]:
        import usb.core
        import usb.util

        devices = []
        for dev in usb.core.find(find_all=True):
            try:
                config = dev[0]
            except (usb.core.USBError, IndexError) as e:
                logger.debug("Skipping %04x:%04x: %s", dev.idVendor, dev.idProduct, e)
                continue

            interfaces = []
            for intf in config:
                # alternate settings share an interface number
                if intf.bAlternateSetting != 0:
                    continue
                endpoints = tuple(
                    Endpoint(
                        address=ep.bEndpointAddress,
                        direction=(
                            Direction.IN
                            if usb.util.endpoint_direction(ep.bEndpointAddress)
                            == usb.util.ENDPOINT_IN
                            else Direction.OUT
                        ),
                        max_packet_size=ep.wMaxPacketSize,
                    )
                    for ep in intf
                )
                interfaces.append(
                    UsbInterface(
                        number=intf.bInterfaceNumber,
                        interface_class=intf.bInterfaceClass,
                        endpoints=endpoints,
                    )
                )

            devices.append(
                UsbDevice(
                    vendor_id=dev.idVendor,
                    product_id=dev.idProduct,
                    interfaces=interfaces,
                    bus=dev.bus,
                    address=dev.address,
                    handle=dev,
                )
            )
        return devices

    def _list_hidapi(self) -> list[UsbDevice]:
        import hid

        devices = []
        for info in hid.enumerate(0, 0):
            devices.append(
                UsbDevice(
                    vendor_id=info["vendor_id"],
                    product_id=info["product_id"],
                    interfaces=[_hid_interface(info.get("interface_number", 0))],
                    path=info["path"],
                )
            )
        return devices

    # ─── PERMISSION ───────────────────────────────────────────────────

    def has_permission(self, device: UsbDevice) -> bool:
        node = _usbfs_node(device)
        if node is None:
            return True
        return os.access(node, os.R_OK | os.W_OK)

    def request_permission(self, device: UsbDevice) -> None:
        def check() -> None:
            granted = self.has_permission(device)
            if not granted:
                logger.warning(
                    "No access to %s; install a udev rule for %04x:%04x",
                    _usbfs_node(device),
                    device.vendor_id,
                    device.product_id,
                )
            self.notify_permission_result(device, granted)

        threading.Thread(target=check, name="usb-permission", daemon=True).start()

    # ─── OPEN ─────────────────────────────────────────────────────────

    def open_device(self, device: UsbDevice) -> UsbDeviceConnection | None:
        if not device.path and device.handle is not None:
            try:
                return self._open_pyusb(device)
            except Exception as e:
                logger.debug("pyusb backend failed: %s, trying hidapi", e)

        try:
            return self._open_hidapi(device)
        except Exception as e:
            logger.error(
                "Could not open device %04x:%04x: %s",
                device.vendor_id,
                device.product_id,
                e,
            )
            return None

    def _open_pyusb(self, device: UsbDevice) -> UsbDeviceConnection:
        dev = device.handle
        # raises NotImplementedError where the kernel driver can't be detached
        dev.is_kernel_driver_active(device.interfaces[0].number)
        logger.info("Opened %04x:%04x via pyusb", device.vendor_id, device.product_id)
        return PyUsbConnection(dev)

    def _open_hidapi(self, device: UsbDevice) -> UsbDeviceConnection:
        import hid

        handle = hid.device()
        if device.path:
            handle.open_path(device.path)
        else:
            handle.open(device.vendor_id, device.product_id)
        logger.info("Opened %04x:%04x via hidapi", device.vendor_id, device.product_id)
        return HidapiConnection(handle)

    # ─── DETACH MONITOR ───────────────────────────────────────────────

    def add_listener(self, listener) -> None:
        super().add_listener(listener)
        with self._monitor_lock:
            if self._monitor is None:
                self._stop.clear()
                self._monitor = threading.Thread(
                    target=self._watch, name="usb-detach-monitor", daemon=True
                )
                self._monitor.start()

    def remove_listener(self, listener) -> None:
        super().remove_listener(listener)
        with self._monitor_lock:
            if not self.listeners and self._monitor is not None:
                self._stop.set()
                if self._monitor is not threading.current_thread():
                    self._monitor.join(timeout=self._detach_poll_interval * 4)
                self._monitor = None

    def _watch(self) -> None:
        backend, devices = self._enumerate()
        known = {_key(d): d for d in devices}
        while not self._stop.wait(self._detach_poll_interval):
            current_backend, devices = self._enumerate()
            current = {_key(d): d for d in devices}
            # keys from different backends carry different identity fields
            if current_backend != backend:
                logger.debug(
                    "Enumeration backend changed from %s to %s", backend, current_backend
                )
            else:
                for key, device in known.items():
                    if key not in current:
                        logger.info(
                            "Device %04x:%04x detached", device.vendor_id, device.product_id
                        )
                        self.notify_detached(device)
            backend, known = current_backend, current


def _hid_interface(number: int) -> UsbInterface:
    return UsbInterface(
        number=number,
        interface_class=USB_CLASS_HID,
        endpoints=(
            Endpoint(HID_EP_OUT, Direction.OUT, HID_PACKET_SIZE),
            Endpoint(HID_EP_IN, Direction.IN, HID_PACKET_SIZE),
        ),
    )


def _usbfs_node(device: UsbDevice) -> str | None:
    if not sys.platform.startswith("linux") or device.bus is None or device.address is None:
        return None
    return f"/dev/bus/usb/{device.bus:03d}/{device.address:03d}"


def _key(device: UsbDevice) -> tuple:
    return (device.vendor_id, device.product_id, device.bus, device.address, device.path)

"""Shared fakes for the USB platform and device connection."""

from __future__ import annotations

from collections import deque

import pytest

from minter_ledger_mcp.ledger import MinterLedger
from minter_ledger_mcp.transport.platform import (
    USB_CLASS_HID,
    Direction,
    Endpoint,
    UsbDevice,
    UsbDeviceConnection,
    UsbInterface,
    UsbPlatform,
)
from minter_ledger_mcp.transport.session import DeviceSession


def build_response_frames(data: bytes, status: int = 0x9000) -> list[bytes]:
    """Encode a device response the way the Nano S sends it.

    Body is ``[len(data)][data][status]`` split across 64-byte reports,
    each with a channel/tag/sequence header.
    """
    body = len(data).to_bytes(2, "big") + data + status.to_bytes(2, "big")
    frames = []
    for seq, offset in enumerate(range(0, len(body), 59)):
        frame = b"\x01\x01\x05" + seq.to_bytes(2, "big") + body[offset : offset + 59]
        frames.append(frame.ljust(64, b"\x00"))
    return frames


def make_device(
    vendor_id: int = 0x2C97,
    product_id: int = 0x0001,
    interfaces: list[UsbInterface] | None = None,
    address: int = 5,
) -> UsbDevice:
    if interfaces is None:
        interfaces = [
            UsbInterface(
                number=0,
                interface_class=USB_CLASS_HID,
                endpoints=(
                    Endpoint(0x02, Direction.OUT, 64),
                    Endpoint(0x82, Direction.IN, 64),
                ),
            )
        ]
    return UsbDevice(
        vendor_id=vendor_id,
        product_id=product_id,
        interfaces=interfaces,
        bus=1,
        address=address,
    )


class FakeConnection(UsbDeviceConnection):
    """Scripted bulk I/O. Each queued read is returned by one ``bulk_read``."""

    def __init__(self, reads: list[bytes] | None = None) -> None:
        self.reads = deque(reads or [])
        self.writes: list[bytes] = []
        self.write_result: int | None = None
        self.write_error: Exception | None = None
        self.read_error: Exception | None = None
        self.claim_error: Exception | None = None
        self.claimed: list[int] = []
        self.released: list[int] = []
        self.read_sizes: list[int] = []
        self.close_count = 0

    def queue(self, frames: list[bytes]) -> None:
        self.reads.extend(frames)

    def bulk_read(self, endpoint, size, timeout_ms):
        self.read_sizes.append(size)
        if self.read_error is not None:
            raise self.read_error
        if not self.reads:
            return b""
        return self.reads.popleft()[:size]

    def bulk_write(self, endpoint, data, timeout_ms):
        if self.write_error is not None:
            raise self.write_error
        self.writes.append(bytes(data))
        return len(data) if self.write_result is None else self.write_result

    def claim_interface(self, interface, force=True):
        if self.claim_error is not None:
            raise self.claim_error
        self.claimed.append(interface.number)

    def release_interface(self, interface):
        self.released.append(interface.number)

    def close(self):
        self.close_count += 1


class FakePlatform(UsbPlatform):
    """In-memory platform. Permission requests are answered by the test."""

    def __init__(self, devices=None, permission=True, connection=None) -> None:
        super().__init__()
        self.devices = list(devices or [])
        self.permission = permission
        self.connection = connection
        self.permission_requests: list[UsbDevice] = []
        self.open_count = 0

    def list_devices(self):
        return list(self.devices)

    def has_permission(self, device):
        return self.permission

    def request_permission(self, device):
        self.permission_requests.append(device)

    def open_device(self, device):
        self.open_count += 1
        return self.connection


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_device_ready(self):
        self.events.append(("ready",))

    def on_disconnected(self):
        self.events.append(("disconnected",))

    def on_error(self, code, cause):
        self.events.append(("error", code))


@pytest.fixture
def response_frames():
    return build_response_frames


@pytest.fixture
def device_factory():
    return make_device


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def platform(connection):
    return FakePlatform(devices=[make_device()], connection=connection)


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def session(platform, listener):
    session = DeviceSession(platform)
    session.set_device_listener(listener)
    return session


@pytest.fixture
def ready_session(session):
    assert session.search()
    assert session.is_ready()
    return session


@pytest.fixture
def ledger(ready_session):
    return MinterLedger(ready_session, read_timeout_cycles=3)

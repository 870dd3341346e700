"""Tests for the device connection lifecycle."""

import pytest

from minter_ledger_mcp.errors import ConnectionLostError
from minter_ledger_mcp.transport.platform import USB_CLASS_HID, Direction, Endpoint, UsbInterface
from minter_ledger_mcp.transport.session import (
    CODE_CANT_OPEN_DEVICE,
    CODE_DEVICE_NO_INPUTS,
    CODE_DEVICE_NO_OUTPUTS,
    CODE_PERMISSION_DENIED,
    ConnectionState,
    DeviceSession,
)


def test_search_with_permission_opens_device(session, platform, connection, listener):
    assert session.search() is True
    assert session.state is ConnectionState.READY
    assert session.is_ready()
    assert session.permission_granted
    assert connection.claimed == [0]
    assert listener.events == [("ready",)]


def test_search_no_device(platform, listener):
    platform.devices = []
    session = DeviceSession(platform)
    session.set_device_listener(listener)
    assert session.search() is False
    assert session.state is ConnectionState.DISCONNECTED
    assert listener.events == []


def test_search_matches_vid_pid_and_interface_count(platform, device_factory):
    two_interfaces = device_factory()
    two_interfaces.interfaces.append(UsbInterface(1, 0xFF))
    platform.devices = [
        device_factory(vendor_id=0x1234),
        device_factory(product_id=0x0004),
        two_interfaces,
    ]
    session = DeviceSession(platform)
    assert session.search() is False
    assert not session.is_connected()

    platform.devices.append(device_factory(address=9))
    assert session.is_connected()
    assert session.search() is True
    assert session.device.address == 9


def test_search_when_ready_is_noop(ready_session, platform, listener):
    """A second search does not re-enumerate or reopen."""
    assert ready_session.search() is True
    assert platform.open_count == 1
    assert listener.events == [("ready",)]


def test_permission_request_is_sent_once(session, platform, listener):
    platform.permission = False
    assert session.search() is True
    assert session.search() is True
    assert session.state is ConnectionState.PERMISSION_PENDING
    assert session.permission_request_in_flight
    assert len(platform.permission_requests) == 1
    assert listener.events == []


def test_permission_granted(session, platform, listener):
    platform.permission = False
    session.search()

    platform.notify_permission_result(platform.permission_requests[0], True)

    assert session.is_ready()
    assert not session.permission_request_in_flight
    assert listener.events == [("ready",)]


def test_permission_denied(session, platform, listener):
    platform.permission = False
    session.search()

    platform.notify_permission_result(platform.permission_requests[0], False)

    assert session.state is ConnectionState.DISCONNECTED
    assert not session.permission_request_in_flight
    assert listener.events == [("error", CODE_PERMISSION_DENIED)]
    assert platform.open_count == 0

    # caller retries explicitly
    session.search()
    assert len(platform.permission_requests) == 2


def test_no_output_endpoint(platform, listener, device_factory):
    platform.devices = [
        device_factory(
            interfaces=[UsbInterface(0, USB_CLASS_HID, (Endpoint(0x82, Direction.IN, 64),))]
        )
    ]
    session = DeviceSession(platform)
    session.set_device_listener(listener)
    session.search()
    assert session.state is ConnectionState.ERROR
    assert listener.events == [("error", CODE_DEVICE_NO_OUTPUTS)]
    assert platform.open_count == 0


def test_no_input_endpoint(platform, listener, device_factory):
    platform.devices = [
        device_factory(
            interfaces=[UsbInterface(0, USB_CLASS_HID, (Endpoint(0x02, Direction.OUT, 64),))]
        )
    ]
    session = DeviceSession(platform)
    session.set_device_listener(listener)
    session.search()
    assert listener.events == [("error", CODE_DEVICE_NO_INPUTS)]


def test_cant_open_device(session, platform, listener):
    platform.connection = None
    session.search()
    assert session.state is ConnectionState.ERROR
    assert listener.events == [("error", CODE_CANT_OPEN_DEVICE)]


def test_claim_failure(session, connection, listener):
    connection.claim_error = OSError("busy")
    session.search()
    assert session.state is ConnectionState.ERROR
    assert listener.events == [("error", CODE_CANT_OPEN_DEVICE)]
    assert connection.close_count == 1


def test_search_after_error_retries(session, platform, connection, listener):
    platform.connection = None
    session.search()
    platform.connection = connection
    assert session.search() is True
    assert session.is_ready()


def test_detach_while_ready(ready_session, platform, connection, listener):
    platform.notify_detached(platform.devices[0])

    assert ready_session.state is ConnectionState.DISCONNECTED
    assert not ready_session.permission_granted
    assert connection.released == [0]
    assert connection.close_count == 1
    assert listener.events == [("ready",), ("disconnected",)]
    with pytest.raises(ConnectionLostError):
        ready_session.read()


def test_detach_other_device_ignored(ready_session, platform, device_factory, listener):
    platform.notify_detached(device_factory(address=42))
    assert ready_session.is_ready()
    assert listener.events == [("ready",)]


def test_detach_when_not_ready_ignored(session, platform, listener):
    platform.notify_detached(platform.devices[0])
    assert listener.events == []


def test_destroy_twice(ready_session, platform, connection, listener):
    """Destroy releases once, fires once, and unsubscribes."""
    ready_session.destroy()
    ready_session.destroy()

    assert connection.close_count == 1
    assert listener.events.count(("disconnected",)) == 1
    assert ready_session not in platform.listeners
    assert ready_session.search() is False


def test_no_callbacks_after_destroy(session, platform, listener):
    platform.permission = False
    session.search()
    session.destroy()

    platform.notify_permission_result(platform.devices[0], True)

    assert not session.is_ready()
    assert ("ready",) not in listener.events


def test_destroy_unconnected_fires_nothing(session, listener):
    session.destroy()
    assert listener.events == []


def test_write_failure_disconnects(ready_session, connection, listener):
    connection.write_result = 0
    with pytest.raises(ConnectionLostError):
        ready_session.write(bytes(64))
    assert ready_session.state is ConnectionState.DISCONNECTED
    assert listener.events[-1] == ("disconnected",)


def test_late_grant_after_ready_is_ignored(session, platform, connection, listener):
    """A grant arriving after a later search already opened the device."""
    platform.permission = False
    session.search()
    platform.permission = True
    session.search()
    assert session.is_ready()

    platform.notify_permission_result(platform.permission_requests[0], True)

    assert platform.open_count == 1
    assert connection.close_count == 0
    assert listener.events == [("ready",)]


def test_late_deny_after_ready_is_ignored(session, platform, connection, listener):
    platform.permission = False
    session.search()
    platform.permission = True
    session.search()

    platform.notify_permission_result(platform.permission_requests[0], False)

    assert session.state is ConnectionState.READY
    assert connection.released == []
    assert listener.events == [("ready",)]
    session.write(bytes(64))
    assert connection.writes == [bytes(64)]

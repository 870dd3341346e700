"""Transport layer: USB platform, chunked bulk transport, and session lifecycle."""

from .chunked import ChunkedTransport
from .platform import Direction, Endpoint, UsbDevice, UsbDeviceConnection, UsbInterface, UsbPlatform
from .session import ConnectionState, DeviceListener, DeviceSession

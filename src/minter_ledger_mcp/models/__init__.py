"""Data models for values returned by the device."""

from .address import Address
from .signature import Signature

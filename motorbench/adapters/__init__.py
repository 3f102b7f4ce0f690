"""Adapter modules for external integrations."""

from .ble import BlePeripheral, BleakLink, BleakTransport, BleTransportError

__all__ = [
    "BlePeripheral",
    "BleakLink",
    "BleakTransport",
    "BleTransportError",
]

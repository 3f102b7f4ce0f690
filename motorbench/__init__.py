"""Bench-test controller for brushless motor/ESC assemblies over BLE."""

__version__ = "0.3.0"

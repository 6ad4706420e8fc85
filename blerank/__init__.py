"""Bluetooth LE scanner that keeps a smoothed, ranked device list."""

__version__ = "1.0.0"

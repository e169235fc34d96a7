"""Yamen NFC terminal bridge."""

__version__ = "2.1.0"

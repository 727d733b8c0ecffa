"""Parking lock reservation synchronisation service."""

__version__ = "1.0.0"

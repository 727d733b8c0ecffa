"""Simulated lock hardware and gateways."""

from .gateway import Gateway
from .lock import ParkingLock

__all__ = ["Gateway", "ParkingLock"]

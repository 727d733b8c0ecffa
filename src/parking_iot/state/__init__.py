"""State management module."""

from .authority import ReservationAuthority
from .models import ParkingLot, ParkingSlot, Reservation, ReservationStatus, SlotStatus
from .store import InMemoryStore, StateStore
from .sweeper import ExpirationSweeper

__all__ = [
    "ReservationAuthority",
    "ExpirationSweeper",
    "InMemoryStore",
    "StateStore",
    "ParkingLot",
    "ParkingSlot",
    "Reservation",
    "ReservationStatus",
    "SlotStatus",
]

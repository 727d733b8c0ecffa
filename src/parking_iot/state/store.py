"""Storage interface for canonical state and its in-memory implementation."""

import itertools
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Optional

from .models import (
    LogLevel,
    ParkingLot,
    ParkingSlot,
    Reservation,
    ReservationStatus,
    SensorReading,
    SlotStatus,
    SystemLogEntry,
)


class StateStore(ABC):
    """
    Persistence boundary of the reservation authority.

    Records are returned as copies; changes only take effect through the
    save_* methods, so the store can be backed by durable storage without
    changing the authority.
    """

    @abstractmethod
    def save_lot(self, lot: ParkingLot) -> None: ...

    @abstractmethod
    def get_lot(self, lot_id: str) -> Optional[ParkingLot]: ...

    @abstractmethod
    def list_lots(self) -> list[ParkingLot]: ...

    @abstractmethod
    def save_slot(self, slot: ParkingSlot) -> None: ...

    @abstractmethod
    def get_slot(self, slot_id: str) -> Optional[ParkingSlot]: ...

    @abstractmethod
    def get_slot_by_lock(self, lock_id: str) -> Optional[ParkingSlot]: ...

    @abstractmethod
    def list_slots(self, lot_id: Optional[str] = None) -> list[ParkingSlot]: ...

    @abstractmethod
    def save_reservation(self, reservation: Reservation) -> None: ...

    @abstractmethod
    def get_reservation(self, reservation_id: str) -> Optional[Reservation]: ...

    @abstractmethod
    def list_reservations(self) -> list[Reservation]: ...

    @abstractmethod
    def append_sensor_reading(self, lock_id: str, sensor_type: str, value: float, timestamp: datetime) -> SensorReading: ...

    @abstractmethod
    def list_sensor_readings(self, lock_id: Optional[str] = None, since: Optional[datetime] = None) -> list[SensorReading]:
        """Readings newest first."""

    @abstractmethod
    def append_log(self, type: str, message: str, level: LogLevel, timestamp: datetime) -> SystemLogEntry: ...

    @abstractmethod
    def list_logs(self, limit: Optional[int] = None) -> list[SystemLogEntry]:
        """Log entries newest first."""

    def active_reservation_for_slot(self, slot_id: str) -> Optional[Reservation]:
        for reservation in self.list_reservations():
            if reservation.slot_id == slot_id and reservation.status == ReservationStatus.ACTIVE:
                return reservation
        return None

    def refresh_lot(self, lot_id: str) -> Optional[ParkingLot]:
        """Recompute a lot's slot counts from its slots' canonical status."""
        lot = self.get_lot(lot_id)
        if lot is None:
            return None
        slots = self.list_slots(lot_id)
        lot.total_slots = len(slots)
        lot.available_slots = sum(1 for s in slots if s.status == SlotStatus.FREE)
        self.save_lot(lot)
        return lot


class InMemoryStore(StateStore):
    """Process-local store with bounded sensor and log retention."""

    def __init__(self, sensor_retention: int = 1000, log_retention: int = 100):
        self._lots: dict[str, ParkingLot] = {}
        self._slots: dict[str, ParkingSlot] = {}
        self._slots_by_lock: dict[str, str] = {}
        self._reservations: dict[str, Reservation] = {}
        self._sensor_readings: deque[SensorReading] = deque(maxlen=sensor_retention)
        self._logs: deque[SystemLogEntry] = deque(maxlen=log_retention)
        self._sensor_ids = itertools.count(1)
        self._log_ids = itertools.count(1)

    def save_lot(self, lot: ParkingLot) -> None:
        self._lots[lot.id] = lot.model_copy()

    def get_lot(self, lot_id: str) -> Optional[ParkingLot]:
        lot = self._lots.get(lot_id)
        return lot.model_copy() if lot else None

    def list_lots(self) -> list[ParkingLot]:
        return [lot.model_copy() for lot in self._lots.values()]

    def save_slot(self, slot: ParkingSlot) -> None:
        self._slots[slot.id] = slot.model_copy()
        self._slots_by_lock[slot.lock_id] = slot.id

    def get_slot(self, slot_id: str) -> Optional[ParkingSlot]:
        slot = self._slots.get(slot_id)
        return slot.model_copy() if slot else None

    def get_slot_by_lock(self, lock_id: str) -> Optional[ParkingSlot]:
        slot_id = self._slots_by_lock.get(lock_id)
        return self.get_slot(slot_id) if slot_id else None

    def list_slots(self, lot_id: Optional[str] = None) -> list[ParkingSlot]:
        return [
            slot.model_copy()
            for slot in self._slots.values()
            if lot_id is None or slot.lot_id == lot_id
        ]

    def save_reservation(self, reservation: Reservation) -> None:
        self._reservations[reservation.id] = reservation.model_copy()

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        reservation = self._reservations.get(reservation_id)
        return reservation.model_copy() if reservation else None

    def list_reservations(self) -> list[Reservation]:
        return [r.model_copy() for r in self._reservations.values()]

    def append_sensor_reading(self, lock_id: str, sensor_type: str, value: float, timestamp: datetime) -> SensorReading:
        reading = SensorReading(
            id=next(self._sensor_ids),
            lock_id=lock_id,
            sensor_type=sensor_type,
            value=value,
            timestamp=timestamp,
        )
        # Oldest evicted past the retention cap
        self._sensor_readings.append(reading)
        return reading

    def list_sensor_readings(self, lock_id: Optional[str] = None, since: Optional[datetime] = None) -> list[SensorReading]:
        return [
            r.model_copy()
            for r in reversed(self._sensor_readings)
            if (lock_id is None or r.lock_id == lock_id) and (since is None or r.timestamp > since)
        ]

    def append_log(self, type: str, message: str, level: LogLevel, timestamp: datetime) -> SystemLogEntry:
        entry = SystemLogEntry(
            id=next(self._log_ids),
            type=type,
            message=message,
            level=level,
            timestamp=timestamp,
        )
        self._logs.append(entry)
        return entry

    def list_logs(self, limit: Optional[int] = None) -> list[SystemLogEntry]:
        entries = [e.model_copy() for e in reversed(self._logs)]
        return entries[:limit] if limit is not None else entries

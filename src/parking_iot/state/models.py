"""Data models for canonical lot, slot and reservation state."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from ..protocol.messages import ArmPosition, LockState

# Canonical slot status uses the same values a lock reports
SlotStatus = LockState


class ReservationStatus(str, Enum):
    """Lifecycle status of a reservation."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ParkingLot(BaseModel):
    """A parking lot; availability is derived from its slots."""

    id: str
    name: str
    address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    total_slots: int = 0
    available_slots: int = 0
    created_at: datetime


class ParkingSlot(BaseModel):
    """Canonical state of one slot and its lock."""

    id: str
    lot_id: str
    gateway_id: str
    lock_id: str
    status: SlotStatus = SlotStatus.FREE
    arm_position: ArmPosition = ArmPosition.DOWN
    battery_level: float = 100.0
    signal_strength: float = 100.0
    vehicle_detected: bool = False
    last_update: datetime


class Reservation(BaseModel):
    """A plate's claim on a slot for a time window."""

    id: str
    slot_id: str
    plate_number: str
    user_name: Optional[str] = None
    phone_number: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: ReservationStatus = ReservationStatus.ACTIVE
    created_at: datetime
    # Timestamp of the first lock report carrying this reservation
    confirmed_at: Optional[datetime] = None


class SensorReading(BaseModel):
    id: int
    lock_id: str
    sensor_type: str  # battery | signal
    value: float
    timestamp: datetime


class SystemLogEntry(BaseModel):
    id: int
    type: str
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: datetime


class GatewayPresence(BaseModel):
    """Liveness of a gateway as seen through its heartbeats."""

    gateway_id: str
    lock_ids: list[str] = []
    last_heartbeat: Optional[datetime] = None
    online: bool = False


class PendingCommand(BaseModel):
    """A dispatched command still waiting for its acknowledgment."""

    command_id: str
    lock_id: str
    gateway_id: str
    action: str
    sent_at: datetime


class SlotView(ParkingSlot):
    """Slot enriched with lot name and active reservation details."""

    lot_name: str
    reservation_id: Optional[str] = None
    plate_number: Optional[str] = None
    user_name: Optional[str] = None
    end_time: Optional[datetime] = None


class ReservationView(Reservation):
    """Reservation enriched with its slot's lock and lot."""

    lock_id: Optional[str] = None
    lot_name: str = "Unknown"
    slot_status: str = "unknown"


class DashboardStats(BaseModel):
    total: int
    available: int
    occupied: int
    reserved: int
    active_reservations: int


class ArrivalResult(BaseModel):
    """
    Outcome of an arrival request.

    message is provisional feedback for the caller; slot_status is still
    the canonical status, which only turns occupied once the lock reports
    the vehicle.
    """

    reservation_id: str
    command_id: Optional[str] = None
    message: str
    slot_status: SlotStatus


class SweepResult(BaseModel):
    expired: list[Reservation] = []
    unresolved_commands: list[PendingCommand] = []
    offline_gateways: list[str] = []

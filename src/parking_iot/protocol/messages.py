"""Command, acknowledgment, status and heartbeat envelopes."""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, Field

from ..errors import TransportError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UTCDatetime = Annotated[datetime, AfterValidator(as_utc)]


class CommandAction(str, Enum):
    """Actions a gateway can be asked to perform on a lock."""

    RESERVE = "reserve"
    RELEASE = "release"
    OPEN = "open"
    STATUS = "status"


class LockState(str, Enum):
    """Logical status of a lock / canonical status of a slot."""

    FREE = "free"
    RESERVED = "reserved"
    OCCUPIED = "occupied"


class ArmPosition(str, Enum):
    """Physical position of the mechanical arm."""

    UP = "up"
    DOWN = "down"


class Command(BaseModel):
    """Authority to gateway command envelope."""

    command_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    lock_id: str
    action: str
    data: dict[str, Any] = Field(default_factory=dict)


class Acknowledgment(BaseModel):
    """Gateway reply to exactly one command."""

    command_id: str
    gateway_id: str
    success: bool
    message: str
    timestamp: UTCDatetime = Field(default_factory=utcnow)


class MagneticReading(BaseModel):
    value: float
    threshold: float
    vehicle_detected: bool


class BatteryReading(BaseModel):
    level: float
    status: str
    estimated_days: int


class SignalReading(BaseModel):
    strength: float
    quality: str


class SensorSnapshot(BaseModel):
    magnetic: MagneticReading
    battery: BatteryReading
    signal: SignalReading


class StatusReport(BaseModel):
    """
    Self-contained snapshot of one lock.

    Reports are authoritative on arrival; the receiver derives the full
    slot state from them rather than treating them as a diff.
    """

    lock_id: str
    gateway_id: str
    status: LockState
    battery_level: float = Field(ge=0, le=100)
    signal_strength: float = Field(ge=0, le=100)
    arm_position: ArmPosition
    vehicle_detected: bool
    reservation: Optional[dict[str, Any]] = None
    timestamp: UTCDatetime
    sensors: Optional[SensorSnapshot] = None


class Heartbeat(BaseModel):
    """Gateway liveness message with its lock inventory."""

    gateway_id: str
    status: str = "online"
    locks_count: int
    locks: list[str]
    timestamp: UTCDatetime = Field(default_factory=utcnow)
    uptime: float = 0.0


@dataclass(frozen=True)
class GatewayTopics:
    """Deterministic topic namespace of a single gateway."""

    gateway_id: str

    @property
    def down_link(self) -> str:
        return f"/{self.gateway_id}/down_link"

    @property
    def up_link(self) -> str:
        return f"/{self.gateway_id}/up_link"

    @property
    def down_link_ack(self) -> str:
        return f"/{self.gateway_id}/down_link_ack"

    @property
    def heartbeat(self) -> str:
        return f"/{self.gateway_id}/heartbeat"


# Wildcard subscriptions used by the authority
UP_LINK_FILTER = "/+/up_link"
ACK_FILTER = "/+/down_link_ack"
HEARTBEAT_FILTER = "/+/heartbeat"


def parse_topic(topic: str) -> tuple[str, str]:
    """
    Split a gateway topic into (gateway_id, message_type).

    Raises:
        TransportError: If the topic is not in the gateway namespace
    """
    parts = topic.strip("/").split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise TransportError(f"Topic outside gateway namespace: {topic!r}")
    return parts[0], parts[1]


def encode(message: BaseModel) -> bytes:
    """Serialise a message model to a JSON payload."""
    return message.model_dump_json().encode("utf-8")


def decode(payload: bytes | str) -> dict[str, Any]:
    """
    Parse a JSON payload into a dict.

    Raises:
        TransportError: If the payload is not a JSON object
    """
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TransportError(f"Malformed payload: {e}") from e

    if not isinstance(data, dict):
        raise TransportError(f"Payload is not an object: {type(data).__name__}")
    return data

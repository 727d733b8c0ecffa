import asyncio
import json
import random
from datetime import datetime, timedelta, timezone

import pytest

from parking_iot.config import LotConfig, SlotConfig
from parking_iot.device.lock import ParkingLock
from parking_iot.errors import TransportError
from parking_iot.protocol.messages import StatusReport
from parking_iot.protocol.transport import Transport, topic_matches
from parking_iot.state.authority import ReservationAuthority
from parking_iot.state.store import InMemoryStore

T0 = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable time source."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.now += timedelta(seconds=seconds, minutes=minutes)
        return self.now


class RecordingTransport(Transport):
    """Records publishes and delivers inbound messages synchronously on demand."""

    def __init__(self):
        self.published: list[tuple[str, dict]] = []
        self.subscriptions: list[tuple[str, object]] = []
        self.fail_publish = False
        self._connected = True

    async def start(self) -> None:
        self._connected = True

    async def stop(self) -> None:
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def publish(self, topic: str, payload: bytes) -> None:
        if self.fail_publish:
            raise TransportError("broker unreachable")
        self.published.append((topic, json.loads(payload)))

    def subscribe(self, topic_filter: str, handler) -> None:
        self.subscriptions.append((topic_filter, handler))

    def deliver(self, topic: str, payload) -> None:
        if isinstance(payload, dict):
            payload = json.dumps(payload).encode()
        for topic_filter, handler in list(self.subscriptions):
            if topic_matches(topic_filter, topic):
                handler(topic, payload)

    def on(self, topic: str) -> list[dict]:
        return [payload for t, payload in self.published if t == topic]


def lot_config(lot_id: str = "lot_001", gateway_id: str = "gateway_001", count: int = 2, start: int = 1) -> LotConfig:
    return LotConfig(
        id=lot_id,
        name="Downtown Parking",
        address="123 Main St",
        slots=[
            SlotConfig(id=f"slot_{n:03d}", gateway_id=gateway_id, lock_id=f"lock_{gateway_id}_{n}")
            for n in range(start, start + count)
        ],
    )


def status_report(lock_id: str, status: str, timestamp: datetime, gateway_id: str = "gateway_001", **overrides) -> StatusReport:
    fields = {
        "lock_id": lock_id,
        "gateway_id": gateway_id,
        "status": status,
        "battery_level": 85.0,
        "signal_strength": 90.0,
        "arm_position": "up" if status != "free" else "down",
        "vehicle_detected": status == "occupied",
        "timestamp": timestamp,
    }
    fields.update(overrides)
    return StatusReport(**fields)


async def settle(seconds: float = 0.05) -> None:
    """Let scheduled callbacks and spawned tasks run."""
    await asyncio.sleep(seconds)


def make_lock(clock=None, **kwargs) -> ParkingLock:
    kwargs.setdefault("arm_motion_seconds", 0.01)
    kwargs.setdefault("arrival_delay", (0.01, 0.02))
    kwargs.setdefault("rng", random.Random(7))
    return ParkingLock("lock_gateway_001_1", "gateway_001", clock=clock or FakeClock(), **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def store():
    return InMemoryStore(sensor_retention=50, log_retention=50)


@pytest.fixture
def authority(store, transport, clock):
    auth = ReservationAuthority(
        store,
        transport,
        ack_timeout=30,
        heartbeat_timeout=90,
        default_duration_minutes=60,
        clock=clock,
    )
    auth.load_lots([lot_config()])
    asyncio.run(auth.start())
    return auth

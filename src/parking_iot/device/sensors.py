"""Simulated lock sensors: magnetic presence, battery and signal."""

import logging
import random
from datetime import datetime
from typing import TYPE_CHECKING

from ..protocol.messages import BatteryReading, MagneticReading, SignalReading

if TYPE_CHECKING:
    from .lock import ParkingLock

logger = logging.getLogger(__name__)

MAGNETIC_THRESHOLD = 500.0
MAGNETIC_MAX = 1000.0
LOW_BATTERY_LEVEL = 20.0
BATTERY_DRAIN_PER_DAY = 0.1  # Percent


class MagneticSensor:
    """
    Vehicle presence sensor.

    The reading drifts randomly each check; crossing the threshold in
    either direction triggers the lock's vehicle detected/left handlers.
    """

    def __init__(self, lock: "ParkingLock", rng: random.Random, threshold: float = MAGNETIC_THRESHOLD):
        self.lock = lock
        self.rng = rng
        self.threshold = threshold
        self.current_reading = float(rng.randint(50, 150))

    @property
    def vehicle_present(self) -> bool:
        return self.current_reading > self.threshold

    def check_vehicle_presence(self) -> None:
        self.current_reading += (self.rng.random() - 0.5) * 20
        self.current_reading = max(0.0, min(MAGNETIC_MAX, self.current_reading))

        if self.vehicle_present and not self.lock.vehicle_detected:
            self.lock.on_vehicle_detected()
        elif not self.vehicle_present and self.lock.vehicle_detected:
            self.lock.on_vehicle_left()

    def simulate_vehicle_arrival(self) -> None:
        self.current_reading = float(self.rng.randint(600, 900))
        self.check_vehicle_presence()

    def simulate_vehicle_departure(self) -> None:
        self.current_reading = float(self.rng.randint(100, 300))
        self.check_vehicle_presence()

    def reset(self) -> None:
        """Return to an empty-space reading without notifying the lock."""
        self.current_reading = float(self.rng.randint(50, 150))

    def get_reading(self) -> MagneticReading:
        return MagneticReading(
            value=self.current_reading,
            threshold=self.threshold,
            vehicle_detected=self.vehicle_present,
        )


class BatterySensor:
    """Battery gauge draining proportionally to elapsed time."""

    def __init__(self, lock: "ParkingLock", now: datetime):
        self.lock = lock
        self.last_update = now

    def update_battery_level(self, now: datetime) -> None:
        elapsed_days = max(0.0, (now - self.last_update).total_seconds()) / 86400
        self.lock.battery_level = max(0.0, self.lock.battery_level - elapsed_days * BATTERY_DRAIN_PER_DAY)
        self.last_update = now

        if self.lock.battery_level < LOW_BATTERY_LEVEL:
            logger.warning(f"[Lock {self.lock.lock_id}] Low battery warning: {self.lock.battery_level:.1f}%")

    def get_reading(self) -> BatteryReading:
        level = self.lock.battery_level
        return BatteryReading(
            level=level,
            status="good" if level > LOW_BATTERY_LEVEL else "low",
            estimated_days=int(level / BATTERY_DRAIN_PER_DAY),
        )


class SignalSensor:
    """Radio signal strength with bounded random drift."""

    def __init__(self, lock: "ParkingLock", rng: random.Random):
        self.lock = lock
        self.rng = rng

    def update_signal_strength(self) -> None:
        strength = self.lock.signal_strength + (self.rng.random() - 0.5) * 10
        self.lock.signal_strength = max(0.0, min(100.0, strength))

    def get_reading(self) -> SignalReading:
        strength = self.lock.signal_strength
        if strength > 70:
            quality = "excellent"
        elif strength > 50:
            quality = "good"
        elif strength > 30:
            quality = "fair"
        else:
            quality = "poor"
        return SignalReading(strength=strength, quality=quality)

"""Per-slot lock state machine with simulated hardware."""

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..errors import BusyError, InvalidCommandError, InvalidStateError
from ..protocol.messages import ArmPosition, CommandAction, LockState, SensorSnapshot, StatusReport, utcnow
from .actuators import MechanicalArm, Speaker
from .sensors import BatterySensor, MagneticSensor, SignalSensor

logger = logging.getLogger(__name__)

StatusListener = Callable[[StatusReport], None]


class ParkingLock:
    """
    Finite-state model of one parking lock.

    Transitions:
        free -> reserved           reserve()
        reserved -> occupied       vehicle detected (autonomous)
        reserved|occupied -> free  release(), vehicle left, local expiry

    The logical status changes as soon as a command is accepted; the arm
    position only changes when the simulated motion completes. Every
    change is reported through the single on_status_changed callback.
    """

    def __init__(
        self,
        lock_id: str,
        gateway_id: str,
        arm_motion_seconds: float = 2.0,
        arrival_delay: tuple[float, float] = (3.0, 5.0),
        arrival_probability: float = 0.8,
        departure_probability: float = 0.05,
        tamper_probability: float = 0.02,
        sensor_interval: float = 5.0,
        behaviour_interval: float = 10.0,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the lock.

        Args:
            lock_id: Unique lock identifier
            gateway_id: Gateway the lock is bound to
            arm_motion_seconds: Duration of one arm movement
            arrival_delay: Range of seconds before the vehicle check after opening
            arrival_probability: Chance a vehicle actually parks after opening
            departure_probability: Chance per behaviour tick an occupant leaves
            tamper_probability: Chance per behaviour tick of a tamper alarm
            sensor_interval: Seconds between sensor ticks
            behaviour_interval: Seconds between behaviour ticks
            rng: Random source for all simulated behaviour
            clock: Time source
        """
        self.lock_id = lock_id
        self.gateway_id = gateway_id
        self.arrival_delay = arrival_delay
        self.arrival_probability = arrival_probability
        self.departure_probability = departure_probability
        self.tamper_probability = tamper_probability
        self.sensor_interval = sensor_interval
        self.behaviour_interval = behaviour_interval
        self.rng = rng or random.Random()
        self.clock = clock

        self.status = LockState.FREE
        self.battery_level = float(self.rng.randint(70, 99))
        self.signal_strength = float(self.rng.randint(80, 99))
        self.arm_position = ArmPosition.DOWN
        self.vehicle_detected = False
        self.reservation: Optional[dict[str, Any]] = None
        self.last_update = clock()

        self.on_status_changed: Optional[StatusListener] = None

        self.magnetic = MagneticSensor(self, self.rng)
        self.battery = BatterySensor(self, self.last_update)
        self.signal = SignalSensor(self, self.rng)
        self.arm = MechanicalArm(self, arm_motion_seconds)
        self.speaker = Speaker(self)

        self._arrival_check: Optional[asyncio.TimerHandle] = None
        self._tasks: list[asyncio.Task] = []

    # Commands

    def process_command(self, action: str, data: Optional[dict[str, Any]] = None) -> str:
        """
        Apply a gateway command.

        Returns:
            Human-readable result message

        Raises:
            InvalidCommandError: Unknown action
            InvalidStateError: Action not allowed in the current state
            BusyError: Arm is mid-motion
        """
        if action == CommandAction.RESERVE.value:
            return self.reserve(data or {})
        if action == CommandAction.RELEASE.value:
            return self.release()
        if action == CommandAction.OPEN.value:
            return self.open_for_parking()
        if action == CommandAction.STATUS.value:
            return f"Lock is {self.status.value}"
        raise InvalidCommandError(f"Unknown command: {action}")

    def reserve(self, reservation_data: dict[str, Any]) -> str:
        if self.status != LockState.FREE:
            raise InvalidStateError(f"Lock is currently {self.status.value}")
        duration = reservation_data.get("duration")
        if duration is not None:
            try:
                valid = float(duration) > 0
            except (TypeError, ValueError):
                valid = False
            if not valid:
                raise InvalidCommandError(f"Invalid reservation duration: {duration!r}")

        self.status = LockState.RESERVED
        self.reservation = {**reservation_data, "accepted_at": self.clock().isoformat()}

        try:
            self.arm.raise_arm()
        except BusyError:
            self.status = LockState.FREE
            self.reservation = None
            raise

        self._changed()
        logger.info(f"[Lock {self.lock_id}] Reserved for {reservation_data.get('plate_number')}")
        return "Lock reserved successfully"

    def release(self) -> str:
        if self.status == LockState.FREE:
            raise InvalidStateError("Lock is already free")

        previous = (self.status, self.reservation, self.vehicle_detected)
        self.status = LockState.FREE
        self.reservation = None
        self.vehicle_detected = False

        try:
            self.arm.lower_arm()
        except BusyError:
            self.status, self.reservation, self.vehicle_detected = previous
            raise

        self._cancel_arrival_check()
        self.magnetic.reset()
        self._changed()
        logger.info(f"[Lock {self.lock_id}] Released and available")
        return "Lock released successfully"

    def open_for_parking(self) -> str:
        if self.status != LockState.RESERVED:
            raise InvalidStateError(f"Cannot open lock in {self.status.value} state")

        self.arm.lower_arm()
        self._changed()
        logger.info(f"[Lock {self.lock_id}] Opened for parking")

        self._cancel_arrival_check()
        delay = self.rng.uniform(*self.arrival_delay)
        self._arrival_check = asyncio.get_running_loop().call_later(delay, self._check_arrival)
        return "Lock opened for parking"

    # Autonomous transitions

    def on_vehicle_detected(self) -> None:
        if self.status == LockState.RESERVED and not self.vehicle_detected:
            self.vehicle_detected = True
            self.status = LockState.OCCUPIED
            self._changed()
            logger.info(f"[Lock {self.lock_id}] Vehicle detected and parked")

    def on_vehicle_left(self) -> None:
        if not self.vehicle_detected:
            return

        self.vehicle_detected = False
        self.status = LockState.FREE
        self.reservation = None
        try:
            self.arm.lower_arm()
        except BusyError:
            logger.warning(f"[Lock {self.lock_id}] Arm busy while vehicle left, position settles later")
        self._changed()
        logger.info(f"[Lock {self.lock_id}] Vehicle left, lock now free")

    def on_arm_settled(self, position: ArmPosition) -> None:
        """Called by the arm when a motion completes."""
        self.arm_position = position
        logger.info(f"[Lock {self.lock_id}] Mechanical arm {position.value}")
        self._changed()

    def _check_arrival(self) -> None:
        self._arrival_check = None
        if self.status == LockState.RESERVED and self.rng.random() < self.arrival_probability:
            self.magnetic.simulate_vehicle_arrival()

    def _cancel_arrival_check(self) -> None:
        if self._arrival_check is not None:
            self._arrival_check.cancel()
            self._arrival_check = None

    # Simulation ticks

    def tick_sensors(self) -> None:
        """Fast tick: presence, battery and signal."""
        self.magnetic.check_vehicle_presence()
        self.battery.update_battery_level(self.clock())
        self.signal.update_signal_strength()

    def tick_behaviour(self) -> None:
        """Slow tick: departures, local reservation expiry, tamper alarms."""
        if self.status == LockState.OCCUPIED and self.rng.random() < self.departure_probability:
            self.magnetic.simulate_vehicle_departure()

        if self.status == LockState.RESERVED and self.reservation_expired():
            logger.info(f"[Lock {self.lock_id}] Reservation expired, releasing lock")
            try:
                self.release()
            except BusyError:
                logger.warning(f"[Lock {self.lock_id}] Arm busy, expiry release retried next tick")

        if self.rng.random() < self.tamper_probability:
            self.speaker.play_tamper_alarm()

    def reservation_expired(self) -> bool:
        if not self.reservation:
            return False
        accepted_at = datetime.fromisoformat(self.reservation["accepted_at"])
        duration = float(self.reservation.get("duration") or 60)
        return self.clock() > accepted_at + timedelta(minutes=duration)

    async def _run_every(self, interval: float, tick: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                tick()
            except Exception as e:
                logger.error(f"[Lock {self.lock_id}] Simulation tick error: {e}")

    def start(self) -> None:
        """Start background sensor and behaviour ticks."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._run_every(self.sensor_interval, self.tick_sensors)),
            asyncio.create_task(self._run_every(self.behaviour_interval, self.tick_behaviour)),
        ]

    async def stop(self) -> None:
        """Stop ticks and cancel pending timers."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self._cancel_arrival_check()
        self.arm.cancel()
        self.speaker.cancel()

    # Reporting

    def get_status(self) -> StatusReport:
        return StatusReport(
            lock_id=self.lock_id,
            gateway_id=self.gateway_id,
            status=self.status,
            battery_level=self.battery_level,
            signal_strength=self.signal_strength,
            arm_position=self.arm_position,
            vehicle_detected=self.vehicle_detected,
            reservation=dict(self.reservation) if self.reservation else None,
            timestamp=self.last_update,
            sensors=SensorSnapshot(
                magnetic=self.magnetic.get_reading(),
                battery=self.battery.get_reading(),
                signal=self.signal.get_reading(),
            ),
        )

    def _changed(self) -> None:
        self.last_update = self.clock()
        if self.on_status_changed is None:
            return
        try:
            self.on_status_changed(self.get_status())
        except Exception as e:
            logger.exception(f"[Lock {self.lock_id}] Status listener failed: {e}")

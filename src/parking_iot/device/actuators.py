"""Simulated lock actuators: mechanical arm and speaker."""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from ..errors import BusyError
from ..protocol.messages import ArmPosition

if TYPE_CHECKING:
    from .lock import ParkingLock

logger = logging.getLogger(__name__)


class MechanicalArm:
    """
    Arm that blocks the parking space when raised.

    Movement is not instantaneous: a move is accepted immediately but the
    lock's arm_position only changes once the scheduled motion completes.
    Any move requested while the arm is in motion fails with BusyError.
    """

    def __init__(self, lock: "ParkingLock", motion_seconds: float = 2.0):
        self.lock = lock
        self.motion_seconds = motion_seconds
        self.is_moving = False
        self._motion: Optional[asyncio.TimerHandle] = None

    def raise_arm(self) -> str:
        return self._move(ArmPosition.UP)

    def lower_arm(self) -> str:
        return self._move(ArmPosition.DOWN)

    def _move(self, target: ArmPosition) -> str:
        done, moving = ("raised", "raising") if target == ArmPosition.UP else ("lowered", "lowering")
        if self.is_moving:
            raise BusyError("Arm is currently moving")

        if self.lock.arm_position == target:
            return f"Arm is already {done}"

        logger.info(f"[Lock {self.lock.lock_id}] {moving.capitalize()} mechanical arm...")
        self.is_moving = True
        self._motion = asyncio.get_running_loop().call_later(
            self.motion_seconds, self._settle, target
        )
        return f"Arm {moving} in progress"

    def _settle(self, target: ArmPosition) -> None:
        self._motion = None
        self.is_moving = False
        self.lock.on_arm_settled(target)

    def cancel(self) -> None:
        """Abort any scheduled motion completion (used on shutdown)."""
        if self._motion is not None:
            self._motion.cancel()
            self._motion = None
        self.is_moving = False


class Speaker:
    """Speaker used for tamper alarms and confirmation beeps."""

    def __init__(self, lock: "ParkingLock", alarm_seconds: float = 5.0):
        self.lock = lock
        self.alarm_seconds = alarm_seconds
        self.is_playing = False
        self._stop_handle: Optional[asyncio.TimerHandle] = None

    def play_tamper_alarm(self) -> bool:
        """Start the alarm; returns False if it is already sounding."""
        if self.is_playing:
            return False

        logger.warning(f"[Lock {self.lock.lock_id}] TAMPER ALARM: Unauthorized access detected!")
        self.is_playing = True
        self._stop_handle = asyncio.get_running_loop().call_later(self.alarm_seconds, self._stop)
        return True

    def play_confirmation_beep(self) -> None:
        logger.debug(f"[Lock {self.lock.lock_id}] Beep - Command confirmed")

    def _stop(self) -> None:
        self._stop_handle = None
        self.is_playing = False
        logger.info(f"[Lock {self.lock.lock_id}] Alarm stopped")

    def cancel(self) -> None:
        if self._stop_handle is not None:
            self._stop_handle.cancel()
            self._stop_handle = None
        self.is_playing = False

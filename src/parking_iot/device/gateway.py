"""Gateway binding a fixed set of locks to the transport topic namespace."""

import asyncio
import logging
import time
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from ..errors import NotFoundError, ParkingError, TransportError
from ..metrics import record_dropped_message
from ..protocol.messages import (
    Acknowledgment,
    Command,
    GatewayTopics,
    Heartbeat,
    StatusReport,
    decode,
    encode,
)
from ..protocol.transport import Transport
from .lock import ParkingLock

logger = logging.getLogger(__name__)


class Gateway:
    """
    Routes commands from the authority to locks and publishes their state.

    Every command carrying a command_id gets exactly one acknowledgment.
    A successful state-changing command results in exactly one status
    publish; notifications the lock raises while the command runs are
    folded into it. Autonomous lock changes are published as they occur.
    """

    def __init__(
        self,
        gateway_id: str,
        transport: Transport,
        locks: list[ParkingLock],
        heartbeat_interval: float = 30.0,
    ):
        self.gateway_id = gateway_id
        self.transport = transport
        self.topics = GatewayTopics(gateway_id)
        self.heartbeat_interval = heartbeat_interval
        self.locks: dict[str, ParkingLock] = {}
        self._in_command: set[str] = set()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._started_at = time.monotonic()

        for lock in locks:
            self.add_lock(lock)

    def add_lock(self, lock: ParkingLock) -> None:
        lock.on_status_changed = self._on_lock_changed
        self.locks[lock.lock_id] = lock

    async def start(self, simulate: bool = True) -> None:
        """
        Subscribe to the command topic and start heartbeats.

        Args:
            simulate: Also start the locks' background simulation ticks
        """
        self._started_at = time.monotonic()
        self.transport.subscribe(self.topics.down_link, self.handle_message)
        logger.info(f"[Gateway {self.gateway_id}] Subscribed to {self.topics.down_link}")

        if simulate:
            for lock in self.locks.values():
                lock.start()

        self.send_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"[Gateway {self.gateway_id}] Started with {len(self.locks)} locks")

    async def stop(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for lock in self.locks.values():
            await lock.stop()

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Transport callback for the down_link topic."""
        try:
            data = decode(payload)
        except TransportError as e:
            logger.error(f"[Gateway {self.gateway_id}] Error parsing message on {topic}: {e}")
            record_dropped_message("malformed_command")
            return

        command_id = data.get("command_id")
        if not isinstance(command_id, str) or not command_id:
            logger.error(f"[Gateway {self.gateway_id}] Command without command_id dropped: {data}")
            record_dropped_message("malformed_command")
            return

        try:
            command = Command.model_validate(data)
        except PydanticValidationError as e:
            self.send_acknowledgment(command_id, False, f"Invalid command: {e.error_count()} error(s)")
            return

        self.process_command(command)

    def process_command(self, command: Command) -> None:
        logger.info(f"[Gateway {self.gateway_id}] Command {command.action} for {command.lock_id}")

        lock = self.locks.get(command.lock_id)
        if lock is None:
            self.send_acknowledgment(command.command_id, False, str(NotFoundError("Lock not found")))
            return

        self._in_command.add(lock.lock_id)
        try:
            message = lock.process_command(command.action, command.data)
        except ParkingError as e:
            self.send_acknowledgment(command.command_id, False, str(e))
            return
        finally:
            self._in_command.discard(lock.lock_id)

        lock.speaker.play_confirmation_beep()
        self.send_acknowledgment(command.command_id, True, message)
        # A status query is answered with the snapshot as well
        self.publish_lock_status(lock.lock_id)

    def send_acknowledgment(self, command_id: str, success: bool, message: str) -> None:
        ack = Acknowledgment(
            command_id=command_id,
            gateway_id=self.gateway_id,
            success=success,
            message=message,
        )
        self._publish(self.topics.down_link_ack, encode(ack))
        logger.debug(f"[Gateway {self.gateway_id}] Sent acknowledgment {command_id}: {success} {message}")

    def publish_lock_status(self, lock_id: str) -> None:
        lock = self.locks.get(lock_id)
        if lock is None:
            return
        self._publish_report(lock.get_status())

    def publish_lock_statuses(self) -> None:
        for lock_id in self.locks:
            self.publish_lock_status(lock_id)

    def heartbeat(self) -> Heartbeat:
        return Heartbeat(
            gateway_id=self.gateway_id,
            status="online",
            locks_count=len(self.locks),
            locks=list(self.locks),
            uptime=time.monotonic() - self._started_at,
        )

    def send_heartbeat(self) -> None:
        """Publish a heartbeat followed by every lock's status."""
        self._publish(self.topics.heartbeat, encode(self.heartbeat()))
        logger.debug(f"[Gateway {self.gateway_id}] Heartbeat sent")
        # Late subscribers rely on the periodic re-publish
        self.publish_lock_statuses()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.send_heartbeat()

    def _on_lock_changed(self, report: StatusReport) -> None:
        if report.lock_id in self._in_command:
            return
        self._publish_report(report)

    def _publish_report(self, report: StatusReport) -> None:
        self._publish(self.topics.up_link, encode(report))

    def _publish(self, topic: str, payload: bytes) -> None:
        try:
            self.transport.publish(topic, payload)
        except TransportError as e:
            logger.error(f"[Gateway {self.gateway_id}] Publish to {topic} failed: {e}")
            record_dropped_message("publish_failed")

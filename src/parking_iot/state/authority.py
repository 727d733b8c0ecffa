"""Reservation authority: single writer of canonical slot, lot and reservation state."""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from ..config import LotConfig
from ..errors import NotFoundError, SlotUnavailableError, TransportError, ValidationError
from ..metrics import (
    record_acknowledgment,
    record_command_sent,
    record_dropped_message,
    record_reservation,
    record_slot_change,
    record_unresolved_command,
    update_slot_counts,
    update_slot_status,
)
from ..protocol.messages import (
    ACK_FILTER,
    HEARTBEAT_FILTER,
    UP_LINK_FILTER,
    Acknowledgment,
    ArmPosition,
    Command,
    CommandAction,
    GatewayTopics,
    Heartbeat,
    StatusReport,
    decode,
    encode,
    parse_topic,
    utcnow,
)
from ..protocol.transport import Transport
from .models import (
    ArrivalResult,
    DashboardStats,
    GatewayPresence,
    LogLevel,
    ParkingLot,
    ParkingSlot,
    PendingCommand,
    Reservation,
    ReservationStatus,
    ReservationView,
    SensorReading,
    SlotStatus,
    SlotView,
    SystemLogEntry,
)
from .store import StateStore

logger = logging.getLogger(__name__)

EventListener = Callable[[str, dict[str, Any]], None]

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class ReservationAuthority:
    """
    Owns canonical parking state and reconciles it with lock reports.

    Reservations are committed optimistically: the slot turns reserved as
    soon as the reservation is accepted and the reserve command is sent,
    without waiting for an acknowledgment. Status reports from locks are
    authoritative and overwrite the slot's mutable fields, except that a
    report older than the slot's last_update is discarded.

    All mutations of one slot are serialised by a per-slot asyncio.Lock,
    shared by the API operations, report handling and the expiration
    sweeper.
    """

    def __init__(
        self,
        store: StateStore,
        transport: Transport,
        ack_timeout: float = 30.0,
        heartbeat_timeout: float = 90.0,
        default_duration_minutes: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the authority.

        Args:
            store: Canonical state storage
            transport: Transport used for commands and inbound device messages
            ack_timeout: Seconds before a pending command counts as unresolved
            heartbeat_timeout: Seconds of heartbeat silence before a gateway is offline
            default_duration_minutes: Reservation length when none is given
            clock: Time source
        """
        self.store = store
        self.transport = transport
        self.ack_timeout = ack_timeout
        self.heartbeat_timeout = heartbeat_timeout
        self.default_duration_minutes = default_duration_minutes
        self.clock = clock

        self._slot_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending: dict[str, PendingCommand] = {}
        self._gateways: dict[str, GatewayPresence] = {}
        self._listeners: list[EventListener] = []
        self._tasks: set[asyncio.Task] = set()

    # Setup

    def load_lots(self, lots: list[LotConfig]) -> None:
        """Seed lots and slots from configuration."""
        now = self.clock()
        for lot_cfg in lots:
            self.store.save_lot(
                ParkingLot(
                    id=lot_cfg.id,
                    name=lot_cfg.name,
                    address=lot_cfg.address,
                    latitude=lot_cfg.latitude,
                    longitude=lot_cfg.longitude,
                    created_at=now,
                )
            )
            for slot_cfg in lot_cfg.slots:
                self.store.save_slot(
                    ParkingSlot(
                        id=slot_cfg.id,
                        lot_id=lot_cfg.id,
                        gateway_id=slot_cfg.gateway_id,
                        lock_id=slot_cfg.lock_id,
                        last_update=now,
                    )
                )
                self._gateways.setdefault(slot_cfg.gateway_id, GatewayPresence(gateway_id=slot_cfg.gateway_id))
            self.store.refresh_lot(lot_cfg.id)

        self._update_counts()
        logger.info(f"Loaded {len(lots)} lots with {len(self.store.list_slots())} slots")

    async def start(self) -> None:
        """Subscribe to every gateway's up_link, ack and heartbeat topics."""
        for topic_filter in (UP_LINK_FILTER, ACK_FILTER, HEARTBEAT_FILTER):
            self.transport.subscribe(topic_filter, self.handle_message)
        self.log_event("MQTT Setup", "Subscribed to all required topics")

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def add_listener(self, listener: EventListener) -> None:
        """Register a callback for status_update, command_ack, system_log and heartbeat events."""
        self._listeners.append(listener)

    # Reservation lifecycle

    async def create_reservation(
        self,
        slot_id: str,
        plate_number: str,
        user_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> Reservation:
        """
        Reserve a free slot and send the reserve command to its gateway.

        Raises:
            ValidationError: Blank plate number or non-positive duration
            NotFoundError: Unknown slot
            SlotUnavailableError: Slot is not free
        """
        plate_number = (plate_number or "").strip()
        if not plate_number:
            raise ValidationError("Plate number is required")

        duration = duration_minutes if duration_minutes is not None else self.default_duration_minutes
        if duration <= 0:
            raise ValidationError("Duration must be positive")

        if self.store.get_slot(slot_id) is None:
            raise NotFoundError(f"Slot {slot_id} not found")

        async with self._slot_locks[slot_id]:
            slot = self.store.get_slot(slot_id)
            if slot.status != SlotStatus.FREE or self.store.active_reservation_for_slot(slot_id):
                record_reservation("rejected")
                self.log_event("Reservation Rejected", f"{plate_number}: {slot.lock_id} is {slot.status.value}", LogLevel.WARN)
                raise SlotUnavailableError(f"Slot {slot_id} not available")

            now = self.clock()
            reservation = Reservation(
                id=str(uuid.uuid4()),
                slot_id=slot_id,
                plate_number=plate_number,
                user_name=user_name,
                phone_number=phone_number,
                start_time=now,
                end_time=now + timedelta(minutes=duration),
                created_at=now,
            )
            self.store.save_reservation(reservation)

            old_status = slot.status
            slot.status = SlotStatus.RESERVED
            slot.last_update = now
            self._commit_slot(slot, old_status)

            record_reservation("created")
            self.log_event(
                "Reservation Created",
                f"{plate_number} reserved {slot.lock_id} for {duration} minutes",
            )
            self._dispatch(
                slot,
                CommandAction.RESERVE,
                {
                    "reservation_id": reservation.id,
                    "plate_number": plate_number,
                    "user_name": user_name or "Anonymous",
                    "duration": duration,
                    "timestamp": now.isoformat(),
                },
            )

        return reservation

    async def arrive(self, reservation_id: str) -> ArrivalResult:
        """
        Ask the lock to open for the reserved vehicle.

        Canonical status is left untouched; the slot only becomes occupied
        once the lock reports the vehicle.

        Raises:
            NotFoundError: No active reservation with this id
        """
        reservation, slot = self._active_reservation(reservation_id)

        async with self._slot_locks[slot.id]:
            reservation, slot = self._active_reservation(reservation_id)
            command_id = self._dispatch(slot, CommandAction.OPEN, {"reservation_id": reservation.id})
            self.log_event(
                "Vehicle Arriving",
                f"{reservation.plate_number} arriving at {slot.lock_id}, lock opening",
            )

        return ArrivalResult(
            reservation_id=reservation.id,
            command_id=command_id,
            message="Lock opened! Park your vehicle now.",
            slot_status=slot.status,
        )

    async def cancel(self, reservation_id: str) -> Reservation:
        """
        Cancel an active reservation and free its slot.

        Raises:
            NotFoundError: No active reservation with this id
        """
        reservation, slot = self._active_reservation(reservation_id)

        async with self._slot_locks[slot.id]:
            reservation, slot = self._active_reservation(reservation_id)
            reservation.status = ReservationStatus.CANCELLED
            self.store.save_reservation(reservation)
            self._force_free(slot)

            record_reservation("cancelled")
            self.log_event(
                "Reservation Cancelled",
                f"{reservation.plate_number} cancelled reservation for {slot.lock_id}",
            )
            self._dispatch(slot, CommandAction.RELEASE, {"reservation_id": reservation.id})

        return reservation

    async def expire_due_reservations(self) -> list[Reservation]:
        """
        Expire every active reservation whose end time has passed.

        The local transition does not depend on the release command being
        delivered; a lock that missed it is reconciled by a later report.
        """
        expired = []
        now = self.clock()
        due = [
            r for r in self.store.list_reservations()
            if r.status == ReservationStatus.ACTIVE and r.end_time <= now
        ]

        for candidate in due:
            async with self._slot_locks[candidate.slot_id]:
                reservation = self.store.get_reservation(candidate.id)
                if reservation is None or reservation.status != ReservationStatus.ACTIVE:
                    continue

                reservation.status = ReservationStatus.EXPIRED
                self.store.save_reservation(reservation)
                record_reservation("expired")

                slot = self.store.get_slot(reservation.slot_id)
                if slot is None:
                    self.log_event("Reservation Expired", f"{reservation.plate_number} reservation expired")
                    expired.append(reservation)
                    continue

                self._force_free(slot)
                self.log_event(
                    "Reservation Expired",
                    f"{reservation.plate_number} reservation for {slot.lock_id} has expired",
                )
                self._dispatch(slot, CommandAction.RELEASE, {"reservation_id": reservation.id})
                expired.append(reservation)

        return expired

    def resolve_unresolved_commands(self) -> list[PendingCommand]:
        """Forget commands whose acknowledgment is overdue. They are not resent."""
        cutoff = self.clock() - timedelta(seconds=self.ack_timeout)
        overdue = [p for p in self._pending.values() if p.sent_at < cutoff]

        for pending in overdue:
            del self._pending[pending.command_id]
            record_unresolved_command(pending.action)
            self.log_event(
                "Command Timeout",
                f"No acknowledgment for {pending.action} on {pending.lock_id} ({pending.command_id})",
                LogLevel.WARN,
            )
        return overdue

    def check_gateways(self) -> list[str]:
        """Mark gateways offline whose heartbeat is overdue."""
        cutoff = self.clock() - timedelta(seconds=self.heartbeat_timeout)
        offline = []
        for presence in self._gateways.values():
            if presence.online and presence.last_heartbeat is not None and presence.last_heartbeat < cutoff:
                presence.online = False
                offline.append(presence.gateway_id)
                self.log_event("Gateway Offline", f"{presence.gateway_id} missed heartbeats", LogLevel.WARN)
        return offline

    # Inbound messages

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Transport callback for up_link, ack and heartbeat topics."""
        try:
            gateway_id, message_type = parse_topic(topic)
            data = decode(payload)
        except TransportError as e:
            record_dropped_message("malformed")
            self.log_event("Message Dropped", f"{topic}: {e}", LogLevel.WARN)
            return

        try:
            if message_type == "up_link":
                report = StatusReport.model_validate(data)
                self._spawn(self.apply_status_report(report))
            elif message_type == "down_link_ack":
                self.handle_acknowledgment(Acknowledgment.model_validate(data))
            elif message_type == "heartbeat":
                self.handle_heartbeat(Heartbeat.model_validate(data))
            else:
                record_dropped_message("unknown_topic")
                logger.debug(f"Ignoring message on {topic}")
        except PydanticValidationError as e:
            record_dropped_message("invalid")
            self.log_event(
                "Message Dropped",
                f"Invalid {message_type} from {gateway_id}: {e.error_count()} error(s)",
                LogLevel.WARN,
            )

    async def apply_status_report(self, report: StatusReport) -> bool:
        """
        Overwrite a slot's canonical fields from a lock status report.

        Returns:
            True if the report was applied, False if it was dropped
        """
        slot = self.store.get_slot_by_lock(report.lock_id)
        if slot is None:
            record_dropped_message("unknown_lock")
            self.log_event("Unknown Lock", f"Status report for unknown lock {report.lock_id}", LogLevel.WARN)
            return False

        async with self._slot_locks[slot.id]:
            slot = self.store.get_slot(slot.id)
            if report.timestamp < slot.last_update:
                record_dropped_message("stale_report")
                logger.debug(
                    f"Stale report for {report.lock_id} ({report.timestamp} < {slot.last_update}), discarded"
                )
                return False

            old_status = slot.status
            active = self.store.active_reservation_for_slot(slot.id)
            if active is not None and active.confirmed_at is None and self._carries_reservation(report, active):
                active.confirmed_at = report.timestamp
                self.store.save_reservation(active)

            # A free report from before the lock accepted the active reservation
            # does not release it; the reserve command is still on its way
            held = report.status == SlotStatus.FREE and active is not None and active.confirmed_at is None
            if held:
                logger.debug(f"{report.lock_id} reports free before confirming reservation {active.id}, status kept")
            else:
                slot.status = report.status
            slot.battery_level = report.battery_level
            slot.signal_strength = report.signal_strength
            slot.arm_position = report.arm_position
            slot.vehicle_detected = report.vehicle_detected
            slot.last_update = report.timestamp
            self._commit_slot(slot, old_status)

            received_at = self.clock()
            self.store.append_sensor_reading(report.lock_id, "battery", report.battery_level, received_at)
            self.store.append_sensor_reading(report.lock_id, "signal", report.signal_strength, received_at)

            if old_status != slot.status:
                self.log_event("Status Change", f"{report.lock_id}: {old_status.value} → {slot.status.value}")

            if not held:
                self._reconcile_reservation(slot, old_status, active)

        return True

    def handle_acknowledgment(self, ack: Acknowledgment) -> None:
        pending = self._pending.pop(ack.command_id, None)
        if pending is None:
            record_acknowledgment("unmatched")
            self.log_event(
                "Unmatched ACK",
                f"{ack.gateway_id}: acknowledgment for unknown command {ack.command_id} discarded",
                LogLevel.WARN,
            )
            return

        latency = (self.clock() - pending.sent_at).total_seconds()
        record_acknowledgment("success" if ack.success else "failure", max(latency, 0.0))
        self.log_event(
            "Command ACK",
            f"{ack.gateway_id}: {'SUCCESS' if ack.success else 'FAILED'} - {ack.message}",
            LogLevel.INFO if ack.success else LogLevel.ERROR,
        )
        self._emit(
            "command_ack",
            {
                **ack.model_dump(mode="json"),
                "action": pending.action,
                "lock_id": pending.lock_id,
            },
        )

    def handle_heartbeat(self, heartbeat: Heartbeat) -> None:
        presence = self._gateways.setdefault(
            heartbeat.gateway_id, GatewayPresence(gateway_id=heartbeat.gateway_id)
        )
        was_online = presence.online
        presence.lock_ids = list(heartbeat.locks)
        presence.last_heartbeat = self.clock()
        presence.online = True

        if not was_online:
            self.log_event("Gateway Online", f"{heartbeat.gateway_id} online ({heartbeat.locks_count} locks)")
        else:
            self.log_event("Gateway Heartbeat", f"{heartbeat.gateway_id} online ({heartbeat.locks_count} locks)")
        self._emit("heartbeat", heartbeat.model_dump(mode="json"))

    # Read accessors

    def list_lots(self) -> list[ParkingLot]:
        return [self.store.refresh_lot(lot.id) for lot in self.store.list_lots()]

    def get_slot(self, slot_id: str) -> SlotView:
        slot = self.store.get_slot(slot_id)
        if slot is None:
            raise NotFoundError(f"Slot {slot_id} not found")
        return self._slot_view(slot)

    def list_slots(self, lot_id: Optional[str] = None) -> list[SlotView]:
        return [self._slot_view(slot) for slot in self.store.list_slots(lot_id)]

    def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.store.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    def list_reservations(self, status: Optional[str] = "active") -> list[ReservationView]:
        """List reservations filtered by status; None or 'all' lists every reservation."""
        views = []
        for reservation in self.store.list_reservations():
            if status not in (None, "all") and reservation.status.value != status:
                continue
            slot = self.store.get_slot(reservation.slot_id)
            lot = self.store.get_lot(slot.lot_id) if slot else None
            views.append(
                ReservationView(
                    **reservation.model_dump(),
                    lock_id=slot.lock_id if slot else None,
                    lot_name=lot.name if lot else "Unknown",
                    slot_status=slot.status.value if slot else "unknown",
                )
            )
        return views

    def sensor_data(self, lock_id: Optional[str] = None, hours: float = 24) -> list[SensorReading]:
        since = self.clock() - timedelta(hours=hours)
        return self.store.list_sensor_readings(lock_id=lock_id, since=since)

    def system_logs(self, limit: int = 50) -> list[SystemLogEntry]:
        return self.store.list_logs(limit)

    def gateways(self) -> list[GatewayPresence]:
        return [p.model_copy() for p in self._gateways.values()]

    def pending_commands(self) -> list[PendingCommand]:
        return [p.model_copy() for p in self._pending.values()]

    def dashboard_stats(self) -> DashboardStats:
        slots = self.store.list_slots()
        return DashboardStats(
            total=len(slots),
            available=sum(1 for s in slots if s.status == SlotStatus.FREE),
            occupied=sum(1 for s in slots if s.status == SlotStatus.OCCUPIED),
            reserved=sum(1 for s in slots if s.status == SlotStatus.RESERVED),
            active_reservations=sum(
                1 for r in self.store.list_reservations() if r.status == ReservationStatus.ACTIVE
            ),
        )

    # System log

    def log_event(self, type: str, message: str, level: LogLevel = LogLevel.INFO) -> SystemLogEntry:
        """Append a system log entry, mirror it to the logger and emit it."""
        entry = self.store.append_log(type, message, level, self.clock())
        logger.log(_LOG_LEVELS[level], f"{type}: {message}")
        self._emit("system_log", entry.model_dump(mode="json"))
        return entry

    # Internals

    def _active_reservation(self, reservation_id: str) -> tuple[Reservation, ParkingSlot]:
        reservation = self.store.get_reservation(reservation_id)
        if reservation is None or reservation.status != ReservationStatus.ACTIVE:
            raise NotFoundError(f"Reservation {reservation_id} not found")

        slot = self.store.get_slot(reservation.slot_id)
        if slot is None:
            raise NotFoundError(f"Slot {reservation.slot_id} not found")
        return reservation, slot

    def _force_free(self, slot: ParkingSlot) -> None:
        old_status = slot.status
        slot.status = SlotStatus.FREE
        slot.vehicle_detected = False
        slot.arm_position = ArmPosition.DOWN
        slot.last_update = self.clock()
        self._commit_slot(slot, old_status)

    def _commit_slot(self, slot: ParkingSlot, old_status: SlotStatus) -> None:
        """Persist a slot, recompute its lot and publish the change."""
        self.store.save_slot(slot)
        self.store.refresh_lot(slot.lot_id)

        update_slot_status(slot.id, slot.lock_id, slot.status.value)
        if old_status != slot.status:
            record_slot_change(slot.id, old_status.value, slot.status.value, self.clock().hour)
        self._update_counts()

        self._emit("status_update", self._slot_view(slot).model_dump(mode="json"))

    @staticmethod
    def _carries_reservation(report: StatusReport, reservation: Reservation) -> bool:
        return bool(report.reservation) and report.reservation.get("reservation_id") == reservation.id

    def _reconcile_reservation(
        self, slot: ParkingSlot, old_status: SlotStatus, active: Optional[Reservation]
    ) -> None:
        if slot.status == SlotStatus.FREE and active is not None:
            # The lock released on its own: the vehicle left, or its local timer ran out
            if old_status == SlotStatus.OCCUPIED:
                active.status = ReservationStatus.COMPLETED
                title = "Reservation Completed"
            else:
                active.status = ReservationStatus.EXPIRED
                title = "Reservation Released by Lock"
            self.store.save_reservation(active)
            record_reservation(active.status.value)
            self.log_event(title, f"{active.plate_number} reservation for {slot.lock_id} closed by lock report")

        elif slot.status != SlotStatus.FREE and active is None:
            self.log_event(
                "Unexpected Lock State",
                f"{slot.lock_id} reports {slot.status.value} without an active reservation",
                LogLevel.WARN,
            )

    def _dispatch(self, slot: ParkingSlot, action: CommandAction, data: dict[str, Any]) -> Optional[str]:
        """Send a command once. Returns its id, or None if it could not be sent."""
        command = Command(lock_id=slot.lock_id, action=action.value, data=data)
        # Registered before publishing; an in-process ack can arrive immediately
        self._pending[command.command_id] = PendingCommand(
            command_id=command.command_id,
            lock_id=slot.lock_id,
            gateway_id=slot.gateway_id,
            action=action.value,
            sent_at=self.clock(),
        )

        try:
            self.transport.publish(GatewayTopics(slot.gateway_id).down_link, encode(command))
        except TransportError as e:
            del self._pending[command.command_id]
            self.log_event(
                "Command Failed",
                f"Could not send {action.value} to {slot.lock_id}: {e}",
                LogLevel.ERROR,
            )
            return None

        record_command_sent(action.value)
        logger.info(f"Sent {action.value} command {command.command_id} for {slot.lock_id}")
        return command.command_id

    def _slot_view(self, slot: ParkingSlot) -> SlotView:
        lot = self.store.get_lot(slot.lot_id)
        reservation = self.store.active_reservation_for_slot(slot.id)
        return SlotView(
            **slot.model_dump(),
            lot_name=lot.name if lot else "Unknown",
            reservation_id=reservation.id if reservation else None,
            plate_number=reservation.plate_number if reservation else None,
            user_name=reservation.user_name if reservation else None,
            end_time=reservation.end_time if reservation else None,
        )

    def _update_counts(self) -> None:
        stats = self.dashboard_stats()
        update_slot_counts(stats.total, stats.available, stats.occupied, stats.reserved)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Status report handling failed: {task.exception()}")

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as e:
                logger.exception(f"Listener for {event} failed: {e}")

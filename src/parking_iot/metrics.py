"""Prometheus metrics for the parking lock service."""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, generate_latest

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

# Current slot status gauge (0=free, 1=reserved, 2=occupied)
SLOT_STATUS = Gauge(
    "parking_slot_status",
    "Canonical status of a parking slot (0=free, 1=reserved, 2=occupied)",
    ["slot_id", "lock_id"],
    registry=REGISTRY,
)

# Slot state changes counter with time of day label
SLOT_STATE_CHANGES = Counter(
    "parking_slot_state_changes_total",
    "Total number of canonical slot state changes",
    ["slot_id", "from_status", "to_status", "hour_of_day"],
    registry=REGISTRY,
)

# Total slots gauges
TOTAL_SLOTS = Gauge(
    "parking_slots_total",
    "Total number of parking slots",
    registry=REGISTRY,
)

AVAILABLE_SLOTS = Gauge(
    "parking_slots_available",
    "Number of free parking slots",
    registry=REGISTRY,
)

OCCUPIED_SLOTS = Gauge(
    "parking_slots_occupied",
    "Number of occupied parking slots",
    registry=REGISTRY,
)

RESERVED_SLOTS = Gauge(
    "parking_slots_reserved",
    "Number of reserved parking slots",
    registry=REGISTRY,
)

COMMANDS_SENT = Counter(
    "parking_commands_sent_total",
    "Commands dispatched to gateways",
    ["action"],
    registry=REGISTRY,
)

ACKNOWLEDGMENTS = Counter(
    "parking_command_acks_total",
    "Command acknowledgments received",
    ["outcome"],
    registry=REGISTRY,
)

UNRESOLVED_COMMANDS = Counter(
    "parking_commands_unresolved_total",
    "Commands with no acknowledgment within the ack timeout",
    ["action"],
    registry=REGISTRY,
)

# Ack latency histogram (in seconds)
ACK_LATENCY = Histogram(
    "parking_command_ack_latency_seconds",
    "Time between command dispatch and its acknowledgment",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
    registry=REGISTRY,
)

DROPPED_MESSAGES = Counter(
    "parking_messages_dropped_total",
    "Inbound or outbound messages dropped",
    ["reason"],
    registry=REGISTRY,
)

RESERVATIONS = Counter(
    "parking_reservations_total",
    "Reservation lifecycle transitions",
    ["outcome"],
    registry=REGISTRY,
)

_STATUS_VALUES = {"free": 0, "reserved": 1, "occupied": 2}


def record_slot_change(slot_id: str, from_status: str, to_status: str, hour: int) -> None:
    """Record a canonical slot state change."""
    SLOT_STATE_CHANGES.labels(
        slot_id=slot_id,
        from_status=from_status,
        to_status=to_status,
        hour_of_day=str(hour).zfill(2),
    ).inc()


def update_slot_status(slot_id: str, lock_id: str, status: str) -> None:
    """Update current slot status gauge."""
    SLOT_STATUS.labels(slot_id=slot_id, lock_id=lock_id).set(_STATUS_VALUES.get(status, -1))


def update_slot_counts(total: int, available: int, occupied: int, reserved: int) -> None:
    """Update overall slot count gauges."""
    TOTAL_SLOTS.set(total)
    AVAILABLE_SLOTS.set(available)
    OCCUPIED_SLOTS.set(occupied)
    RESERVED_SLOTS.set(reserved)


def record_command_sent(action: str) -> None:
    COMMANDS_SENT.labels(action=action).inc()


def record_acknowledgment(outcome: str, latency_seconds: float | None = None) -> None:
    """Record an acknowledgment; outcome is success, failure or unmatched."""
    ACKNOWLEDGMENTS.labels(outcome=outcome).inc()
    if latency_seconds is not None:
        ACK_LATENCY.observe(latency_seconds)


def record_unresolved_command(action: str) -> None:
    UNRESOLVED_COMMANDS.labels(action=action).inc()


def record_dropped_message(reason: str) -> None:
    DROPPED_MESSAGES.labels(reason=reason).inc()


def record_reservation(outcome: str) -> None:
    RESERVATIONS.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)

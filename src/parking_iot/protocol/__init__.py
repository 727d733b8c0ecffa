"""Command/acknowledgment protocol and message transports."""

from .messages import (
    Acknowledgment,
    ArmPosition,
    Command,
    CommandAction,
    GatewayTopics,
    Heartbeat,
    LockState,
    StatusReport,
)
from .transport import InMemoryBroker, Transport

__all__ = [
    "Acknowledgment",
    "ArmPosition",
    "Command",
    "CommandAction",
    "GatewayTopics",
    "Heartbeat",
    "LockState",
    "StatusReport",
    "InMemoryBroker",
    "Transport",
]

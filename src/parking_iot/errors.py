"""Exception taxonomy shared by locks, gateways and the reservation authority."""


class ParkingError(Exception):
    """Base class for all parking service errors."""


class InvalidStateError(ParkingError):
    """Operation attempted from a state that forbids it."""


class NotFoundError(ParkingError):
    """Unknown lock, slot, reservation or command identifier."""


class BusyError(ParkingError):
    """Actuator is mid-motion and cannot accept a new movement."""


class SlotUnavailableError(ParkingError):
    """Slot is not free at the time of the reservation attempt."""


class InvalidCommandError(ParkingError):
    """Command names an action the lock does not support."""


class ValidationError(ParkingError):
    """Caller supplied invalid reservation data."""


class TransportError(ParkingError):
    """Message could not be sent or parsed."""

"""FastAPI route definitions."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Response

from ..errors import NotFoundError, SlotUnavailableError, ValidationError
from ..metrics import get_metrics
from ..state.authority import ReservationAuthority
from ..state.models import (
    ArrivalResult,
    DashboardStats,
    GatewayPresence,
    ParkingLot,
    ReservationView,
    SensorReading,
    SlotView,
    SystemLogEntry,
)
from .schemas import ActionResponse, HealthResponse, ReservationCreated, ReservationRequest

logger = logging.getLogger(__name__)

router = APIRouter()

# Dependencies injected at startup
_authority: Optional[ReservationAuthority] = None
_start_time: datetime = datetime.now()


def init_router(authority: ReservationAuthority) -> None:
    """
    Initialize router with dependencies.

    Args:
        authority: ReservationAuthority owning canonical state
    """
    global _authority, _start_time

    _authority = authority
    _start_time = datetime.now()

    logger.info("API router initialized")


def _require_authority() -> ReservationAuthority:
    if _authority is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _authority


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Returns basic health information about the service.
    """
    uptime = (datetime.now() - _start_time).total_seconds()

    if _authority is None:
        return HealthResponse(
            status="starting",
            transport_connected=False,
            gateways_online=0,
            pending_commands=0,
            uptime_seconds=uptime,
        )

    return HealthResponse(
        status="healthy",
        transport_connected=_authority.transport.connected,
        gateways_online=sum(1 for g in _authority.gateways() if g.online),
        pending_commands=len(_authority.pending_commands()),
        uptime_seconds=uptime,
    )


@router.get("/lots", response_model=list[ParkingLot])
async def list_lots() -> list[ParkingLot]:
    return _require_authority().list_lots()


@router.get("/slots", response_model=list[SlotView])
async def list_slots(lot_id: Optional[str] = None) -> list[SlotView]:
    """
    List slots with their active reservation details.

    Args:
        lot_id: Restrict to one lot
    """
    return _require_authority().list_slots(lot_id)


@router.get("/slots/{slot_id}", response_model=SlotView)
async def get_slot(slot_id: str) -> SlotView:
    try:
        return _require_authority().get_slot(slot_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/reservations", response_model=list[ReservationView])
async def list_reservations(
    filter: str = Query("active", pattern="^(all|active|cancelled|expired|completed)$"),
) -> list[ReservationView]:
    return _require_authority().list_reservations(filter)


@router.post("/reservations", response_model=ReservationCreated)
async def create_reservation(request: ReservationRequest) -> ReservationCreated:
    """
    Reserve a free slot.

    The slot is marked reserved immediately; the lock is driven
    asynchronously.
    """
    authority = _require_authority()
    try:
        reservation = await authority.create_reservation(
            slot_id=request.slot_id,
            plate_number=request.plate_number,
            user_name=request.user_name,
            phone_number=request.phone_number,
            duration_minutes=request.duration_minutes,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SlotUnavailableError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ReservationCreated(reservation_id=reservation.id)


@router.post("/reservations/{reservation_id}/arrive", response_model=ArrivalResult)
async def arrive(reservation_id: str) -> ArrivalResult:
    try:
        return await _require_authority().arrive(reservation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/reservations/{reservation_id}", response_model=ActionResponse)
async def cancel_reservation(reservation_id: str) -> ActionResponse:
    try:
        await _require_authority().cancel(reservation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ActionResponse(success=True, message="Reservation cancelled")


@router.get("/sensor-data", response_model=list[SensorReading])
async def all_sensor_data(hours: float = Query(24, gt=0)) -> list[SensorReading]:
    return _require_authority().sensor_data(hours=hours)


@router.get("/sensor-data/{lock_id}", response_model=list[SensorReading])
async def lock_sensor_data(lock_id: str, hours: float = Query(24, gt=0)) -> list[SensorReading]:
    return _require_authority().sensor_data(lock_id=lock_id, hours=hours)


@router.get("/system-logs", response_model=list[SystemLogEntry])
async def system_logs(limit: int = Query(50, gt=0)) -> list[SystemLogEntry]:
    return _require_authority().system_logs(limit)


@router.get("/gateways", response_model=list[GatewayPresence])
async def gateways() -> list[GatewayPresence]:
    return _require_authority().gateways()


@router.get("/dashboard-stats", response_model=DashboardStats)
async def dashboard_stats() -> DashboardStats:
    return _require_authority().dashboard_stats()


@router.get("/metrics")
async def prometheus_metrics() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format including:
    - parking_slot_status: Gauge of canonical slot status
    - parking_slot_state_changes_total: Counter of slot state changes by hour
    - parking_slots_total / available / occupied / reserved: Slot count gauges
    - parking_commands_sent_total: Commands dispatched per action
    - parking_command_acks_total: Acknowledgments by outcome
    - parking_commands_unresolved_total: Commands never acknowledged
    - parking_command_ack_latency_seconds: Histogram of ack latency
    - parking_messages_dropped_total: Dropped messages by reason
    - parking_reservations_total: Reservation lifecycle transitions
    """
    return Response(
        content=get_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )

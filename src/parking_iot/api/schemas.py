"""API request and response schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class ReservationRequest(BaseModel):
    """Request body for creating a reservation."""

    slot_id: str
    plate_number: str = Field(min_length=1)
    user_name: Optional[str] = None
    phone_number: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0)


class ReservationCreated(BaseModel):
    success: bool = True
    reservation_id: str
    message: str = "Reservation created successfully"


class ActionResponse(BaseModel):
    success: bool
    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    transport_connected: bool
    gateways_online: int
    pending_commands: int
    uptime_seconds: float

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from ticketflow.models.booking import BookingStatus, PaymentStatus


class BookingRequest(BaseModel):
    """Schema for the booking placement request body."""
    event_id: str = Field(..., min_length=1, max_length=64)
    ticket_type_id: uuid.UUID
    quantity: int = Field(..., gt=0, le=20, description="Number of tickets to reserve.")
    email: Optional[EmailStr] = Field(None, description="Where the confirmation email is sent.")


class BookingCancelRequest(BaseModel):
    reason: str = Field("cancelled_by_user", max_length=255)


class BookingPlacementResponse(BaseModel):
    """Response for a newly placed booking (202 Accepted)."""
    booking_id: uuid.UUID
    status: BookingStatus
    amount: Decimal
    currency: str
    expires_at: datetime
    message: str


class BookingDetailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: str
    event_id: str
    ticket_type_id: uuid.UUID
    quantity: int
    amount: Decimal
    currency: str
    status: BookingStatus
    payment_status: PaymentStatus
    payment_intent_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    expires_at: datetime
    confirmed_at: Optional[datetime] = None
    created_at: datetime

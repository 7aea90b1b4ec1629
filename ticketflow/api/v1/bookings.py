import logging
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Header, HTTPException, status
from ticketflow.core.exceptions import BookingNotFound, InvalidBookingTransition, TicketTypeNotFound
from ticketflow.schemas.booking import (
    BookingCancelRequest,
    BookingDetailResponse,
    BookingPlacementResponse,
    BookingRequest,
)
from ticketflow.schemas.response import SuccessResponse
from ticketflow.services.booking_service import cancel_booking, create_booking, get_booking

router = APIRouter()
log = logging.getLogger(__name__)


@router.post("/", status_code=status.HTTP_202_ACCEPTED, response_model=SuccessResponse)
async def create_booking_endpoint(request_data: BookingRequest, user_id: str = Header(..., alias="X-User-Id")):
    """
    Places a booking. Returns 202 Accepted: tickets are reserved and paid for
    asynchronously, poll GET /bookings/{id} for the outcome.
    """
    try:
        booking = await create_booking(
            user_id=user_id,
            event_id=request_data.event_id,
            ticket_type_id=request_data.ticket_type_id,
            quantity=request_data.quantity,
            email=request_data.email,
        )
    except TicketTypeNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        log.error(f"Value error placing booking: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    data = BookingPlacementResponse(
        booking_id=booking.id,
        status=booking.status,
        amount=booking.amount,
        currency=booking.currency,
        expires_at=booking.expires_at,
        message="Booking accepted and is being processed.",
    ).model_dump(mode="json")
    return SuccessResponse(data=data)


@router.get("/{booking_id}", response_model=SuccessResponse)
async def get_booking_endpoint(booking_id: UUID):
    """Status polling for one booking."""
    booking = await get_booking(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return SuccessResponse(data=BookingDetailResponse.model_validate(booking).model_dump(mode="json"))


@router.post("/{booking_id}/cancel", response_model=SuccessResponse)
async def cancel_booking_endpoint(booking_id: UUID, payload: Optional[BookingCancelRequest] = None):
    """Cancels a PENDING booking and returns its reserved tickets to stock."""
    try:
        reason = payload.reason if payload else "cancelled_by_user"
        booking = await cancel_booking(booking_id, reason)
    except BookingNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidBookingTransition as e:
        log.warning(f"Rejected cancellation of booking {booking_id}: {e}")
        raise HTTPException(status_code=409, detail=str(e))

    return SuccessResponse(data=BookingDetailResponse.model_validate(booking).model_dump(mode="json"))

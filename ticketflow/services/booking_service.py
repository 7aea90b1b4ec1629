import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, List, Optional, Union
from uuid import UUID
from tortoise import timezone
from tortoise.transactions import in_transaction
from ticketflow.core import metrics
from ticketflow.core.config import BOOKING_TTL_SECONDS
from ticketflow.core.exceptions import BookingNotFound, InvalidBookingTransition, TicketTypeNotFound
from ticketflow.events.domain_events import Aggregate, EventType
from ticketflow.events.outbox_utility import create_outbox_event
from ticketflow.models.booking import Booking, BookingStatus, CancellationSource, PaymentStatus
from ticketflow.models.ticket_type import TicketType
from ticketflow.schemas.events import BookingCreatedPayload, BookingFailurePayload
from ticketflow.services import inventory_service

log = logging.getLogger(__name__)


async def create_booking(
    user_id: str,
    event_id: str,
    ticket_type_id: Union[UUID, str],
    quantity: int,
    email: Optional[str] = None,
) -> Booking:
    """
    FAST PATH: Creates the Booking and its booking.created OutboxEvent atomically.
    Stock is not touched here; the ticket saga reserves it asynchronously.
    """
    if quantity <= 0:
        raise ValueError("Booking quantity must be positive.")

    async with in_transaction() as conn:
        ticket_type = await TicketType.get_or_none(id=ticket_type_id, event_id=event_id).using_db(conn)
        if not ticket_type or not ticket_type.is_active:
            raise TicketTypeNotFound(ticket_type_id)

        booking = await Booking.create(
            user_id=user_id,
            event_id=event_id,
            ticket_type_id=ticket_type.id,
            quantity=quantity,
            amount=ticket_type.price * Decimal(quantity),
            currency=ticket_type.currency,
            email=email,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PENDING if ticket_type.is_paid_event else PaymentStatus.NOT_REQUIRED,
            expires_at=timezone.now() + timedelta(seconds=BOOKING_TTL_SECONDS),
            using_db=conn,
        )

        # ATOMIC EVENT: Trigger ticket reservation (handled by the ticket saga)
        await create_outbox_event(
            aggregate_type=Aggregate.BOOKING,
            aggregate_id=booking.id,
            event_type=EventType.BOOKING_CREATED,
            payload=BookingCreatedPayload(
                booking_id=str(booking.id),
                user_id=user_id,
                event_id=event_id,
                ticket_type_id=str(ticket_type.id),
                quantity=quantity,
            ).to_event(),
            conn=conn,
        )

    metrics.BOOKINGS_CREATED.inc()
    log.info(f"Booking {booking.id} created for user {user_id} ({quantity} x {ticket_type.name}).")
    return booking


async def get_booking(booking_id: Union[UUID, str], conn: Any = None) -> Optional[Booking]:
    return await Booking.get_or_none(id=booking_id).using_db(conn)


async def require_booking(booking_id: Union[UUID, str], conn: Any = None) -> Booking:
    booking = await get_booking(booking_id, conn)
    if not booking:
        raise BookingNotFound(booking_id)
    return booking


async def transition_pending(
    booking_id: Union[UUID, str],
    new_status: BookingStatus,
    conn: Any = None,
    **fields,
) -> bool:
    """
    PENDING -> new_status as one guarded UPDATE. Returns False when the booking
    has already left PENDING, so terminal states are never revisited.
    """
    updated = await Booking.filter(id=booking_id, status=BookingStatus.PENDING).using_db(conn).update(
        status=new_status,
        updated_at=timezone.now(),
        **fields,
    )
    return updated == 1


async def cancel_pending_booking(
    booking_id: Union[UUID, str],
    reason: str,
    conn: Any,
    event_type: EventType = EventType.BOOKING_CANCELLED,
    source: CancellationSource = CancellationSource.USER,
) -> bool:
    """
    Shared by explicit cancellation and the expiry reaper: cancels, releases
    any stock hold and appends the audit event, all on the caller's transaction.
    """
    if not await transition_pending(booking_id, BookingStatus.CANCELLED, conn, cancellation_reason=reason):
        return False

    await inventory_service.release_hold(booking_id, conn)
    await create_outbox_event(
        aggregate_type=Aggregate.BOOKING,
        aggregate_id=booking_id,
        event_type=event_type,
        payload=BookingFailurePayload(booking_id=str(booking_id), reason=reason, source=source).to_event(),
        conn=conn,
    )
    return True


async def cancel_booking(booking_id: Union[UUID, str], reason: str = CancellationSource.USER.value) -> Booking:
    """Cancels a PENDING booking and returns its reserved tickets to stock."""
    async with in_transaction() as conn:
        booking = await require_booking(booking_id, conn)
        if booking.is_terminal:
            raise InvalidBookingTransition(f"Booking is already in a final state: {booking.status.value}.")

        if not await cancel_pending_booking(booking_id, reason, conn):
            # Lost a race with the saga; report the state that won.
            booking = await require_booking(booking_id, conn)
            raise InvalidBookingTransition(f"Booking is already in a final state: {booking.status.value}.")

    log.info(f"Booking {booking_id} cancelled: {reason}")
    return await require_booking(booking_id)


async def cancel_expired_bookings(limit: int = 100) -> List[str]:
    """Cancels PENDING bookings whose TTL has passed. Returns the ids it cancelled."""
    now = timezone.now()
    expired = await Booking.filter(status=BookingStatus.PENDING, expires_at__lt=now).order_by("expires_at").limit(limit)

    cancelled = []
    for booking in expired:
        async with in_transaction() as conn:
            if await cancel_pending_booking(
                booking.id, CancellationSource.EXPIRED.value, conn, source=CancellationSource.EXPIRED
            ):
                cancelled.append(str(booking.id))
    return cancelled

import logging
from typing import Any, Dict
from tortoise.transactions import in_transaction
from ticketflow.consumers.saga import SagaRouter, emit
from ticketflow.events.domain_events import Aggregate, EventType
from ticketflow.events.idempotency import is_processed, mark_processed
from ticketflow.schemas.events import BookingCreatedPayload, TicketsFailedPayload, TicketsReservedPayload
from ticketflow.services import inventory_service
from ticketflow.services.inventory_service import InsufficientStock

log = logging.getLogger(__name__)

CONSUMER = "ticket-saga"


async def handle_booking_created(event_payload: Dict[str, Any], event_id: str):
    """
    Consumer logic for 'booking.created'. Holds stock for the booking.
    Out of stock ends the booking: tickets.failed, no retry.
    """
    data = BookingCreatedPayload.model_validate(event_payload)

    # Idempotency Check
    if await is_processed(event_id, CONSUMER):
        log.info(f"Idempotency: Event {event_id} already processed.")
        return

    async with in_transaction() as conn:
        if await inventory_service.get_hold(data.booking_id, conn):
            log.info(f"Booking {data.booking_id} already holds tickets; skipping reservation.")
            await mark_processed(event_id, CONSUMER, conn)
            return

        result = await inventory_service.hold_for_booking(
            data.booking_id, data.ticket_type_id, data.quantity, conn
        )

        if isinstance(result, InsufficientStock):
            log.warning(f"FAILURE: Reservation failed for Booking {data.booking_id}. Reason: {result.reason}")
            await emit(
                Aggregate.TICKET, EventType.TICKETS_FAILED, data.booking_id,
                TicketsFailedPayload(booking_id=data.booking_id, reason=result.reason),
                conn,
            )
        else:
            log.info(f"SUCCESS: {data.quantity} tickets reserved for Booking {data.booking_id}")
            await emit(
                Aggregate.TICKET, EventType.TICKETS_RESERVED, data.booking_id,
                TicketsReservedPayload(
                    booking_id=data.booking_id,
                    is_paid=result.is_paid_event,
                    quantity=data.quantity,
                ),
                conn,
            )

        await mark_processed(event_id, CONSUMER, conn)


def build_router() -> SagaRouter:
    return SagaRouter(
        name="ticket",
        aggregate=Aggregate.TICKET,
        handlers={
            EventType.BOOKING_CREATED: handle_booking_created,
        },
        failure_events={
            EventType.BOOKING_CREATED: EventType.TICKETS_FAILED,
        },
    )

import logging
from typing import Any, Dict
from tortoise import timezone
from tortoise.transactions import in_transaction
from ticketflow.consumers.notification_consumer import RETRY_HEADER
from ticketflow.consumers.saga import SagaRouter, emit
from ticketflow.core import metrics
from ticketflow.core.exceptions import InventoryCorrectionError
from ticketflow.events.domain_events import Aggregate, EventType, Queue
from ticketflow.events.idempotency import is_processed, mark_processed
from ticketflow.events.outbox_utility import mark_published
from ticketflow.messaging.broker import CORRELATION_HEADER, InMemoryBroker
from ticketflow.models.booking import Booking, BookingStatus, CancellationSource, PaymentStatus
from ticketflow.schemas.events import (
    BookingConfirmRequestedPayload,
    BookingConfirmedPayload,
    BookingFailurePayload,
    BookingPaymentRefundedPayload,
    PaymentRefundRequestedPayload,
    PaymentRequestedPayload,
    TicketsFailedPayload,
    TicketsReservedPayload,
)
from ticketflow.services import inventory_service
from ticketflow.services.booking_service import require_booking, transition_pending

log = logging.getLogger(__name__)

CONSUMER = "booking-saga"


class BookingSagaHandlers:
    """Local transitions of the Booking aggregate. Each transition is a no-op on redelivery."""

    def __init__(self, broker: InMemoryBroker):
        self.broker = broker

    async def handle_tickets_reserved(self, event_payload: Dict[str, Any], event_id: str):
        """Tickets are held: ask for payment, or confirm straight away for free events."""
        data = TicketsReservedPayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            log.info(f"Idempotency: Event {event_id} already processed.")
            return

        async with in_transaction() as conn:
            booking = await require_booking(data.booking_id, conn)

            if booking.status != BookingStatus.PENDING:
                # Expired or cancelled while the reservation was in flight.
                log.warning(f"Booking {booking.id} is {booking.status.value}; releasing its late reservation.")
                await inventory_service.release_hold(booking.id, conn)
            elif data.is_paid:
                await emit(
                    Aggregate.BOOKING, EventType.PAYMENT_REQUESTED, booking.id,
                    PaymentRequestedPayload(
                        booking_id=str(booking.id),
                        amount=booking.amount,
                        currency=booking.currency,
                    ),
                    conn,
                )
            else:
                await emit(
                    Aggregate.BOOKING, EventType.BOOKING_CONFIRM_REQUESTED, booking.id,
                    BookingConfirmRequestedPayload(booking_id=str(booking.id)),
                    conn,
                )

            await mark_processed(event_id, CONSUMER, conn)

    async def handle_tickets_failed(self, event_payload: Dict[str, Any], event_id: str):
        data = TicketsFailedPayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            log.info(f"Idempotency: Event {event_id} already processed.")
            return

        async with in_transaction() as conn:
            failed = await transition_pending(
                data.booking_id, BookingStatus.FAILED, conn,
                payment_status=PaymentStatus.NOT_REQUIRED,
                cancellation_reason=data.reason[:255],
            )
            if failed:
                await inventory_service.release_hold(data.booking_id, conn)
            else:
                log.info(f"Booking {data.booking_id} already final; ignoring tickets.failed.")
            await mark_processed(event_id, CONSUMER, conn)

        if failed:
            metrics.BOOKINGS_FAILED.labels(reason="tickets_unavailable").inc()
            log.error(f"Status UPDATE: Booking {data.booking_id} FAILED due to: {data.reason}")

    async def handle_confirm_requested(self, event_payload: Dict[str, Any], event_id: str):
        """
        PENDING -> CONFIRMED, sell the held tickets and announce booking.confirmed,
        in one transaction. A booking that closed first gets its payment refunded.
        """
        data = BookingConfirmRequestedPayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            log.info(f"Idempotency: Event {event_id} already processed.")
            return

        confirmed = False
        async with in_transaction() as conn:
            booking = await require_booking(data.booking_id, conn)

            if booking.status == BookingStatus.PENDING and await transition_pending(
                booking.id, BookingStatus.CONFIRMED, conn,
                confirmed_at=timezone.now(),
                payment_status=PaymentStatus.SUCCEEDED if data.payment_intent else PaymentStatus.NOT_REQUIRED,
                payment_intent_id=data.payment_intent,
            ):
                if not await inventory_service.commit_hold(booking.id, conn):
                    raise InventoryCorrectionError(f"Booking {booking.id} has no held tickets to sell")

                await emit(
                    Aggregate.BOOKING, EventType.BOOKING_CONFIRMED, booking.id,
                    BookingConfirmedPayload(
                        booking_id=str(booking.id),
                        user_id=booking.user_id,
                        event_id=booking.event_id,
                        ticket_type_id=str(booking.ticket_type_id),
                        quantity=booking.quantity,
                        email=booking.email,
                    ),
                    conn,
                )
                confirmed = True
            else:
                booking = await require_booking(data.booking_id, conn)
                await self._refund_orphaned_payment(booking, data.payment_intent, conn)

            await mark_processed(event_id, CONSUMER, conn)

        if confirmed:
            metrics.BOOKINGS_CONFIRMED.inc()
            log.info(f"Status UPDATE: Booking {data.booking_id} moved to CONFIRMED.")

    async def handle_confirm_failed(self, event_payload: Dict[str, Any], event_id: str):
        """Confirmation exhausted its retries: cancel, release and refund if money was taken."""
        data = BookingFailurePayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            log.info(f"Idempotency: Event {event_id} already processed.")
            return

        async with in_transaction() as conn:
            cancelled = await transition_pending(
                data.booking_id, BookingStatus.CANCELLED, conn,
                cancellation_reason=(data.reason or "confirmation_failed")[:255],
            )
            if cancelled:
                await inventory_service.release_hold(data.booking_id, conn)
            booking = await require_booking(data.booking_id, conn)
            await self._refund_orphaned_payment(booking, data.payment_intent, conn)
            await mark_processed(event_id, CONSUMER, conn)

        if cancelled:
            metrics.BOOKINGS_FAILED.labels(reason="confirmation_failed").inc()
            log.error(f"Status UPDATE: Booking {data.booking_id} CANCELLED, confirmation failed: {data.reason}")

    async def handle_payment_failed(self, event_payload: Dict[str, Any], event_id: str):
        """Compensation: PENDING -> CANCELLED and the held tickets go back on sale."""
        data = BookingFailurePayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            log.info(f"Idempotency: Event {event_id} already processed.")
            return

        async with in_transaction() as conn:
            cancelled = await transition_pending(
                data.booking_id, BookingStatus.CANCELLED, conn,
                payment_status=PaymentStatus.FAILED,
                cancellation_reason=(data.reason or "payment_failed")[:255],
            )
            if cancelled:
                await inventory_service.release_hold(data.booking_id, conn)
            else:
                log.info(f"Booking {data.booking_id} already final; ignoring booking.payment.failed.")
            await mark_processed(event_id, CONSUMER, conn)

        if cancelled:
            metrics.BOOKINGS_FAILED.labels(reason="payment_failed").inc()
            log.error(f"Status UPDATE: Booking {data.booking_id} CANCELLED due to payment failure: {data.reason}")

    async def handle_payment_refunded(self, event_payload: Dict[str, Any], event_id: str):
        data = BookingPaymentRefundedPayload.model_validate(event_payload)
        updated = await Booking.filter(
            id=data.booking_id,
            status__in=[BookingStatus.CANCELLED, BookingStatus.FAILED],
        ).update(payment_status=PaymentStatus.REFUNDED, updated_at=timezone.now())
        if updated:
            log.info(f"Booking {data.booking_id} marked REFUNDED (refund {data.refund_id}).")
        else:
            log.info(f"Refund {data.refund_id} recorded for booking {data.booking_id}; booking state unchanged.")

    async def handle_booking_confirmed(self, event_payload: Dict[str, Any], event_id: str):
        """
        Hands the confirmed booking to the notification channel as attempt 0.

        The outbox row stays DISPATCHED until the email is sent or dead-lettered,
        so a notification lost with the process is redelivered by reconciliation.
        A redelivery therefore queues the email again even if the ledger has it.
        """
        data = BookingConfirmedPayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            log.info(f"Event {event_id} redelivered before its notification settled; queuing it again.")
        else:
            async with in_transaction() as conn:
                await mark_processed(event_id, CONSUMER, conn)

        if not data.email:
            log.warning(f"Booking {data.booking_id} has no email address; skipping notification.")
            await mark_published(event_id)
            return

        await self.broker.publish(
            Queue.EMAIL.value,
            EventType.BOOKING_CONFIRMED.value,
            data.to_event(),
            headers={RETRY_HEADER: 0, CORRELATION_HEADER: str(event_id)},
        )
        log.info(f"Notification queued for booking {data.booking_id}.")

    async def handle_booking_cancelled(self, event_payload: Dict[str, Any], event_id: str):
        data = BookingFailurePayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            return
        async with in_transaction() as conn:
            await mark_processed(event_id, CONSUMER, conn)
        # Closed label set; the free-text reason stays on the booking row.
        source = data.source or CancellationSource.USER
        metrics.BOOKINGS_CANCELLED.labels(reason=source.value).inc()
        log.info(f"Booking {data.booking_id} cancelled ({data.reason}).")

    async def _refund_orphaned_payment(self, booking: Booking, payment_intent, conn) -> None:
        """Requests a refund for a payment that no live booking owns."""
        if not payment_intent:
            if booking.status == BookingStatus.CONFIRMED:
                log.info(f"Booking {booking.id} already CONFIRMED; skipping duplicate confirmation.")
            return
        if booking.status == BookingStatus.CONFIRMED and booking.payment_intent_id == payment_intent:
            log.info(f"Booking {booking.id} already CONFIRMED with intent {payment_intent}; nothing to do.")
            return

        log.warning(f"Booking {booking.id} is {booking.status.value}; refunding payment intent {payment_intent}.")
        await emit(
            Aggregate.BOOKING, EventType.PAYMENT_REFUND_REQUESTED, booking.id,
            PaymentRefundRequestedPayload(booking_id=str(booking.id), payment_intent=payment_intent),
            conn,
        )


def build_router(broker: InMemoryBroker) -> SagaRouter:
    handlers = BookingSagaHandlers(broker)
    return SagaRouter(
        name="booking",
        aggregate=Aggregate.BOOKING,
        handlers={
            EventType.TICKETS_RESERVED: handlers.handle_tickets_reserved,
            EventType.TICKETS_FAILED: handlers.handle_tickets_failed,
            EventType.BOOKING_CONFIRM_REQUESTED: handlers.handle_confirm_requested,
            EventType.BOOKING_CONFIRM_FAILED: handlers.handle_confirm_failed,
            EventType.BOOKING_CONFIRMED: handlers.handle_booking_confirmed,
            EventType.BOOKING_CANCELLED: handlers.handle_booking_cancelled,
            EventType.BOOKING_PAYMENT_FAILED: handlers.handle_payment_failed,
            EventType.BOOKING_PAYMENT_REFUNDED: handlers.handle_payment_refunded,
        },
        failure_events={
            EventType.BOOKING_CONFIRM_REQUESTED: EventType.BOOKING_CONFIRM_FAILED,
        },
        settled_downstream=[EventType.BOOKING_CONFIRMED],
    )

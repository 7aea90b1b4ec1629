import asyncio
import logging
from typing import Any, Dict
from tortoise.transactions import in_transaction
from ticketflow.consumers.saga import SagaRouter, emit
from ticketflow.core.config import PAYMENT_TIMEOUT_SECONDS
from ticketflow.core.exceptions import GatewayTimeout, PaymentDeclined
from ticketflow.events.domain_events import Aggregate, EventType
from ticketflow.events.idempotency import is_processed, mark_processed
from ticketflow.schemas.events import (
    BookingConfirmRequestedPayload,
    BookingFailurePayload,
    BookingPaymentRefundedPayload,
    PaymentFailedPayload,
    PaymentRefundRequestedPayload,
    PaymentRequestedPayload,
)
from ticketflow.services.payment_gateway import PaymentGateway, to_minor_units

log = logging.getLogger(__name__)

CONSUMER = "payment-saga"


class PaymentSagaHandlers:
    """
    Talks to the payment gateway. The outbox event id doubles as the gateway
    idempotency key, so a retried job never creates a second charge.
    """

    def __init__(self, gateway: PaymentGateway, timeout: float = PAYMENT_TIMEOUT_SECONDS):
        self.gateway = gateway
        self.timeout = timeout

    async def handle_payment_requested(self, event_payload: Dict[str, Any], event_id: str):
        data = PaymentRequestedPayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            log.info(f"Idempotency: Event {event_id} already processed.")
            return

        try:
            intent = await asyncio.wait_for(
                self.gateway.create_payment_intent(
                    to_minor_units(data.amount),
                    data.currency,
                    {"bookingId": data.booking_id},
                    idempotency_key=event_id,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            # Retried by the worker pool; payment.failed once attempts run out.
            raise GatewayTimeout(f"Payment for booking {data.booking_id} timed out after {self.timeout}s") from e
        except PaymentDeclined as e:
            log.warning(f"FAILURE: Payment declined for Booking {data.booking_id}: {e}")
            async with in_transaction() as conn:
                await emit(
                    Aggregate.PAYMENT, EventType.BOOKING_PAYMENT_FAILED, data.booking_id,
                    BookingFailurePayload(booking_id=data.booking_id, reason=f"payment_declined: {e}"),
                    conn,
                )
                await mark_processed(event_id, CONSUMER, conn)
            return

        log.info(f"SUCCESS: Payment intent {intent.id} created for Booking {data.booking_id}")
        async with in_transaction() as conn:
            await emit(
                Aggregate.PAYMENT, EventType.BOOKING_CONFIRM_REQUESTED, data.booking_id,
                BookingConfirmRequestedPayload(booking_id=data.booking_id, payment_intent=intent.id),
                conn,
            )
            await mark_processed(event_id, CONSUMER, conn)

    async def handle_payment_failed(self, event_payload: Dict[str, Any], event_id: str):
        """Turns a payment job that ran out of attempts into the booking compensation."""
        data = PaymentFailedPayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            log.info(f"Idempotency: Event {event_id} already processed.")
            return

        async with in_transaction() as conn:
            await emit(
                Aggregate.PAYMENT, EventType.BOOKING_PAYMENT_FAILED, data.booking_id,
                BookingFailurePayload(booking_id=data.booking_id, reason=data.reason or "payment_failed"),
                conn,
            )
            await mark_processed(event_id, CONSUMER, conn)

    async def handle_refund_requested(self, event_payload: Dict[str, Any], event_id: str):
        data = PaymentRefundRequestedPayload.model_validate(event_payload)
        if await is_processed(event_id, CONSUMER):
            log.info(f"Idempotency: Event {event_id} already processed.")
            return

        try:
            refund = await asyncio.wait_for(
                self.gateway.refund(data.payment_intent, idempotency_key=event_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(f"Refund of {data.payment_intent} timed out after {self.timeout}s") from e

        log.info(f"Refund {refund.id} issued for intent {data.payment_intent} (Booking {data.booking_id})")
        async with in_transaction() as conn:
            await emit(
                Aggregate.PAYMENT, EventType.BOOKING_PAYMENT_REFUNDED, data.booking_id,
                BookingPaymentRefundedPayload(booking_id=data.booking_id, refund_id=refund.id),
                conn,
            )
            await mark_processed(event_id, CONSUMER, conn)


def build_router(gateway: PaymentGateway, timeout: float = PAYMENT_TIMEOUT_SECONDS) -> SagaRouter:
    handlers = PaymentSagaHandlers(gateway, timeout)
    return SagaRouter(
        name="payment",
        aggregate=Aggregate.PAYMENT,
        handlers={
            EventType.PAYMENT_REQUESTED: handlers.handle_payment_requested,
            EventType.PAYMENT_FAILED: handlers.handle_payment_failed,
            EventType.PAYMENT_REFUND_REQUESTED: handlers.handle_refund_requested,
        },
        failure_events={
            EventType.PAYMENT_REQUESTED: EventType.PAYMENT_FAILED,
        },
    )

from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from ticketflow.models.booking import CancellationSource


class EventPayload(BaseModel):
    """Base for outbox payloads: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_event(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# bookings

class BookingCreatedPayload(EventPayload):
    booking_id: str
    user_id: str
    event_id: str
    ticket_type_id: str
    quantity: int


class BookingConfirmRequestedPayload(EventPayload):
    booking_id: str
    payment_intent: Optional[str] = None


class BookingConfirmedPayload(EventPayload):
    """Snapshot of a confirmed booking; also the notification job body."""
    booking_id: str
    user_id: str
    event_id: str
    ticket_type_id: str
    quantity: int
    email: Optional[str] = None


class BookingFailurePayload(EventPayload):
    """Body of booking.payment.failed, booking.confirm.failed and booking.cancelled."""
    booking_id: str
    reason: Optional[str] = None
    payment_intent: Optional[str] = None
    source: Optional[CancellationSource] = None # booking.cancelled only


class BookingPaymentRefundedPayload(EventPayload):
    booking_id: str
    refund_id: Optional[str] = None


# tickets

class TicketsReservedPayload(EventPayload):
    booking_id: str
    is_paid: bool
    quantity: int


class TicketsFailedPayload(EventPayload):
    booking_id: str
    reason: str


# payment

class PaymentRequestedPayload(EventPayload):
    booking_id: str
    amount: Decimal
    currency: str


class PaymentFailedPayload(EventPayload):
    booking_id: str
    reason: Optional[str] = None


class PaymentRefundRequestedPayload(EventPayload):
    booking_id: str
    payment_intent: str

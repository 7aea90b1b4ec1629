"""
Closed vocabulary of the booking workflow: aggregates, event kinds and the
static routing table the outbox dispatcher uses to pick a saga queue.
"""
from enum import Enum
from typing import Dict, Optional


class Aggregate(str, Enum):
    BOOKING = "Booking"
    TICKET = "Ticket"
    PAYMENT = "Payment"


class EventType(str, Enum):
    BOOKING_CREATED = "booking.created"
    BOOKING_CONFIRM_REQUESTED = "booking.confirm.requested"
    BOOKING_CONFIRM_FAILED = "booking.confirm.failed"
    BOOKING_CONFIRMED = "booking.confirmed"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_PAYMENT_FAILED = "booking.payment.failed"
    BOOKING_PAYMENT_REFUNDED = "booking.payment.refunded"

    TICKETS_RESERVED = "tickets.reserved"
    TICKETS_FAILED = "tickets.failed"

    PAYMENT_REQUESTED = "payment.requested"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUND_REQUESTED = "payment.refund.requested"

    @classmethod
    def parse(cls, name: str) -> Optional["EventType"]:
        try:
            return cls(name)
        except ValueError:
            return None


class Queue(str, Enum):
    TICKET = "ticket-saga"
    BOOKING = "booking-saga"
    PAYMENT = "payment-saga"
    EMAIL = "notification.booking.confirmed"
    EMAIL_DEAD_LETTER = "notification.booking.confirmed.failed"


# Every event kind is consumed by exactly one saga queue.
EVENT_ROUTES: Dict[EventType, Queue] = {
    EventType.BOOKING_CREATED: Queue.TICKET,

    EventType.TICKETS_RESERVED: Queue.BOOKING,
    EventType.TICKETS_FAILED: Queue.BOOKING,
    EventType.BOOKING_CONFIRM_REQUESTED: Queue.BOOKING,
    EventType.BOOKING_CONFIRM_FAILED: Queue.BOOKING,
    EventType.BOOKING_CONFIRMED: Queue.BOOKING,
    EventType.BOOKING_CANCELLED: Queue.BOOKING,
    EventType.BOOKING_PAYMENT_FAILED: Queue.BOOKING,
    EventType.BOOKING_PAYMENT_REFUNDED: Queue.BOOKING,

    EventType.PAYMENT_REQUESTED: Queue.PAYMENT,
    EventType.PAYMENT_FAILED: Queue.PAYMENT,
    EventType.PAYMENT_REFUND_REQUESTED: Queue.PAYMENT,
}


def route_for(event_type: str) -> Optional[Queue]:
    """Returns the saga queue for an event type, or None when it has no route."""
    kind = EventType.parse(event_type)
    if kind is None:
        return None
    return EVENT_ROUTES.get(kind)

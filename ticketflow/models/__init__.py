# ticketflow/models/__init__.py
from .booking import Booking, BookingStatus, CancellationSource, PaymentStatus
from .ticket_type import TicketType, TicketReservation, ReservationStatus
from .outbox import OutboxEvent, OutboxStatus
from .processed_event import ProcessedEvent

# Export all models
__all__ = [
    "Booking",
    "BookingStatus",
    "CancellationSource",
    "PaymentStatus",
    "TicketType",
    "TicketReservation",
    "ReservationStatus",
    "OutboxEvent",
    "OutboxStatus",
    "ProcessedEvent",
]

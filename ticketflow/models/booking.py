from enum import Enum
from tortoise import fields, models
import uuid


class BookingStatus(str, Enum):
    PENDING = "PENDING"      # Created, saga in flight
    CONFIRMED = "CONFIRMED"  # Paid (or free) and tickets sold
    CANCELLED = "CANCELLED"  # Payment failed, confirmation failed, expired or cancelled by user
    FAILED = "FAILED"        # Cancelled because tickets could not be reserved


TERMINAL_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.FAILED)


class CancellationSource(str, Enum):
    """Who closed a PENDING booking. Free-text reasons stay on the row."""
    USER = "cancelled_by_user"
    EXPIRED = "expired"



class PaymentStatus(str, Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Booking(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = fields.CharField(max_length=64)
    event_id = fields.CharField(max_length=64)
    ticket_type = fields.ForeignKeyField("models.TicketType", related_name="bookings")
    quantity = fields.IntField()
    amount = fields.DecimalField(max_digits=14, decimal_places=2, default=0)
    currency = fields.CharField(max_length=8)
    email = fields.CharField(max_length=255, null=True) # Notification recipient
    status = fields.CharEnumField(BookingStatus, default=BookingStatus.PENDING)
    payment_status = fields.CharEnumField(PaymentStatus, default=PaymentStatus.PENDING)
    payment_intent_id = fields.CharField(max_length=128, null=True)
    cancellation_reason = fields.CharField(max_length=255, null=True)
    expires_at = fields.DatetimeField() # TTL for abandoned PENDING bookings
    confirmed_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "bookings"
        indexes = [
            ("user_id", "created_at"),   # User booking history
            ("event_id", "status"),      # Event bookings by status
            ("status", "expires_at"),    # Reaper sweep
            ("payment_intent_id",),      # Refund lookups
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

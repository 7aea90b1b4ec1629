from enum import Enum
from tortoise import fields, models
import uuid


class OutboxStatus(str, Enum):
    PENDING = "PENDING"        # Written with the state change it announces
    DISPATCHED = "DISPATCHED"  # Claimed by the dispatcher and handed to a queue
    PUBLISHED = "PUBLISHED"    # Job settled by its saga worker


class OutboxEvent(models.Model):
    """
    The Outbox table stores events atomically with the database transaction.
    This is the core of the Transactional Outbox Pattern.

    Rows are append-only: only ``status`` (and its timestamps) ever changes,
    and only through guarded updates in ``ticketflow.events.outbox_utility``.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    aggregate_type = fields.CharField(max_length=64) # e.g., 'Booking', 'Ticket', 'Payment'
    aggregate_id = fields.CharField(max_length=64) # ID of the entity that generated the event
    event_type = fields.CharField(max_length=128) # e.g., 'booking.created'
    payload = fields.JSONField() # The actual event data
    status = fields.CharEnumField(OutboxStatus, default=OutboxStatus.PENDING)
    created_at = fields.DatetimeField(auto_now_add=True)
    dispatched_at = fields.DatetimeField(null=True)
    published_at = fields.DatetimeField(null=True)

    class Meta:
        table = "outbox_events"
        indexes = [
            ("status", "created_at"),     # Dispatcher sweep
            ("status", "dispatched_at"),  # Reconciliation sweep
            ("aggregate_id",),            # Audit / replay by aggregate
        ]

from enum import Enum
from tortoise import fields, models
import uuid


class TicketType(models.Model):
    """
    Inventory for one ticket category of an event.

    available_quantity + reserved_quantity + sold_quantity == total_quantity
    holds after every statement that touches these columns.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    event_id = fields.CharField(max_length=64)
    name = fields.CharField(max_length=255)
    total_quantity = fields.IntField()
    available_quantity = fields.IntField()
    reserved_quantity = fields.IntField(default=0)
    sold_quantity = fields.IntField(default=0)
    price = fields.DecimalField(max_digits=12, decimal_places=2)
    currency = fields.CharField(max_length=8)
    is_paid_event = fields.BooleanField(default=True)
    is_active = fields.BooleanField(default=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "ticket_types"
        unique_together = (("event_id", "name"),)
        indexes = [
            ("event_id",),
            ("available_quantity",),
        ]


class ReservationStatus(str, Enum):
    HELD = "HELD"
    RELEASED = "RELEASED"
    COMMITTED = "COMMITTED"


class TicketReservation(models.Model):
    """One stock hold per booking; released or committed exactly once."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    booking_id = fields.CharField(max_length=64, unique=True)
    ticket_type = fields.ForeignKeyField("models.TicketType", related_name="reservations")
    quantity = fields.IntField()
    status = fields.CharEnumField(ReservationStatus, default=ReservationStatus.HELD)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "ticket_reservations"

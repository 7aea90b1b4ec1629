"""
Inventory Reservation Engine.

Every stock movement is one conditional UPDATE whose WHERE clause carries the
precondition, so concurrent callers serialize in the database and a failed
precondition leaves the row untouched. No read-modify-write happens in Python.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union
from uuid import UUID
from tortoise.expressions import F
from ticketflow.core.exceptions import InventoryCorrectionError
from ticketflow.models.ticket_type import TicketType, TicketReservation, ReservationStatus

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class InsufficientStock:
    """Typed result of a reservation whose precondition failed; nothing was changed."""
    ticket_type_id: str
    requested: int
    available: int

    @property
    def reason(self) -> str:
        return (
            f"Insufficient inventory for ticket type {self.ticket_type_id}. "
            f"Requested: {self.requested}, Available: {self.available}"
        )


async def reserve(
    ticket_type_id: Union[UUID, str],
    quantity: int,
    conn: Any = None,
) -> Union[TicketType, InsufficientStock]:
    """available -= quantity, reserved += quantity, iff available >= quantity."""
    if quantity <= 0:
        raise ValueError("Reservation quantity must be positive.")

    updated = await TicketType.filter(
        id=ticket_type_id,
        is_active=True,
        available_quantity__gte=quantity,
    ).using_db(conn).update(
        available_quantity=F("available_quantity") - quantity,
        reserved_quantity=F("reserved_quantity") + quantity,
    )

    ticket_type = await TicketType.get_or_none(id=ticket_type_id).using_db(conn)
    if updated == 0:
        available = ticket_type.available_quantity if ticket_type and ticket_type.is_active else 0
        return InsufficientStock(str(ticket_type_id), quantity, available)
    return ticket_type


async def release(ticket_type_id: Union[UUID, str], quantity: int, conn: Any = None) -> bool:
    """reserved -> available, iff reserved >= quantity."""
    updated = await TicketType.filter(
        id=ticket_type_id,
        reserved_quantity__gte=quantity,
    ).using_db(conn).update(
        reserved_quantity=F("reserved_quantity") - quantity,
        available_quantity=F("available_quantity") + quantity,
    )
    return updated == 1


async def commit(ticket_type_id: Union[UUID, str], quantity: int, conn: Any = None) -> bool:
    """reserved -> sold, iff reserved >= quantity."""
    updated = await TicketType.filter(
        id=ticket_type_id,
        reserved_quantity__gte=quantity,
    ).using_db(conn).update(
        reserved_quantity=F("reserved_quantity") - quantity,
        sold_quantity=F("sold_quantity") + quantity,
    )
    return updated == 1


# --- Booking-scoped holds: the saga's view of the primitives above ---

async def hold_for_booking(
    booking_id: Union[UUID, str],
    ticket_type_id: Union[UUID, str],
    quantity: int,
    conn: Any = None,
) -> Union[TicketType, InsufficientStock]:
    """
    Reserves stock and records the hold for the booking. Run inside the
    caller's transaction so the hold and the stock movement commit together.
    """
    result = await reserve(ticket_type_id, quantity, conn=conn)
    if isinstance(result, InsufficientStock):
        return result

    await TicketReservation.create(
        booking_id=str(booking_id),
        ticket_type_id=ticket_type_id,
        quantity=quantity,
        status=ReservationStatus.HELD,
        using_db=conn,
    )
    return result


async def get_hold(booking_id: Union[UUID, str], conn: Any = None) -> Optional[TicketReservation]:
    return await TicketReservation.get_or_none(booking_id=str(booking_id)).using_db(conn)


async def release_hold(booking_id: Union[UUID, str], conn: Any = None) -> bool:
    """Compensation: returns a HELD reservation to available stock. False if nothing was held."""
    return await _settle_hold(booking_id, ReservationStatus.RELEASED, release, conn)


async def commit_hold(booking_id: Union[UUID, str], conn: Any = None) -> bool:
    """Turns a HELD reservation into sold stock. False if nothing was held."""
    return await _settle_hold(booking_id, ReservationStatus.COMMITTED, commit, conn)


async def _settle_hold(booking_id, target: ReservationStatus, movement, conn) -> bool:
    hold = await get_hold(booking_id, conn)
    if hold is None:
        return False

    # Flip the hold first; only the caller that wins the flip moves stock.
    claimed = await TicketReservation.filter(
        id=hold.id, status=ReservationStatus.HELD
    ).using_db(conn).update(status=target)
    if claimed == 0:
        log.info(f"Hold for booking {booking_id} already {hold.status}; nothing to {target.value.lower()}.")
        return False

    if not await movement(hold.ticket_type_id, hold.quantity, conn=conn):
        # The ledger says these units are reserved but the counters disagree.
        raise InventoryCorrectionError(
            f"Ticket type {hold.ticket_type_id} has fewer than {hold.quantity} reserved units "
            f"for booking {booking_id}"
        )
    log.info(f"Hold for booking {booking_id} {target.value}: {hold.quantity} x {hold.ticket_type_id}")
    return True

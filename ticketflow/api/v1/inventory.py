import logging
from uuid import UUID
from fastapi import APIRouter, HTTPException, status
from ticketflow.models.ticket_type import TicketType
from ticketflow.schemas.inventory import InventoryResponse

log = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{ticket_type_id}", response_model=InventoryResponse)
async def get_inventory_stock(ticket_type_id: UUID):
    """Fetches the stock counters for a ticket type."""
    ticket_type = await TicketType.get_or_none(id=ticket_type_id)
    if not ticket_type:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket type not found.")

    return InventoryResponse(
        ticket_type_id=ticket_type.id,
        event_id=ticket_type.event_id,
        name=ticket_type.name,
        total_quantity=ticket_type.total_quantity,
        available_quantity=ticket_type.available_quantity,
        reserved_quantity=ticket_type.reserved_quantity,
        sold_quantity=ticket_type.sold_quantity,
        price=ticket_type.price,
        currency=ticket_type.currency,
        updated_at=str(ticket_type.updated_at),
    )

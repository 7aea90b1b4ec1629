import uuid
from decimal import Decimal
from pydantic import BaseModel


class InventoryResponse(BaseModel):
    """Stock counters for one ticket type."""
    ticket_type_id: uuid.UUID
    event_id: str
    name: str
    total_quantity: int
    available_quantity: int
    reserved_quantity: int
    sold_quantity: int
    price: Decimal
    currency: str
    updated_at: str

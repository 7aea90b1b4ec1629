# scripts/seed_data.py
import asyncio
import logging
from decimal import Decimal
from tortoise import Tortoise
from ticketflow.core.config import DB_URL, DEFAULT_CURRENCY, LOG_FORMAT
from ticketflow.core.db import MODELS_MODULES
from ticketflow.models.ticket_type import TicketType

log = logging.getLogger(__name__)

DEMO_EVENT_ID = "evt-demo-concert"

# name, total, price, is_paid_event
TICKET_TYPES = [
    ("General Admission", 500, Decimal("2500.00"), True),
    ("VIP", 50, Decimal("15000.00"), True),
    ("Student Pass", 100, Decimal("0.00"), False),
]


async def init():
    await Tortoise.init(db_url=DB_URL, modules={"models": MODELS_MODULES})
    # safe in dev; a no-op for tables that already exist
    await Tortoise.generate_schemas(safe=True)


async def seed():
    for name, total, price, is_paid in TICKET_TYPES:
        ticket_type, created = await TicketType.get_or_create(
            event_id=DEMO_EVENT_ID,
            name=name,
            defaults={
                "total_quantity": total,
                "available_quantity": total,
                "price": price,
                "currency": DEFAULT_CURRENCY,
                "is_paid_event": is_paid,
            },
        )
        if not created and ticket_type.reserved_quantity == 0 and ticket_type.sold_quantity == 0:
            # Untouched stock can be reset to the seed values (idempotent)
            ticket_type.total_quantity = total
            ticket_type.available_quantity = total
            ticket_type.price = price
            await ticket_type.save()
        log.info(f"Ticket type {name}: {ticket_type.id} ({ticket_type.available_quantity}/{ticket_type.total_quantity})")

    log.info("Ticket inventory seeded.")


async def main():
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    await init()
    await seed()
    await Tortoise.close_connections()

if __name__ == "__main__":
    asyncio.run(main())

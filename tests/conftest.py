import os
import sys
from decimal import Decimal
import pytest
import pytest_asyncio
from tortoise import Tortoise

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from ticketflow.core.db import init_db
from ticketflow.models.ticket_type import TicketType
from ticketflow.testing.fakes import FakeMailSender, FakePaymentGateway
from ticketflow.workers import Runtime

EVENT_ID = "evt-test-concert"


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test."""
    await init_db("sqlite://:memory:")
    yield
    await Tortoise.close_connections()


@pytest.fixture
def make_ticket_type(db):
    async def _make(total=10, price="2500.00", is_paid=True, name="General Admission", currency="PKR"):
        return await TicketType.create(
            event_id=EVENT_ID,
            name=name,
            total_quantity=total,
            available_quantity=total,
            price=Decimal(price),
            currency=currency,
            is_paid_event=is_paid,
        )
    return _make


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def mailer():
    return FakeMailSender()


@pytest.fixture
def runtime(db, gateway, mailer):
    """Workers with immediate retries; drive it with run_until_idle()."""
    return Runtime(gateway, mailer, concurrency=1, backoff=0)



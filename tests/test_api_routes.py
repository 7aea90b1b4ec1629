from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch, AsyncMock
from uuid import uuid4
import pytest
from fastapi.testclient import TestClient

from ticketflow.core.exceptions import BookingNotFound, InvalidBookingTransition, TicketTypeNotFound
from ticketflow.main import app
from ticketflow.models.booking import BookingStatus, PaymentStatus


@pytest.fixture
def client():
    return TestClient(app)


def _booking(**overrides):
    now = datetime.now(timezone.utc)
    fields = dict(
        id=uuid4(),
        user_id="user-1",
        event_id="evt-1",
        ticket_type_id=uuid4(),
        quantity=2,
        amount=Decimal("5000.00"),
        currency="PKR",
        status=BookingStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        payment_intent_id=None,
        cancellation_reason=None,
        expires_at=now + timedelta(minutes=10),
        confirmed_at=None,
        created_at=now,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


class TestBookingRoutes:

    def test_create_booking_returns_202(self, client):
        booking = _booking()
        with patch('ticketflow.api.v1.bookings.create_booking', AsyncMock(return_value=booking)) as mock_create:
            response = client.post(
                "/api/v1/bookings/",
                json={"event_id": "evt-1", "ticket_type_id": str(uuid4()), "quantity": 2, "email": "fan@example.com"},
                headers={"X-User-Id": "user-1"},
            )

        assert response.status_code == 202
        body = response.json()
        assert body["success"] is True
        assert body["data"]["booking_id"] == str(booking.id)
        assert body["data"]["status"] == "PENDING"
        assert mock_create.await_args.kwargs["user_id"] == "user-1"

    def test_create_booking_unknown_ticket_type(self, client):
        with patch('ticketflow.api.v1.bookings.create_booking', AsyncMock(side_effect=TicketTypeNotFound("tt"))):
            response = client.post(
                "/api/v1/bookings/",
                json={"event_id": "evt-1", "ticket_type_id": str(uuid4()), "quantity": 1},
                headers={"X-User-Id": "user-1"},
            )

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_create_booking_validation(self, client):
        response = client.post(
            "/api/v1/bookings/",
            json={"event_id": "evt-1", "ticket_type_id": str(uuid4()), "quantity": 0},
            headers={"X-User-Id": "user-1"},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_create_booking_requires_user(self, client):
        response = client.post(
            "/api/v1/bookings/",
            json={"event_id": "evt-1", "ticket_type_id": str(uuid4()), "quantity": 1},
        )
        assert response.status_code == 422

    def test_get_booking(self, client):
        booking = _booking(status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.SUCCEEDED)
        with patch('ticketflow.api.v1.bookings.get_booking', AsyncMock(return_value=booking)):
            response = client.get(f"/api/v1/bookings/{booking.id}")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "CONFIRMED"
        assert response.json()["data"]["payment_status"] == "SUCCEEDED"

    def test_get_booking_not_found(self, client):
        with patch('ticketflow.api.v1.bookings.get_booking', AsyncMock(return_value=None)):
            response = client.get(f"/api/v1/bookings/{uuid4()}")
        assert response.status_code == 404

    def test_cancel_booking(self, client):
        booking = _booking(status=BookingStatus.CANCELLED, cancellation_reason="cancelled_by_user")
        with patch('ticketflow.api.v1.bookings.cancel_booking', AsyncMock(return_value=booking)) as mock_cancel:
            response = client.post(f"/api/v1/bookings/{booking.id}/cancel")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "CANCELLED"
        mock_cancel.assert_awaited_once_with(booking.id, "cancelled_by_user")

    def test_cancel_terminal_booking_conflicts(self, client):
        error = InvalidBookingTransition("Booking is already in a final state: CONFIRMED.")
        with patch('ticketflow.api.v1.bookings.cancel_booking', AsyncMock(side_effect=error)):
            response = client.post(f"/api/v1/bookings/{uuid4()}/cancel", json={"reason": "nope"})

        assert response.status_code == 409
        assert "final state" in response.json()["error"]["message"]

    def test_cancel_unknown_booking(self, client):
        booking_id = uuid4()
        with patch('ticketflow.api.v1.bookings.cancel_booking', AsyncMock(side_effect=BookingNotFound(booking_id))):
            response = client.post(f"/api/v1/bookings/{booking_id}/cancel")
        assert response.status_code == 404


class TestInventoryRoutes:

    def test_inventory_stock(self, client):
        ticket_type = SimpleNamespace(
            id=uuid4(), event_id="evt-1", name="VIP", total_quantity=50, available_quantity=40,
            reserved_quantity=6, sold_quantity=4, price=Decimal("15000.00"), currency="PKR",
            updated_at=datetime.now(timezone.utc),
        )
        with patch('ticketflow.api.v1.inventory.TicketType.get_or_none', AsyncMock(return_value=ticket_type)):
            response = client.get(f"/api/v1/inventory/{ticket_type.id}")

        assert response.status_code == 200
        assert response.json()["available_quantity"] == 40

    def test_inventory_not_found(self, client):
        with patch('ticketflow.api.v1.inventory.TicketType.get_or_none', AsyncMock(return_value=None)):
            response = client.get(f"/api/v1/inventory/{uuid4()}")
        assert response.status_code == 404

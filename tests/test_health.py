import pytest
import sys
import os

# Add ticketflow to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))


@pytest.mark.asyncio
async def test_health_endpoint():
    """Test health endpoint"""
    from ticketflow.main import app
    from fastapi.testclient import TestClient

    client = TestClient(app)
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint_exposes_workflow_counters():
    from ticketflow.main import app
    from fastapi.testclient import TestClient

    response = TestClient(app).get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "booking_created_total" in response.text
    assert "notification_dead_letter_total" in response.text

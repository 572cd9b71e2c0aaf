import os

import pytest

# Must be in place before app.core.config caches its settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENV_MODE"] = "development"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ.setdefault("PUSH_ENABLED", "true")

ADMIN_TOKEN = os.environ["ADMIN_API_TOKEN"]


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from app.main import app
    from app.services.events import reset_event_broker

    reset_event_broker()
    # Lifespan creates the tables; disposing the engine on exit drops the in-memory database
    with TestClient(app) as test_client:
        yield test_client
    reset_event_broker()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def dosa():
    return {
        "id": "masala-dosa",
        "name": "Masala Dosa",
        "quantity": 2,
        "price": 120.0,
        "quantityId": "full",
        "quantityDescription": "Full",
    }


@pytest.fixture
def coffee():
    return {
        "id": "filter-coffee",
        "name": "Filter Coffee",
        "quantity": 1,
        "price": 40.0,
        "quantityId": "cup",
        "quantityDescription": "Cup",
    }

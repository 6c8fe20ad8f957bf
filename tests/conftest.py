"""
Storefront test configuration and fixtures.

Provides:
- an in-memory Mongo database (mongomock) with the production indexes, wired in through get_db
- a private EventBus per test
- a TestClient with the external LLM / embedding clients switched off
- factories for products, profiles and auth headers
"""

import os

# Set test environment before the app reads it
os.environ["JWT_SECRET"] = "test_secret_key_for_testing_only_32chars!"
os.environ["USD_TO_INR"] = "83"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("ADMIN_EMAIL", None)
os.environ.pop("ADMIN_PASSWORD", None)

from typing import Any, Dict

import mongomock
import pytest
from fastapi.testclient import TestClient

from storefront.auth import token_for
from storefront.chat import get_chat_model
from storefront.database import create_document, ensure_indexes, get_db, to_object_id
from storefront.events import EventBus, get_event_bus
from storefront.knowledge import get_embedder
from storefront.main import app


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def bus():
    return EventBus(heartbeat_interval=0.05)


@pytest.fixture
def client(db, bus):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_embedder] = lambda: None
    app.dependency_overrides[get_chat_model] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()


# =============================================================================
# Data factories
# =============================================================================

_sku_counter = {"n": 0}


@pytest.fixture
def make_product(db):
    def _make(**overrides) -> str:
        _sku_counter["n"] += 1
        data: Dict[str, Any] = {
            "title": f"Product {_sku_counter['n']}",
            "description": "A test product",
            "price_usd": 10.0,
            "price_inr": 830.0,
            "category": "electronics",
            "brand": "Acme",
            "stock": 10,
            "rating": {"average": 4.0, "count": 10},
            "sku": f"TEST-SKU-{_sku_counter['n']:04d}",
            "tags": [],
            "images": [],
            "is_active": True,
            "is_new": False,
            "is_trending": False,
            "is_featured": False,
        }
        data.update(overrides)
        return create_document(db, "product", data)

    return _make


@pytest.fixture
def make_profile(db):
    def _make(email: str = "user@example.com", role: str = "user", **extra) -> Dict[str, Any]:
        pid = create_document(db, "profile", {"email": email, "full_name": email.split("@")[0], "role": role, **extra})
        return db["profile"].find_one({"_id": to_object_id(pid)})

    return _make


@pytest.fixture
def user(make_profile):
    return make_profile("shopper@example.com", "user")


@pytest.fixture
def admin(make_profile):
    return make_profile("admin@example.com", "admin")


@pytest.fixture
def user_headers(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {token_for(admin)}"}

"""
Shared fixtures.

Every test gets its own in-memory Mongo database (mongomock) wired into the
app through the ``get_db`` dependency, so nothing touches a real server.
Stripe and email are patched per test.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import config as app_config
import main
import security
import users
from database import create_document, ensure_indexes, get_db
from schemas import Role


def pytest_configure(config) -> None:
    config.addinivalue_line("markers", "unit: Unit tests (fast, no external dependencies)")


@pytest.fixture
def db():
    database = mongomock.MongoClient()["shop_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _settings(monkeypatch):
    monkeypatch.setattr(app_config, "JWT_SECRET", "test-secret")
    monkeypatch.setattr(app_config, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setattr(app_config, "STRIPE_CURRENCY", "try")
    monkeypatch.setattr(app_config, "TAX_PRICE", 0.0)
    monkeypatch.setattr(app_config, "SHIPPING_PRICE", 0.0)
    monkeypatch.setattr(app_config, "ALLOW_NEGATIVE_STOCK", True)


@pytest.fixture
def make_user(db):
    def _make(email: str = "a@example.com", role: Role = Role.USER, password: str = "secret123", name: str = "Test User") -> Dict[str, Any]:
        return users.create_user(db, name, email, password, role=role)

    return _make


@pytest.fixture
def make_product(db):
    def _make(title: str = "Mug", price: float = 10.0, quantity: int = 5, sold: int = 0) -> Dict[str, Any]:
        product_id = create_document(db, "product", {
            "title": title,
            "price": price,
            "category": "kitchen",
            "quantity": quantity,
            "sold": sold,
            "ratings_average": 0,
            "ratings_quantity": 0,
        })
        return db["product"].find_one({"_id": ObjectId(product_id)})

    return _make


@pytest.fixture
def make_cart(db):
    def _make(user: Dict[str, Any], items, total: Optional[float] = None, after_discount: Optional[float] = None) -> Dict[str, Any]:
        doc = {
            "user_id": str(user["_id"]),
            "items": items,
            "total_cart_price": total if total is not None else sum(i["price"] * i["quantity"] for i in items),
        }
        if after_discount is not None:
            doc["total_price_after_discount"] = after_discount
        res = db["cart"].insert_one(doc)
        return db["cart"].find_one({"_id": res.inserted_id})

    return _make


def auth_header(user: Dict[str, Any]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {security.issue(str(user['_id']))}"}


def stripe_signature(payload: str, secret: str = "whsec_test", timestamp: Optional[int] = None) -> str:
    ts = timestamp or int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_completed_event(cart_id: str, email: str, amount_total: int, metadata: Optional[Dict[str, str]] = None, event_id: str = "evt_1") -> str:
    return json.dumps({
        "id": event_id,
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {"object": {
            "id": "cs_test_1",
            "object": "checkout.session",
            "amount_total": amount_total,
            "client_reference_id": cart_id,
            "customer_email": email,
            "metadata": metadata or {},
        }},
    })

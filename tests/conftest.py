import os
from types import SimpleNamespace

import mongomock
import pytest

os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "storefront_test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_storefront"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_storefront"

# Must be active before database.py builds its MongoClient.
_mongo_patch = mongomock.patch(servers=(("localhost", 27017),))
_mongo_patch.start()

import stripe  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
import main  # noqa: E402
from auth import create_token, hash_password  # noqa: E402
from schemas import Coupon, Product, ProductVariant, User  # noqa: E402

PASSWORD = "password123"
_PASSWORD_HASH = hash_password(PASSWORD)

ADDRESS = {
    "full_name": "Ann Lee",
    "line1": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
}


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    yield


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def db():
    return database.db


def _make_user(email, role="customer", name="Test User", created_at=None):
    payload = User(name=name, email=email, password_hash=_PASSWORD_HASH, role=role).model_dump()
    if created_at is not None:
        payload["created_at"] = created_at
    user_id = database.create_document("user", payload)
    return database.db["user"].find_one({"_id": database.to_object_id(user_id)})


@pytest.fixture
def make_user():
    return _make_user


@pytest.fixture
def admin_headers():
    admin = _make_user("admin@example.com", role="admin", name="Admin")
    return {"Authorization": f"Bearer {create_token(admin)}"}


@pytest.fixture
def customer():
    return _make_user("ann@example.com", name="Ann Lee")


@pytest.fixture
def customer_headers(customer):
    return {"Authorization": f"Bearer {create_token(customer)}"}


@pytest.fixture
def make_product():
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "name": f"Product {counter['n']}",
            "slug": f"product-{counter['n']}",
            "price": 40.0,
            "stock": 10,
            "category": "services",
        }
        fields.update(overrides)
        product_id = database.create_document("product", Product(**fields))
        return database.db["product"].find_one({"_id": database.to_object_id(product_id)})

    return _make


@pytest.fixture
def make_variant():
    def _make(product, **overrides):
        fields = {"product_id": str(product["_id"]), "name": "M", "sku": "SKU-M", "stock": 5,
                  "attributes": {"size": "M"}}
        fields.update(overrides)
        variant_id = database.create_document("productvariant", ProductVariant(**fields))
        return database.db["productvariant"].find_one({"_id": database.to_object_id(variant_id)})

    return _make


@pytest.fixture
def make_coupon():
    def _make(**overrides):
        fields = {"code": "WELCOME10", "discount_type": "PERCENTAGE", "discount_value": 10}
        fields.update(overrides)
        coupon_id = database.create_document("coupon", Coupon(**fields))
        return database.db["coupon"].find_one({"_id": database.to_object_id(coupon_id)})

    return _make


class FakeStripe:
    """Records PaymentIntent/Refund calls and answers retrieve() from a status table."""

    def __init__(self):
        self.created = []
        self.statuses = {}
        self.cancelled = []
        self.refunds = []

    def create(self, **kwargs):
        intent_id = f"pi_{len(self.created) + 1}"
        self.created.append(kwargs)
        self.statuses.setdefault(intent_id, "requires_payment_method")
        return SimpleNamespace(id=intent_id, client_secret=f"{intent_id}_secret")

    def retrieve(self, intent_id):
        return SimpleNamespace(id=intent_id, client_secret=f"{intent_id}_secret",
                               status=self.statuses.get(intent_id, "requires_payment_method"))

    def cancel(self, intent_id, **kwargs):
        self.cancelled.append(intent_id)
        self.statuses[intent_id] = "canceled"
        return self.retrieve(intent_id)

    def refund(self, payment_intent, **kwargs):
        self.refunds.append(payment_intent)
        return SimpleNamespace(id=f"re_{len(self.refunds)}", payment_intent=payment_intent, status="succeeded")


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake.create)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake.retrieve)
    monkeypatch.setattr(stripe.PaymentIntent, "cancel", fake.cancel)
    monkeypatch.setattr(stripe.Refund, "create", fake.refund)
    return fake


@pytest.fixture
def checkout_payload():
    def _payload(items, **overrides):
        body = {
            "customer_name": "Ann Lee",
            "customer_email": "ann@example.com",
            "shipping_address": ADDRESS,
            "items": items,
        }
        body.update(overrides)
        return body

    return _payload

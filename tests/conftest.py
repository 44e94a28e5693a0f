import copy
import json
from datetime import datetime

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from shared.utils import GatewayException, ValidationException, create_access_token
from shared.security_config import limiter
from app.gateway import IntentCreated, IntentState
from app.models import to_document
from app.workflow import Actor, OrderWorkflowService

limiter.enabled = False


# --- In-memory doubles for the Mongo stores ---

class FakeOrders:
    def __init__(self):
        self.docs = {}

    async def create(self, order, session=None):
        doc = to_document(order)
        doc["_id"] = ObjectId()
        self.docs[str(doc["_id"])] = doc
        return self._out(doc)

    async def get(self, order_id, session=None):
        return self._out(self.docs.get(order_id))

    async def get_for_user(self, order_id, user_id):
        doc = self.docs.get(order_id)
        if doc and doc["user_id"] == user_id:
            return self._out(doc)
        return None

    async def list_for_user(self, user_id):
        return [self._out(d) for d in self.docs.values() if d["user_id"] == user_id]

    async def list_all(self):
        return [self._out(d) for d in self.docs.values()]

    async def set_payment_intent(self, order_id, payment_intent_id, session=None):
        self.docs[order_id]["payment_intent_id"] = payment_intent_id

    async def transition(self, order_id, expected, target, session=None):
        doc = self.docs.get(order_id)
        if not doc or doc["payment_status"] not in [s.value for s in expected]:
            return None
        prior = self._out(doc)
        doc["payment_status"] = target.value
        doc["updated_at"] = datetime.utcnow()
        return prior

    async def delete(self, order_id):
        return self.docs.pop(order_id, None) is not None

    @staticmethod
    def _out(doc):
        if doc is None:
            return None
        doc = copy.deepcopy(doc)
        doc["id"] = str(doc["_id"])
        return doc


class FakePayments:
    def __init__(self):
        self.docs = []

    async def record(self, payment, session=None):
        if any(d["stripe_payment_intent_id"] == payment.stripe_payment_intent_id for d in self.docs):
            return False
        self.docs.append(to_document(payment))
        return True

    async def get_by_intent(self, payment_intent_id):
        for doc in self.docs:
            if doc["stripe_payment_intent_id"] == payment_intent_id:
                return doc
        return None

    async def find_by_order_ids(self, order_ids):
        return {d["order_id"]: d for d in self.docs if d["order_id"] in order_ids}


class FakeCarts:
    def __init__(self):
        self.carts = {}

    async def clear(self, user_id):
        return 1 if self.carts.pop(user_id, None) is not None else 0


class FakeUsers:
    def __init__(self):
        self.users = {}

    async def summaries(self, user_ids):
        return {uid: self.users[uid] for uid in user_ids if uid in self.users}


class FakeInventory:
    def __init__(self):
        self.products = {}

    async def decrement(self, items, session=None):
        return self._apply(items, -1)

    async def restock(self, items, session=None):
        return self._apply(items, 1)

    def _apply(self, items, sign):
        skipped = []
        for item in items:
            product = self.products.get(item["product_id"])
            if product is None:
                skipped.append(item["product_id"])
            else:
                product["stock"] += sign * item["quantity"]
        return skipped

    async def catalog_summaries(self, product_ids):
        return {pid: self.products[pid] for pid in product_ids if pid in self.products}


class FakeGateway:
    def __init__(self):
        self.created = []
        self.canceled = []
        self.intents = {}
        self.fail_create = False

    async def create_intent(self, amount, currency, metadata, idempotency_key):
        if self.fail_create:
            raise GatewayException("Could not create payment intent")
        intent_id = f"pi_{len(self.created) + 1}"
        self.created.append({
            "id": intent_id,
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        self.intents[intent_id] = IntentState(id=intent_id, status="requires_payment_method", metadata=metadata)
        return IntentCreated(id=intent_id, client_secret=f"{intent_id}_secret")

    async def retrieve_intent(self, payment_intent_id):
        if payment_intent_id not in self.intents:
            raise ValidationException("Invalid payment intent")
        return self.intents[payment_intent_id]

    async def cancel_intent(self, payment_intent_id):
        self.canceled.append(payment_intent_id)
        self.intents[payment_intent_id].status = "canceled"

    def succeed(self, payment_intent_id):
        self.intents[payment_intent_id].status = "succeeded"

    def parse_event(self, payload, signature):
        if signature != "valid":
            raise ValidationException("Invalid webhook signature")
        return json.loads(payload)


# --- Fixtures ---

P1 = str(ObjectId())
P2 = str(ObjectId())


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def inventory():
    inv = FakeInventory()
    inv.products[P1] = {"_id": P1, "title": "Mug", "image": "mug.png", "stock": 10}
    inv.products[P2] = {"_id": P2, "title": "Tee", "image": "tee.png", "stock": 5}
    return inv


@pytest.fixture
def workflow(gateway, inventory):
    users = FakeUsers()
    users.users["user-1"] = {"id": "user-1", "first_name": "Ada", "last_name": "L", "email": "ada@example.com"}
    carts = FakeCarts()
    carts.carts["user-1"] = {"items": [{"product_id": P1, "quantity": 2}]}
    return OrderWorkflowService(
        orders=FakeOrders(),
        payments=FakePayments(),
        carts=carts,
        users=users,
        inventory=inventory,
        gateway=gateway,
    )


@pytest.fixture
def customer():
    return Actor(user_id="user-1")


@pytest.fixture
def other_customer():
    return Actor(user_id="user-2")


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", role="admin")


def shipping_address():
    return {
        "full_name": "Ada Lovelace",
        "address_line1": "12 Analytical Row",
        "city": "London",
        "postal_code": "N1 9GU",
        "country": "GB",
    }


def order_payload(items=None):
    return {
        "order_items": items or [
            {"product_id": P1, "title": "Mug", "quantity": 2, "price": 10, "total_price": 20},
        ],
        "shipping_address": shipping_address(),
    }


def auth_headers(user_id="user-1", role="customer"):
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(workflow):
    from app.main import app, get_workflow

    app.dependency_overrides[get_workflow] = lambda: workflow
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()

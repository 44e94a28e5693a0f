"""Mongo-backed stores for orders, payment records, carts and user summaries.

Every method takes an optional ``session`` so the workflow can run a group
of writes inside one multi-document transaction when the deployment
supports it.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.models import OrderDB, PaymentDB, PaymentStatus, to_document


def to_oid(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def ref(value: str):
    """Key for a foreign reference: ObjectId when the value parses as one."""
    return to_oid(value) or value


def with_id(doc: Optional[dict]) -> Optional[dict]:
    if doc is not None:
        doc["id"] = str(doc["_id"])
    return doc


class OrderRepository:
    def __init__(self, db):
        self.collection = db.orders

    async def ensure_indexes(self):
        await self.collection.create_index("user_id")
        await self.collection.create_index("created_at")

    async def create(self, order: OrderDB, session=None) -> dict:
        doc = to_document(order)
        result = await self.collection.insert_one(doc, session=session)
        doc["_id"] = result.inserted_id
        return with_id(doc)

    async def get(self, order_id: str, session=None) -> Optional[dict]:
        oid = to_oid(order_id)
        if oid is None:
            return None
        return with_id(await self.collection.find_one({"_id": oid}, session=session))

    async def get_for_user(self, order_id: str, user_id: str) -> Optional[dict]:
        oid = to_oid(order_id)
        if oid is None:
            return None
        return with_id(await self.collection.find_one({"_id": oid, "user_id": user_id}))

    async def list_for_user(self, user_id: str) -> List[dict]:
        cursor = self.collection.find({"user_id": user_id}).sort("created_at", -1)
        return [with_id(doc) async for doc in cursor]

    async def list_all(self) -> List[dict]:
        cursor = self.collection.find({}).sort("created_at", -1)
        return [with_id(doc) async for doc in cursor]

    async def set_payment_intent(self, order_id: str, payment_intent_id: str, session=None):
        await self.collection.update_one(
            {"_id": to_oid(order_id)},
            {"$set": {"payment_intent_id": payment_intent_id, "updated_at": datetime.utcnow()}},
            session=session,
        )

    async def transition(
        self,
        order_id: str,
        expected: Iterable[PaymentStatus],
        target: PaymentStatus,
        session=None,
    ) -> Optional[dict]:
        """Move the order to ``target`` only if its status is one of ``expected``.

        Returns the document as it was before the update, or None when the
        order is missing or another caller already moved it.
        """
        oid = to_oid(order_id)
        if oid is None:
            return None
        doc = await self.collection.find_one_and_update(
            {"_id": oid, "payment_status": {"$in": [s.value for s in expected]}},
            {"$set": {"payment_status": target.value, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.BEFORE,
            session=session,
        )
        return with_id(doc)

    async def delete(self, order_id: str) -> bool:
        result = await self.collection.delete_one({"_id": to_oid(order_id)})
        return result.deleted_count == 1


class PaymentRepository:
    def __init__(self, db):
        self.collection = db.payments

    async def ensure_indexes(self):
        await self.collection.create_index("stripe_payment_intent_id", unique=True)
        await self.collection.create_index("order_id", unique=True)
        await self.collection.create_index("user_id")

    async def record(self, payment: PaymentDB, session=None) -> bool:
        """Insert the record once per intent. Returns False if it already existed."""
        doc = to_document(payment)
        # Set from the upsert filter
        doc.pop("stripe_payment_intent_id")
        try:
            result = await self.collection.update_one(
                {"stripe_payment_intent_id": payment.stripe_payment_intent_id},
                {"$setOnInsert": doc},
                upsert=True,
                session=session,
            )
        except DuplicateKeyError:
            return False
        return result.upserted_id is not None

    async def get_by_intent(self, payment_intent_id: str) -> Optional[dict]:
        return with_id(await self.collection.find_one({"stripe_payment_intent_id": payment_intent_id}))

    async def find_by_order_ids(self, order_ids: List[str]) -> Dict[str, dict]:
        cursor = self.collection.find({"order_id": {"$in": order_ids}})
        return {doc["order_id"]: with_id(doc) async for doc in cursor}


class CartRepository:
    def __init__(self, db):
        self.collection = db.carts

    async def ensure_indexes(self):
        await self.collection.create_index("user_id")

    async def clear(self, user_id: str) -> int:
        result = await self.collection.delete_many({"user_id": user_id})
        return result.deleted_count


class UserRepository:
    """Read-only view of the accounts collection owned by the auth service."""

    def __init__(self, db):
        self.collection = db.users

    async def summaries(self, user_ids: List[str]) -> Dict[str, dict]:
        keys = [ref(uid) for uid in set(user_ids)]
        cursor = self.collection.find(
            {"_id": {"$in": keys}},
            {"first_name": 1, "last_name": 1, "email": 1},
        )
        summaries = {}
        async for doc in cursor:
            uid = str(doc["_id"])
            summaries[uid] = {
                "id": uid,
                "first_name": doc.get("first_name"),
                "last_name": doc.get("last_name"),
                "email": doc.get("email"),
            }
        return summaries

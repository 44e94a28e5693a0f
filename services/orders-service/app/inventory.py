import logging
from typing import Dict, List

from app.repositories import ref

logger = logging.getLogger("orders-service")


class InventoryLedger:
    """Stock mutations against the catalog's ``products`` collection.

    The catalog itself belongs to the products service; this ledger only
    reads title/image and moves the ``stock`` counter.
    """

    def __init__(self, db):
        self.collection = db.products

    async def decrement(self, items: List[dict], session=None) -> List[str]:
        return await self._apply(items, -1, session)

    async def restock(self, items: List[dict], session=None) -> List[str]:
        return await self._apply(items, 1, session)

    async def _apply(self, items: List[dict], sign: int, session=None) -> List[str]:
        """Apply ``sign * quantity`` to each product and return the ids skipped.

        Products removed from the catalog since the order was placed are
        skipped. If an update raises, the deltas already applied are reverted
        before the error propagates.
        """
        applied = []
        skipped = []
        try:
            for item in items:
                delta = sign * item["quantity"]
                result = await self.collection.update_one(
                    {"_id": ref(item["product_id"])},
                    {"$inc": {"stock": delta}},
                    session=session,
                )
                if result.matched_count == 0:
                    logger.warning(
                        f"Product {item['product_id']} not found, stock not adjusted by {delta}"
                    )
                    skipped.append(item["product_id"])
                else:
                    applied.append((item["product_id"], delta))
        except Exception:
            # Inside a transaction the abort undoes everything
            if session is None:
                await self._revert(applied)
            raise
        return skipped

    async def _revert(self, applied):
        for product_id, delta in reversed(applied):
            await self.collection.update_one({"_id": ref(product_id)}, {"$inc": {"stock": -delta}})
            logger.warning(f"Reverted stock change of {delta} on product {product_id}")

    async def catalog_summaries(self, product_ids: List[str]) -> Dict[str, dict]:
        keys = [ref(pid) for pid in set(product_ids)]
        cursor = self.collection.find({"_id": {"$in": keys}}, {"title": 1, "image": 1})
        return {str(doc["_id"]): doc async for doc in cursor}

"""Order lifecycle: submission, payment verification, cancellation and queries.

Status changes go through a compare-and-swap on the order's current payment
status, so only one caller can move an order out of a given state and the
stock adjustments tied to that move are applied exactly once.
"""
import logging
from contextlib import asynccontextmanager
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from pydantic import BaseModel

from shared.utils import (
    ConflictException, ForbiddenException, GatewayException,
    NotFoundException, PaymentNotSuccessfulException, ValidationException,
    settings,
)
from app.gateway import SUCCEEDED
from app.models import OrderDB, OrderItemDB, PaymentDB, PaymentStatus, ShippingAddressDB
from app.schemas import OrderCreate

logger = logging.getLogger("orders-service")

ADMIN_ROLE = "admin"
CANCELABLE = (PaymentStatus.PENDING, PaymentStatus.PAID)


class Actor(BaseModel):
    user_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @classmethod
    def from_claims(cls, claims: dict) -> "Actor":
        return cls(user_id=claims["sub"], role=claims.get("role") or "customer")


SYSTEM_ACTOR = Actor(user_id="system", role=ADMIN_ROLE)


def to_minor_units(amount: Decimal, exponent: int = settings.CURRENCY_MINOR_UNITS) -> int:
    scaled = (amount * (10 ** exponent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(scaled)


class OrderWorkflowService:
    def __init__(self, orders, payments, carts, users, inventory, gateway,
                 client=None, currency: str = settings.PAYMENT_CURRENCY):
        self.orders = orders
        self.payments = payments
        self.carts = carts
        self.users = users
        self.inventory = inventory
        self.gateway = gateway
        # Set only when transactions are enabled
        self.client = client
        self.currency = currency

    @asynccontextmanager
    async def _atomic(self):
        if self.client is None:
            yield None
            return
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    # --- Policy ---

    def _authorize(self, actor: Actor, order: Optional[dict]) -> dict:
        if not order:
            raise NotFoundException("Order not found")
        if order["user_id"] != actor.user_id and not actor.is_admin:
            raise ForbiddenException("Not authorized to modify this order")
        return order

    # --- Submission ---

    async def submit_order(self, actor: Actor, payload: OrderCreate) -> Tuple[dict, str]:
        items = []
        for item in payload.order_items:
            if item.quantity * item.price != item.total_price:
                raise ValidationException(
                    f"Line total for {item.product_id} does not match quantity x price"
                )
            items.append(OrderItemDB(**item.model_dump()))

        total = sum((i.total_price for i in items), Decimal(0))
        order = await self.orders.create(OrderDB(
            user_id=actor.user_id,
            items=items,
            shipping_address=ShippingAddressDB(**payload.shipping_address.model_dump()),
            total_amount=total,
        ))
        order_id = order["id"]
        logger.info("Order created", extra={"order_id": order_id, "user_id": actor.user_id})

        try:
            intent = await self.gateway.create_intent(
                amount=to_minor_units(total),
                currency=self.currency,
                metadata={"orderId": order_id},
                idempotency_key=f"order-{order_id}",
            )
        except GatewayException:
            # Nothing references the order yet
            await self.orders.delete(order_id)
            logger.warning("Order removed after payment intent failure", extra={"order_id": order_id})
            raise

        await self.orders.set_payment_intent(order_id, intent.id)
        order["payment_intent_id"] = intent.id
        await self.carts.clear(actor.user_id)
        return order, intent.client_secret

    # --- Payment ---

    async def verify_payment(self, actor: Actor, payment_intent_id: str) -> str:
        intent = await self.gateway.retrieve_intent(payment_intent_id)
        if intent.status != SUCCEEDED:
            raise PaymentNotSuccessfulException()

        order_id = intent.metadata.get("orderId")
        order = self._authorize(actor, await self.orders.get(order_id) if order_id else None)
        if order.get("payment_intent_id") and order["payment_intent_id"] != payment_intent_id:
            raise ConflictException("Payment intent does not belong to this order")

        log_extra = {"order_id": order_id, "payment_intent_id": payment_intent_id}
        if await self.payments.get_by_intent(payment_intent_id):
            logger.info("Duplicate payment verification ignored", extra=log_extra)
            return "Payment already verified"

        async with self._atomic() as session:
            prior = await self.orders.transition(
                order_id, [PaymentStatus.PENDING], PaymentStatus.PAID, session=session
            )
            if prior is None:
                current = await self.orders.get(order_id, session=session)
                if current and current["payment_status"] == PaymentStatus.PAID.value:
                    logger.info("Duplicate payment verification ignored", extra=log_extra)
                    return "Payment already verified"
                raise ConflictException("Order has been canceled")

            try:
                await self.inventory.decrement(prior["items"], session=session)
                try:
                    recorded = await self.payments.record(PaymentDB(
                        stripe_payment_intent_id=payment_intent_id,
                        order_id=order_id,
                        user_id=prior["user_id"],
                        amount=Decimal(str(prior["total_amount"])),
                        currency=self.currency,
                    ), session=session)
                    if not recorded:
                        raise ConflictException("Payment already recorded for this order")
                except Exception:
                    if session is None:
                        await self.inventory.restock(prior["items"])
                    raise
            except Exception:
                if session is None:
                    reverted = await self.orders.transition(
                        order_id, [PaymentStatus.PAID], PaymentStatus.PENDING
                    )
                    if reverted is None:
                        logger.error("Payment rollback lost the order status to a concurrent change", extra=log_extra)
                    else:
                        logger.error("Payment verification rolled back", extra=log_extra)
                raise

        logger.info("Payment verified", extra=log_extra)
        return "Payment verified successfully"

    # --- Cancellation ---

    async def cancel_order(self, actor: Actor, order_id: str) -> str:
        """Self-service cancellation by the order's owner (or an admin)."""
        if not await self._cancel(actor, order_id):
            raise ValidationException("Order is already canceled")
        return "Order canceled successfully"

    async def cancel_payment(self, actor: Actor, order_id: str) -> str:
        """Administrative reversal: cancel the order and restore its stock."""
        if await self._cancel(actor, order_id):
            return "Order canceled and stock restored"
        return "Order is already canceled"

    async def _cancel(self, actor: Actor, order_id: str) -> bool:
        self._authorize(actor, await self.orders.get(order_id))

        async with self._atomic() as session:
            prior = await self.orders.transition(
                order_id, CANCELABLE, PaymentStatus.CANCELED, session=session
            )
            if prior is None:
                return False
            try:
                skipped = await self.inventory.restock(prior["items"], session=session)
            except Exception:
                if session is None:
                    reverted = await self.orders.transition(
                        order_id, [PaymentStatus.CANCELED], PaymentStatus(prior["payment_status"])
                    )
                    if reverted is None:
                        logger.error(
                            "Cancel rollback lost the order status to a concurrent change",
                            extra={"order_id": order_id},
                        )
                raise

        logger.info(
            f"Order canceled, {len(skipped)} item(s) not restocked",
            extra={"order_id": order_id, "user_id": actor.user_id},
        )
        intent_id = prior.get("payment_intent_id")
        if prior["payment_status"] == PaymentStatus.PENDING.value and intent_id:
            try:
                await self.gateway.cancel_intent(intent_id)
            except GatewayException as e:
                logger.warning(e.detail, extra={"order_id": order_id, "payment_intent_id": intent_id})
        return True

    # --- Queries ---

    async def list_orders_for_user(self, actor: Actor) -> List[dict]:
        return await self.orders.list_for_user(actor.user_id)

    async def list_all_orders(self, actor: Actor) -> List[dict]:
        if not actor.is_admin:
            raise ForbiddenException("Admin role required")
        orders = await self.orders.list_all()
        if not orders:
            raise NotFoundException("Orders not found!")

        order_ids = [o["id"] for o in orders]
        payments = await self.payments.find_by_order_ids(order_ids)
        users = await self.users.summaries([o["user_id"] for o in orders])
        products = await self.inventory.catalog_summaries(
            [item["product_id"] for o in orders for item in o["items"]]
        )

        for order in orders:
            if order["payment_status"] != PaymentStatus.CANCELED.value:
                payment = payments.get(order["id"])
                order["payment_status"] = (
                    payment["payment_status"] if payment else PaymentStatus.PENDING.value
                )
            self._populate(order, users, products)
        return orders

    async def get_order(self, actor: Actor, order_id: str) -> dict:
        order = await self.orders.get_for_user(order_id, actor.user_id)
        if not order:
            raise NotFoundException("Order not found")
        users = await self.users.summaries([order["user_id"]])
        products = await self.inventory.catalog_summaries([i["product_id"] for i in order["items"]])
        return self._populate(order, users, products)

    async def delete_order(self, actor: Actor, order_id: str) -> str:
        self._authorize(actor, await self.orders.get(order_id))
        # Payment records are kept as the financial trail
        await self.orders.delete(order_id)
        logger.info("Order deleted", extra={"order_id": order_id, "user_id": actor.user_id})
        return "Order deleted successfully"

    @staticmethod
    def _populate(order: dict, users: dict, products: dict) -> dict:
        order["user"] = users.get(order["user_id"])
        for item in order["items"]:
            product = products.get(item["product_id"])
            if product:
                item["title"] = product.get("title") or item["title"]
                item["image"] = product.get("image")
        return order

import logging
from typing import Dict

import stripe
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from shared.utils import GatewayException, ValidationException, settings

logger = logging.getLogger("orders-service")

SUCCEEDED = "succeeded"


class IntentCreated(BaseModel):
    id: str
    client_secret: str


class IntentState(BaseModel):
    id: str
    status: str
    metadata: Dict[str, str] = {}


class StripeGateway:
    """Payment intents through the Stripe SDK.

    The SDK is blocking, so calls run in the threadpool. Network retries are
    handled by the SDK; intent creation is keyed so a retried request never
    creates a second charge.
    """

    def __init__(self, api_key: str = settings.STRIPE_SECRET_KEY,
                 max_retries: int = settings.STRIPE_MAX_NETWORK_RETRIES):
        self.api_key = api_key
        stripe.max_network_retries = max_retries

    async def create_intent(self, amount: int, currency: str, metadata: dict,
                            idempotency_key: str) -> IntentCreated:
        try:
            intent = await run_in_threadpool(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=amount,
                currency=currency,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe intent creation failed: {e.user_message or e}")
            raise GatewayException("Could not create payment intent")
        return IntentCreated(id=intent.id, client_secret=intent.client_secret)

    async def retrieve_intent(self, payment_intent_id: str) -> IntentState:
        try:
            intent = await run_in_threadpool(
                stripe.PaymentIntent.retrieve, payment_intent_id, api_key=self.api_key
            )
        except stripe.InvalidRequestError:
            raise ValidationException("Invalid payment intent")
        except stripe.StripeError as e:
            logger.error(f"Stripe intent retrieval failed: {e.user_message or e}")
            raise GatewayException("Could not retrieve payment intent")
        return IntentState(
            id=intent.id,
            status=intent.status,
            metadata=dict(intent.metadata or {}),
        )

    async def cancel_intent(self, payment_intent_id: str):
        try:
            await run_in_threadpool(
                stripe.PaymentIntent.cancel, payment_intent_id, api_key=self.api_key
            )
        except stripe.StripeError as e:
            raise GatewayException(f"Could not cancel payment intent: {e.user_message or e}")

    def parse_event(self, payload: bytes, signature: str) -> dict:
        try:
            event = stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
        except ValueError:
            raise ValidationException("Invalid webhook payload")
        except stripe.SignatureVerificationError:
            raise ValidationException("Invalid webhook signature")
        return event

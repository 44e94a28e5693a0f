from fastapi import FastAPI, Depends, HTTPException, status, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime
from typing import List
import os
import sys

# Add the parent directory to sys.path to resolve shared imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../")))

from shared.utils import (
    get_db_client, settings, require_auth, SuccessResponse, ErrorResponse,
    HealthResponse, AppException
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from app.schemas import (
    OrderCreate, OrderResponse, OrderCreatedResponse, PaymentVerify, PaymentCancel
)
from app.gateway import StripeGateway
from app.inventory import InventoryLedger
from app.repositories import CartRepository, OrderRepository, PaymentRepository, UserRepository
from app.workflow import Actor, OrderWorkflowService, SYSTEM_ACTOR

# Setup Logging
logger = setup_logging(settings.SERVICE_NAME)

app = FastAPI(title="Orders Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=settings.SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]

    orders = OrderRepository(app.mongodb)
    payments = PaymentRepository(app.mongodb)
    carts = CartRepository(app.mongodb)
    # Indexes
    await orders.ensure_indexes()
    await payments.ensure_indexes()
    await carts.ensure_indexes()

    app.state.workflow = OrderWorkflowService(
        orders=orders,
        payments=payments,
        carts=carts,
        users=UserRepository(app.mongodb),
        inventory=InventoryLedger(app.mongodb),
        gateway=StripeGateway(),
        client=app.mongodb_client if settings.MONGO_TRANSACTIONS else None,
    )

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Error Handling ---
@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.detail).model_dump(),
        headers=exc.headers,
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="Validation error", details=details).model_dump(),
    )

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error",
        extra={"request_id": getattr(request.state, "request_id", None)},
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="Internal Server Error").model_dump(),
    )

# --- Dependencies ---
async def get_current_actor(request: Request, claims: dict = Depends(require_auth)) -> Actor:
    actor = Actor.from_claims(claims)
    request.state.user_id = actor.user_id
    return actor

def get_workflow(request: Request) -> OrderWorkflowService:
    return request.app.state.workflow

# --- Endpoints ---

@app.post("/orders", status_code=status.HTTP_201_CREATED,
          response_model=SuccessResponse[OrderCreatedResponse])
@limiter.limit("20/minute")
async def submit_order(
    payload: OrderCreate,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflowService = Depends(get_workflow),
):
    order, client_secret = await workflow.submit_order(actor, payload)
    return SuccessResponse(
        data=OrderCreatedResponse(order=OrderResponse(**order), client_secret=client_secret),
        message="Order created successfully",
    )

@app.post("/orders/verify-payment", response_model=SuccessResponse[dict])
@limiter.limit("30/minute")
async def verify_payment(
    payload: PaymentVerify,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflowService = Depends(get_workflow),
):
    message = await workflow.verify_payment(actor, payload.payment_intent_id)
    return SuccessResponse(message=message)

@app.post("/orders/cancel-payment", response_model=SuccessResponse[dict])
@limiter.limit("30/minute")
async def cancel_payment(
    payload: PaymentCancel,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflowService = Depends(get_workflow),
):
    message = await workflow.cancel_payment(actor, payload.order_id)
    return SuccessResponse(message=message)

@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflowService = Depends(get_workflow),
):
    orders = await workflow.list_orders_for_user(actor)
    return SuccessResponse(data=[OrderResponse(**o) for o in orders])

@app.get("/orders/all", response_model=SuccessResponse[List[OrderResponse]])
async def list_all_orders(
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflowService = Depends(get_workflow),
):
    orders = await workflow.list_all_orders(actor)
    return SuccessResponse(data=[OrderResponse(**o) for o in orders])

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflowService = Depends(get_workflow),
):
    order = await workflow.get_order(actor, order_id)
    return SuccessResponse(data=OrderResponse(**order))

@app.put("/orders/{order_id}/cancel", response_model=SuccessResponse[dict])
@limiter.limit("30/minute")
async def cancel_order(
    order_id: str,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflowService = Depends(get_workflow),
):
    message = await workflow.cancel_order(actor, order_id)
    return SuccessResponse(message=message)

@app.delete("/orders/{order_id}", response_model=SuccessResponse[dict])
async def delete_order(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflowService = Depends(get_workflow),
):
    message = await workflow.delete_order(actor, order_id)
    return SuccessResponse(message=message)

@app.post("/payments/webhook", response_model=SuccessResponse[dict])
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    workflow: OrderWorkflowService = Depends(get_workflow),
):
    payload = await request.body()
    event = workflow.gateway.parse_event(payload, stripe_signature)
    if event["type"] != "payment_intent.succeeded":
        return SuccessResponse(message=f"Ignored event {event['type']}")

    message = await workflow.verify_payment(SYSTEM_ACTOR, event["data"]["object"]["id"])
    return SuccessResponse(message=message)

@app.get("/health", response_model=HealthResponse)
async def health_check():
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service=settings.SERVICE_NAME,
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
    )

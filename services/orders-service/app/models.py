from datetime import datetime
from enum import Enum
from typing import Optional, List
from decimal import Decimal
from pydantic import BaseModel, Field

class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    CANCELED = "Canceled"

class ShippingAddressDB(BaseModel):
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str
    phone: Optional[str] = None

class OrderItemDB(BaseModel):
    product_id: str
    title: str # Snapshot
    quantity: int
    price: Decimal
    total_price: Decimal

class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[OrderItemDB]
    shipping_address: ShippingAddressDB
    total_amount: Decimal
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_intent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

class PaymentDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    stripe_payment_intent_id: str
    payment_status: PaymentStatus = PaymentStatus.PAID
    order_id: str
    user_id: str
    amount: Decimal
    currency: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

def to_document(model: BaseModel) -> dict:
    """Dump a DB model for Mongo: drop an unset ``_id`` and store Decimals as floats."""
    doc = model.model_dump(by_alias=True, mode="python")
    if doc.get("_id") is None:
        doc.pop("_id", None)
    return _floats(doc)

def _floats(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _floats(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_floats(v) for v in value]
    return value

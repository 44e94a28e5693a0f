from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input

from app.models import PaymentStatus, ShippingAddressDB

class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    phone: Optional[str] = None

    @field_validator('*')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderItemCreate(BaseModel):
    product_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., gt=0)
    total_price: Decimal = Field(..., gt=0)

    @field_validator('product_id', 'title')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderCreate(BaseModel):
    order_items: List[OrderItemCreate] = Field(..., min_length=1)
    shipping_address: ShippingAddress

class PaymentVerify(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)

    @field_validator('payment_intent_id')
    def sanitize_intent(cls, v):
        return sanitize_input(v)

class PaymentCancel(BaseModel):
    order_id: str = Field(..., min_length=1)

class UserSummary(BaseModel):
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

class OrderItemResponse(BaseModel):
    product_id: str
    title: str
    quantity: int
    price: Decimal
    total_price: Decimal
    image: Optional[str] = None

class OrderResponse(BaseModel):
    id: str
    user_id: str
    user: Optional[UserSummary] = None
    items: List[OrderItemResponse]
    shipping_address: ShippingAddressDB
    total_amount: Decimal
    payment_status: PaymentStatus
    payment_intent_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

class OrderCreatedResponse(BaseModel):
    order: OrderResponse
    client_secret: str

from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Any, Optional
from decimal import Decimal
import json
from datetime import datetime
from settlement.models import OrderStatus


class LineItem(BaseModel):
    product_id: str = Field(..., example="product-1")
    quantity: int = Field(..., gt=0, example=2)
    name: Optional[str] = None
    vendor_id: Optional[str] = None
    unit_price: Optional[Decimal] = Field(None, ge=0)


class BuyerContact(BaseModel):
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    email: Optional[str] = Field(None, max_length=255, example="buyer@example.com")


class OrderCreate(BaseModel):
    buyer_id: str = Field(..., min_length=1, example="user-123")
    items: List[LineItem] = Field(..., min_length=1)
    subtotal: Decimal = Field(..., ge=0, decimal_places=2, example="1000.00")
    shipping_cost: Decimal = Field(Decimal("0.00"), ge=0, decimal_places=2)
    tax_amount: Decimal = Field(Decimal("0.00"), ge=0, decimal_places=2)
    contact: Optional[BuyerContact] = None
    item_name: Optional[str] = Field(None, max_length=100)


class OrderRead(BaseModel):
    id: str
    payment_reference: str
    buyer_id: str
    line_items: List[LineItem]
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    settled_at: Optional[datetime] = None

    @field_validator('line_items', mode='before')
    @classmethod
    def parse_items(cls, v: Any) -> List[LineItem]:
        if isinstance(v, str):
            return json.loads(v)
        return v

    class Config:
        from_attributes = True


class CallbackUrls(BaseModel):
    return_url: str = Field(..., example="https://shop.example.com/checkout/success")
    cancel_url: str = Field(..., example="https://shop.example.com/checkout/cancel")
    notify_url: str = Field(..., example="https://api.shop.example.com/api/payments/notify")


class PaymentRequestParameters(BaseModel):
    """Fields of a PayFast payment request, in the gateway's documented order."""

    merchant_id: str
    merchant_key: str
    return_url: str
    cancel_url: str
    notify_url: str
    name_first: Optional[str] = None
    name_last: Optional[str] = None
    email_address: Optional[str] = None
    m_payment_id: str
    amount: str
    item_name: str
    item_description: Optional[str] = None
    email_confirmation: Optional[str] = None
    confirmation_address: Optional[str] = None

    def to_fields(self) -> Dict[str, str]:
        return {key: value for key, value in self.model_dump().items() if value is not None}


class PaymentRedirect(BaseModel):
    action_url: str
    form_fields: Dict[str, str]

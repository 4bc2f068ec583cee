"""
Downstream order and its receipt snapshot.

An order created from a split session carries the session's
materialization key; the store enforces uniqueness on it.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from splitbill.models.base import MongoModel, utcnow


SPLIT_BILL_PAYMENT_METHOD = "split bill"


ORDER_STATUS_PENDING = "Pending"


class OrderLine(BaseModel):
    name: str
    quantity: int
    unit_price_cents: int
    subtotal_cents: int


class Order(MongoModel):
    user_id: str  # initiator
    cafeteria_id: Optional[str] = None
    split_session_id: str
    materialization_key: str

    items: List[OrderLine] = []
    subtotal_cents: int
    tax_cents: int = 0
    service_fee_cents: int = 0
    total_cents: int

    payment_method: str = SPLIT_BILL_PAYMENT_METHOD
    status: str = ORDER_STATUS_PENDING
    queue_number: str
    pickup_time: str = "asap"
    paid_at: datetime = Field(default_factory=utcnow)


class OrderReceipt(MongoModel):
    order_id: str
    transaction_id: str
    user_id: str
    cafeteria_id: Optional[str] = None
    cafeteria_name: str
    cafeteria_location: str
    queue_number: str

    items: List[OrderLine] = []
    subtotal_cents: int
    tax_cents: int = 0
    service_fee_cents: int = 0
    total_cents: int

    payment_method: str = SPLIT_BILL_PAYMENT_METHOD
    payment_status: str = "Completed"
    customer_name: str
    customer_email: str = ""

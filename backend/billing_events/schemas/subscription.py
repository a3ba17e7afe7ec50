from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from typing import Optional
from datetime import datetime
from decimal import Decimal


class CamelModel(BaseModel):
    model_config = {"from_attributes": True, "alias_generator": to_camel, "populate_by_name": True}


class PlanInfo(CamelModel):
    id: int
    name: str
    price: Decimal
    interval: str
    currency: str
    stripe_price_id: str
    max_events: int
    display_order: int
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class PaymentInfo(CamelModel):
    id: int
    stripe_invoice_id: str
    amount: Decimal
    currency: str
    status: str
    description: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SubscriptionInfo(CamelModel):
    id: int
    user_id: str
    plan_id: int
    plan: Optional[PlanInfo] = None
    stripe_subscription_id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    payments: list[PaymentInfo] = []

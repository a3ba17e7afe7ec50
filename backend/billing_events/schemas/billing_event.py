"""課金ドメインイベント (ブローカー上のメッセージ形式)"""
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from billing_events.core.exceptions import MalformedMessage


class BillingRoutingKey(str, Enum):
    SUBSCRIPTION_CREATED = "billing.subscription.created"
    SUBSCRIPTION_UPDATED = "billing.subscription.updated"
    SUBSCRIPTION_RENEWED = "billing.subscription.renewed"
    SUBSCRIPTION_CANCELED = "billing.subscription.canceled"
    PAYMENT_SUCCEEDED = "billing.payment.succeeded"
    PAYMENT_FAILED = "billing.payment.failed"


ROUTING_KEYS = tuple(k.value for k in BillingRoutingKey)

CANCELED_STATUS = "canceled"


def map_subscription_status(status: Optional[str]) -> str:
    """Stripeのステータスを active / canceled に集約する。

    past_due / unpaid / incomplete なども active 扱い。
    猶予期間の状態を区別する場合はここだけを変更する。
    """
    return CANCELED_STATUS if status == CANCELED_STATUS else "active"


class BillingEvent(BaseModel):
    """Webhookから正規化したフラットなイベントレコード"""

    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None
    paid_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
    }

    @field_validator("user_id", "plan_id", mode="before")
    @classmethod
    def _stringify_reference(cls, value):
        # 他のproducerが数値IDを送ってくる場合がある
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def to_message_body(self) -> bytes:
        """camelCase の JSON (None のフィールドは省略)

        amount は Decimal のため JSON 文字列 ("42.00") で出力する。
        受信側は文字列・数値 (42.0) のどちらも受け付ける。
        """
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def from_message_body(cls, body: bytes) -> "BillingEvent":
        try:
            data = json.loads(body)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedMessage(f"JSONデコード失敗: {e}") from e
        if not isinstance(data, dict):
            raise MalformedMessage(f"オブジェクト以外のpayload: {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MalformedMessage(f"payload検証失敗: {e.error_count()}件") from e

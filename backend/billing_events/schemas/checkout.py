import urllib.parse
from typing import Optional

from pydantic import field_validator

from billing_events.schemas.subscription import CamelModel


class CheckoutSessionRequest(CamelModel):
    user_id: str
    plan_id: str
    stripe_price_id: Optional[str] = None
    success_url: str
    cancel_url: str
    customer_email: Optional[str] = None
    stripe_customer_id: Optional[str] = None

    @field_validator("user_id", "plan_id", mode="before")
    @classmethod
    def _non_empty(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str) or not value.strip():
            raise ValueError("空の値は指定できません")
        return value.strip()

    @field_validator("success_url", "cancel_url")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        parsed = urllib.parse.urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("不正なURLです")
        return value

    @field_validator("customer_email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and "@" not in value:
            raise ValueError("不正なメールアドレスです")
        return value


class CheckoutSessionResponse(CamelModel):
    session_id: str
    url: Optional[str] = None

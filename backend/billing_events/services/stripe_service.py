"""Stripe API操作サービス (Webhook 署名検証・Checkout Session 作成)"""
import json
from typing import Optional

import stripe

from billing_events.core.config import settings
from billing_events.core.exceptions import (
    InvalidSignature,
    MalformedPayload,
    StripeConfigurationError,
    WebhookConfigurationError,
)
from billing_events.core.logging import get_logger

logger = get_logger(__name__)


def get_webhook_secret() -> str:
    """Stripe Webhook Secret (環境変数)"""
    return settings.STRIPE_WEBHOOK_SECRET


def construct_webhook_event(
    payload: bytes,
    sig_header: str | None,
    secret: str | None,
    tolerance: int | None = None,
) -> dict:
    """Webhook の署名を検証し、イベントを dict として返す

    署名方式: stripe-signature ヘッダーの t=<timestamp>,v1=<HMAC-SHA256("{t}.{payload}")>
    検証に失敗した場合はイベントを生成せずに InvalidSignature を送出する。
    """
    if not secret:
        raise WebhookConfigurationError("STRIPE_WEBHOOK_SECRET が未設定です")
    if not sig_header:
        raise InvalidSignature("stripe-signature ヘッダーがありません")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidSignature("payload が UTF-8 ではありません") from e

    if tolerance is None:
        tolerance = settings.STRIPE_WEBHOOK_TOLERANCE

    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(str(e)) from e

    try:
        event = json.loads(body)
    except ValueError as e:
        raise MalformedPayload(f"JSONデコード失敗: {e}") from e
    if not isinstance(event, dict) or "type" not in event:
        raise MalformedPayload("Stripeイベント形式ではありません")
    return event


def _init_stripe():
    if not settings.STRIPE_SECRET_KEY:
        raise StripeConfigurationError("STRIPE_SECRET_KEY が未設定です")
    stripe.api_key = settings.STRIPE_SECRET_KEY


def create_subscription_checkout_session(
    user_id: str,
    plan_id: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    customer_id: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> tuple[str, Optional[str]]:
    """購読用 Checkout Session を作成し (session_id, url) を返す

    userId / planId は購読の metadata にも付与する。
    customer.subscription.* の Webhook はこの値で購読行の所有者とプランを解決する。
    """
    _init_stripe()
    metadata = {"userId": user_id, "planId": plan_id}
    params = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": user_id,
        "metadata": metadata,
        "subscription_data": {"metadata": dict(metadata)},
    }
    if customer_id:
        params["customer"] = customer_id
    elif customer_email:
        params["customer_email"] = customer_email

    session = stripe.checkout.Session.create(**params)
    logger.info(f"Checkout Session作成: session={session.id}, user_id={user_id}, plan_id={plan_id}")
    return session.id, session.url

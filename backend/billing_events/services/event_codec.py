"""Stripe Webhook payload → 課金ドメインイベント変換"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from billing_events.core.config import settings
from billing_events.core.exceptions import MalformedPayload
from billing_events.core.logging import get_logger
from billing_events.schemas.billing_event import (
    BillingEvent,
    BillingRoutingKey,
    CANCELED_STATUS,
    map_subscription_status,
)

logger = get_logger(__name__)

RoutedEvent = tuple[BillingRoutingKey, BillingEvent]

_CENT = Decimal("0.01")

# 請求書 → 購読ID: 優先順に試す
_INVOICE_SUBSCRIPTION_PATHS = (
    ("subscription",),  # 旧API: 文字列 or 展開済みオブジェクト
    ("parent", "subscription_details", "subscription"),  # 新API
)


# =========================================================
# 値の正規化
# =========================================================

def epoch_to_datetime(value: Any) -> Optional[datetime]:
    """epoch秒 → UTC datetime"""
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def minor_to_amount(value: Any) -> Decimal:
    """最小通貨単位 (セント) → Decimal (小数2桁)"""
    try:
        minor = int(value or 0)
    except (TypeError, ValueError):
        minor = 0
    return (Decimal(minor) / 100).quantize(_CENT)


def normalize_currency(value: Optional[str], default: Optional[str] = None) -> str:
    return (value or default or settings.default_currency).upper()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dig(obj: Any, *path) -> Any:
    for key in path:
        if isinstance(obj, dict):
            obj = obj.get(key)
        elif isinstance(obj, list) and isinstance(key, int):
            obj = obj[key] if len(obj) > key else None
        else:
            return None
    return obj


def _as_id(value: Any) -> Optional[str]:
    """文字列ID / 展開済みオブジェクトの両方からIDを取り出す"""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict) and isinstance(value.get("id"), str) and value["id"]:
        return value["id"]
    return None


def invoice_subscription_id(invoice: dict) -> str:
    """請求書から購読IDを取得 (既知の形式を優先順に試す)"""
    for path in _INVOICE_SUBSCRIPTION_PATHS:
        found = _as_id(_dig(invoice, *path))
        if found:
            return found
    raise MalformedPayload(f"請求書に購読IDがありません: invoice={invoice.get('id')}")


def _subscription_period(subscription: dict) -> tuple[Optional[datetime], Optional[datetime]]:
    """購読の現在期間: 最初のitem → トップレベル (旧API) の順"""
    for source in (_dig(subscription, "items", "data", 0), subscription):
        if not isinstance(source, dict):
            continue
        start = epoch_to_datetime(source.get("current_period_start"))
        end = epoch_to_datetime(source.get("current_period_end"))
        if start or end:
            return start, end
    return None, None


def _subscription_price_id(subscription: dict) -> Optional[str]:
    return _as_id(_dig(subscription, "items", "data", 0, "price"))


# =========================================================
# イベントハンドラ
# =========================================================

def _subscription_event(data: dict) -> BillingEvent:
    if not _as_id(data.get("id")):
        raise MalformedPayload("購読IDがありません")
    metadata = data.get("metadata") or {}
    start, end = _subscription_period(data)
    return BillingEvent(
        user_id=metadata.get("userId"),
        plan_id=metadata.get("planId"),
        stripe_price_id=_subscription_price_id(data),
        stripe_subscription_id=data["id"],
        status=map_subscription_status(data.get("status")),
        current_period_start=start,
        current_period_end=end,
        canceled_at=epoch_to_datetime(data.get("canceled_at")),
        ended_at=epoch_to_datetime(data.get("ended_at")),
    )


def _on_subscription_created(data: dict) -> list[RoutedEvent]:
    return [(BillingRoutingKey.SUBSCRIPTION_CREATED, _subscription_event(data))]


def _on_subscription_updated(data: dict) -> list[RoutedEvent]:
    return [(BillingRoutingKey.SUBSCRIPTION_UPDATED, _subscription_event(data))]


def _on_subscription_deleted(data: dict) -> list[RoutedEvent]:
    if not _as_id(data.get("id")):
        raise MalformedPayload("購読IDがありません")
    event = BillingEvent(
        stripe_subscription_id=data["id"],
        status=CANCELED_STATUS,
        canceled_at=epoch_to_datetime(data.get("canceled_at")) or _now(),
        ended_at=epoch_to_datetime(data.get("ended_at")),
    )
    return [(BillingRoutingKey.SUBSCRIPTION_CANCELED, event)]


def _on_invoice_payment_succeeded(data: dict) -> list[RoutedEvent]:
    subscription_id = invoice_subscription_id(data)
    if not data.get("id"):
        raise MalformedPayload("請求書IDがありません")

    paid_at = epoch_to_datetime(_dig(data, "status_transitions", "paid_at")) or _now()
    events: list[RoutedEvent] = [(
        BillingRoutingKey.PAYMENT_SUCCEEDED,
        BillingEvent(
            stripe_subscription_id=subscription_id,
            stripe_invoice_id=data["id"],
            amount=minor_to_amount(data.get("amount_paid")),
            currency=normalize_currency(data.get("currency")),
            status="paid",
            description=data.get("description"),
            paid_at=paid_at,
        ),
    )]

    # 請求明細に期間があれば更新イベントも発行
    period = _dig(data, "lines", "data", 0, "period") or {}
    start = epoch_to_datetime(period.get("start"))
    end = epoch_to_datetime(period.get("end"))
    if start and end:
        events.append((
            BillingRoutingKey.SUBSCRIPTION_RENEWED,
            BillingEvent(
                stripe_subscription_id=subscription_id,
                status="active",
                current_period_start=start,
                current_period_end=end,
            ),
        ))
    return events


def _on_invoice_payment_failed(data: dict) -> list[RoutedEvent]:
    subscription_id = invoice_subscription_id(data)
    if not data.get("id"):
        raise MalformedPayload("請求書IDがありません")
    event = BillingEvent(
        stripe_subscription_id=subscription_id,
        stripe_invoice_id=data["id"],
        amount=minor_to_amount(data.get("amount_due")),
        currency=normalize_currency(data.get("currency")),
        status="failed",
        description=data.get("description"),
        paid_at=_now(),
    )
    return [(BillingRoutingKey.PAYMENT_FAILED, event)]


def _on_checkout_completed(data: dict) -> list[RoutedEvent]:
    """checkout.session.completed: ログのみ (状態変更は subscription.* で届く)"""
    if data.get("mode") != "subscription":
        return []
    subscription_id = _as_id(data.get("subscription"))
    if not subscription_id:
        return []
    logger.info(f"Checkout完了: session={data.get('id')}, subscription={subscription_id}")
    return []


_HANDLERS: dict[str, Callable[[dict], list[RoutedEvent]]] = {
    "customer.subscription.created": _on_subscription_created,
    "customer.subscription.updated": _on_subscription_updated,
    "customer.subscription.deleted": _on_subscription_deleted,
    "invoice.payment_succeeded": _on_invoice_payment_succeeded,
    "invoice.payment_failed": _on_invoice_payment_failed,
    "checkout.session.completed": _on_checkout_completed,
}


def decode_stripe_event(event: dict) -> list[RoutedEvent]:
    """Stripeイベント → (routing key, BillingEvent) のリスト

    対象外のイベント種別は空リスト。既知の種別で形式が不明な場合は MalformedPayload。
    """
    event_type = event.get("type")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug(f"対象外のStripeイベント: {event_type}")
        return []

    data = _dig(event, "data", "object")
    if not isinstance(data, dict):
        raise MalformedPayload(f"data.object がありません: {event_type}")
    return handler(data)

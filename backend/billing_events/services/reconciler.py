"""課金イベントの購読DBへの反映

重複配信・順序入れ替わりがあっても最終状態が収束するように、
購読は stripe_subscription_id、支払は stripe_invoice_id をキーに冪等に反映する。
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_events.core.config import settings
from billing_events.core.database import SessionLocal
from billing_events.core.exceptions import DuplicateIdempotencyKey, UnresolvableReference
from billing_events.core.logging import get_logger
from billing_events.models.plan import CURRENCIES, Plan
from billing_events.models.payment_sub_history import PaymentSubHistory
from billing_events.models.subscription import Subscription
from billing_events.schemas.billing_event import (
    BillingEvent,
    BillingRoutingKey,
    CANCELED_STATUS,
    map_subscription_status,
)

logger = get_logger(__name__)


# =========================================================
# ヘルパー
# =========================================================

def _to_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """DBにはUTCのnaive datetimeで保存"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_payment_currency(value: Optional[str]) -> str:
    normalized = (value or settings.default_currency).upper()
    if normalized in CURRENCIES:
        return normalized
    return settings.default_currency if settings.default_currency in CURRENCIES else CURRENCIES[0]


def get_subscription_by_stripe_id(db: Session, stripe_subscription_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.stripe_subscription_id == stripe_subscription_id
    ).first()


def resolve_plan(db: Session, plan_id: Optional[str], stripe_price_id: Optional[str]) -> Optional[Plan]:
    """プランID → Stripe Price ID の順で解決"""
    if plan_id and str(plan_id).isdigit():
        plan = db.query(Plan).filter(Plan.id == int(plan_id)).first()
        if plan:
            return plan

    if stripe_price_id:
        plan = db.query(Plan).filter(Plan.stripe_price_id == stripe_price_id).first()
        if plan:
            return plan

    return None


def _require_subscription(db: Session, event: BillingEvent, kind: str) -> Subscription:
    if not event.stripe_subscription_id:
        raise UnresolvableReference(f"{kind}: stripeSubscriptionId がありません")
    sub = get_subscription_by_stripe_id(db, event.stripe_subscription_id)
    if not sub:
        raise UnresolvableReference(
            f"{kind}: 購読が見つかりません stripe_subscription_id={event.stripe_subscription_id}"
        )
    return sub


def _apply_subscription_fields(sub: Subscription, event: BillingEvent):
    sub.status = map_subscription_status(event.status)
    sub.current_period_start = _to_db_datetime(event.current_period_start)
    sub.current_period_end = _to_db_datetime(event.current_period_end)
    sub.canceled_at = _to_db_datetime(event.canceled_at)
    sub.ended_at = _to_db_datetime(event.ended_at)


# =========================================================
# 購読イベント
# =========================================================

def _upsert_subscription(db: Session, event: BillingEvent, plan: Optional[Plan]) -> Subscription:
    """stripe_subscription_id をキーに作成 or 更新

    一意制約で挿入が競合した場合 (別プロセスが先に作成) は更新として適用し直す。
    """
    sub = get_subscription_by_stripe_id(db, event.stripe_subscription_id)
    if sub is None:
        if plan is None:
            raise UnresolvableReference(
                f"プラン不明のため購読を作成できません (planId={event.plan_id}, "
                f"stripePriceId={event.stripe_price_id})"
            )
        sub = Subscription(
            user_id=event.user_id,
            plan_id=plan.id,
            stripe_subscription_id=event.stripe_subscription_id,
        )
        db.add(sub)

    if event.user_id:
        sub.user_id = event.user_id
    if plan is not None:
        sub.plan_id = plan.id
    _apply_subscription_fields(sub, event)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        sub = get_subscription_by_stripe_id(db, event.stripe_subscription_id)
        if sub is None:
            raise
        logger.info(f"購読作成が競合したため更新として適用: {event.stripe_subscription_id}")
        if event.user_id:
            sub.user_id = event.user_id
        if plan is not None:
            sub.plan_id = plan.id
        _apply_subscription_fields(sub, event)
        db.commit()

    db.refresh(sub)
    return sub


def handle_subscription_created(db: Session, event: BillingEvent) -> Subscription:
    """subscription.created: 既存なら更新、無ければ作成"""
    if not event.stripe_subscription_id or not event.user_id:
        raise UnresolvableReference("subscription.created: stripeSubscriptionId / userId がありません")

    plan = resolve_plan(db, event.plan_id, event.stripe_price_id)
    if plan is None:
        raise UnresolvableReference(
            f"subscription.created: プラン不明 (planId={event.plan_id}, stripePriceId={event.stripe_price_id})"
        )

    sub = _upsert_subscription(db, event, plan)
    logger.info(f"購読作成/更新 (subscription.created): {sub.stripe_subscription_id}")
    return sub


def handle_subscription_updated(db: Session, event: BillingEvent) -> Subscription:
    """subscription.updated: 作成と同じupsert。未作成かつ userId 無しは破棄"""
    if not event.stripe_subscription_id:
        raise UnresolvableReference("subscription.updated: stripeSubscriptionId がありません")

    existing = get_subscription_by_stripe_id(db, event.stripe_subscription_id)
    if existing is None and not event.user_id:
        raise UnresolvableReference(
            f"subscription.updated: 購読が無く userId もありません {event.stripe_subscription_id}"
        )

    plan = resolve_plan(db, event.plan_id, event.stripe_price_id)
    sub = _upsert_subscription(db, event, plan)
    logger.info(f"購読更新 (subscription.updated): {sub.stripe_subscription_id}")
    return sub


def handle_subscription_renewed(db: Session, event: BillingEvent) -> Subscription:
    """subscription.renewed: active に戻し期間を更新、キャンセル情報をクリア"""
    sub = _require_subscription(db, event, "subscription.renewed")

    sub.status = "active"
    if event.current_period_start:
        sub.current_period_start = _to_db_datetime(event.current_period_start)
    if event.current_period_end:
        sub.current_period_end = _to_db_datetime(event.current_period_end)
    sub.canceled_at = None
    sub.ended_at = None
    db.commit()

    logger.info(f"購読更新 (renewed): {sub.stripe_subscription_id}")
    return sub


def handle_subscription_canceled(db: Session, event: BillingEvent) -> Subscription:
    """subscription.canceled: 行は削除せずステータス遷移のみ"""
    sub = _require_subscription(db, event, "subscription.canceled")

    sub.status = CANCELED_STATUS
    sub.canceled_at = _to_db_datetime(event.canceled_at) or _utcnow()
    if event.ended_at:
        sub.ended_at = _to_db_datetime(event.ended_at)
    db.commit()

    logger.info(f"購読キャンセル: {sub.stripe_subscription_id}")
    return sub


# =========================================================
# 支払イベント
# =========================================================

def handle_payment_event(db: Session, event: BillingEvent) -> PaymentSubHistory:
    """payment.succeeded / payment.failed: stripe_invoice_id ごとに1行のみ"""
    if not event.stripe_subscription_id or not event.stripe_invoice_id:
        raise UnresolvableReference("payment: stripeSubscriptionId / stripeInvoiceId がありません")

    # 挿入前に確認 (エラー経路を安くする)
    existing = db.query(PaymentSubHistory).filter(
        PaymentSubHistory.stripe_invoice_id == event.stripe_invoice_id
    ).first()
    if existing:
        raise DuplicateIdempotencyKey(f"支払記録は既に存在: invoice={event.stripe_invoice_id}")

    sub = _require_subscription(db, event, "payment")

    payment = PaymentSubHistory(
        subscription_id=sub.id,
        stripe_invoice_id=event.stripe_invoice_id,
        amount=event.amount if event.amount is not None else Decimal("0"),
        currency=_to_payment_currency(event.currency),
        status="failed" if event.status == "failed" else "paid",
        description=event.description,
        paid_at=_to_db_datetime(event.paid_at),
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateIdempotencyKey(f"支払記録の一意制約違反: invoice={event.stripe_invoice_id}") from e

    logger.info(
        f"支払記録: invoice={payment.stripe_invoice_id}, "
        f"subscription={event.stripe_subscription_id}, status={payment.status}"
    )
    return payment


# =========================================================
# ディスパッチ
# =========================================================

_HANDLERS: dict[str, Callable[[Session, BillingEvent], object]] = {
    BillingRoutingKey.SUBSCRIPTION_CREATED.value: handle_subscription_created,
    BillingRoutingKey.SUBSCRIPTION_UPDATED.value: handle_subscription_updated,
    BillingRoutingKey.SUBSCRIPTION_RENEWED.value: handle_subscription_renewed,
    BillingRoutingKey.SUBSCRIPTION_CANCELED.value: handle_subscription_canceled,
    BillingRoutingKey.PAYMENT_SUCCEEDED.value: handle_payment_event,
    BillingRoutingKey.PAYMENT_FAILED.value: handle_payment_event,
}


def handle_billing_event(db: Session, routing_key: str, event: BillingEvent):
    """routing key に応じて反映する

    参照解決不可は警告ログで破棄、冪等キー重複は成功扱い。それ以外の例外は呼び出し元へ。
    """
    handler = _HANDLERS.get(routing_key)
    if handler is None:
        logger.debug(f"対象外のrouting key: {routing_key}")
        return None

    try:
        return handler(db, event)
    except UnresolvableReference as e:
        db.rollback()
        logger.warning(f"イベント破棄 ({routing_key}): {e}")
    except DuplicateIdempotencyKey as e:
        logger.debug(f"重複イベント ({routing_key}): {e}")
    return None


def apply_billing_event(routing_key: str, event: BillingEvent, session_factory=SessionLocal):
    """1イベントを新しいセッションで反映 (Consumerから呼ばれる)"""
    db = session_factory()
    try:
        handle_billing_event(db, routing_key, event)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

"""購読・プランの参照系ロジック"""
from decimal import Decimal

from sqlalchemy.orm import Session, selectinload

from billing_events.models.plan import Plan
from billing_events.models.subscription import Subscription
from billing_events.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PLANS = [
    {"name": "Free", "price": Decimal("0"), "stripe_price_id": "price_free_placeholder", "max_events": 0},
    {"name": "Pro", "price": Decimal("29"), "stripe_price_id": "price_pro_placeholder", "max_events": 2},
    {"name": "Premium", "price": Decimal("199"), "stripe_price_id": "price_premium_placeholder", "max_events": -1},
]


def seed_default_plans(db: Session) -> int:
    """プランが1件も無い場合のみ初期プランを投入"""
    if db.query(Plan).count() > 0:
        return 0

    for order, fields in enumerate(DEFAULT_PLANS):
        db.add(Plan(interval="monthly", currency="EUR", display_order=order, **fields))
    db.commit()
    logger.info(f"初期プラン投入: {len(DEFAULT_PLANS)}件")
    return len(DEFAULT_PLANS)


def list_plans(db: Session) -> list[Plan]:
    return db.query(Plan).order_by(Plan.display_order.asc(), Plan.created_at.asc()).all()


def get_user_subscriptions(db: Session, user_id: str) -> list[Subscription]:
    """ユーザーの購読一覧 (新しい順、プラン・支払履歴付き)"""
    return db.query(Subscription).options(
        selectinload(Subscription.plan),
        selectinload(Subscription.payments),
    ).filter(
        Subscription.user_id == user_id,
    ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()

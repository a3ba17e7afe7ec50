"""購読 Checkout ルーター (billing側)"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from billing_events.core.database import get_db
from billing_events.core.exceptions import StripeConfigurationError
from billing_events.core.logging import get_logger
from billing_events.schemas.checkout import CheckoutSessionRequest, CheckoutSessionResponse
from billing_events.services import stripe_service
from billing_events.services.reconciler import resolve_plan

router = APIRouter(prefix="/api/billing", tags=["checkout"])
logger = get_logger(__name__)


@router.post(
    "/subscriptions/checkout-session",
    response_model=CheckoutSessionResponse,
    response_model_by_alias=True,
)
async def create_subscription_checkout_session(req: CheckoutSessionRequest, db: Session = Depends(get_db)):
    """Stripe Checkout Session 作成 (stripePriceId 省略時はプランから解決)"""
    price_id = req.stripe_price_id
    if not price_id:
        plan = resolve_plan(db, req.plan_id, None)
        if plan is None:
            raise HTTPException(status_code=400, detail="プランが見つかりません")
        price_id = plan.stripe_price_id

    try:
        session_id, url = stripe_service.create_subscription_checkout_session(
            user_id=req.user_id,
            plan_id=req.plan_id,
            price_id=price_id,
            success_url=req.success_url,
            cancel_url=req.cancel_url,
            customer_id=req.stripe_customer_id,
            customer_email=req.customer_email,
        )
    except StripeConfigurationError as e:
        logger.error(f"Stripe設定エラー: {e}")
        raise HTTPException(status_code=500, detail="決済設定が不足しています")
    except Exception as e:
        logger.error(f"Stripe Checkout Session作成失敗: user_id={req.user_id}, plan_id={req.plan_id}, error={e}")
        raise HTTPException(status_code=500, detail="決済ページの作成に失敗しました")

    return CheckoutSessionResponse(session_id=session_id, url=url)

"""購読参照API"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing_events.core.database import get_db
from billing_events.schemas.subscription import SubscriptionInfo
from billing_events.services import subscription_service

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.get("/user/{user_id}", response_model=list[SubscriptionInfo], response_model_by_alias=True)
async def get_user_subscriptions(user_id: str, db: Session = Depends(get_db)):
    """ユーザーの購読一覧 (支払履歴含む)"""
    return subscription_service.get_user_subscriptions(db, user_id)

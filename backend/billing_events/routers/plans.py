"""公開プランAPI"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing_events.core.database import get_db
from billing_events.schemas.subscription import PlanInfo
from billing_events.services import subscription_service

router = APIRouter(prefix="/api/subscriptions", tags=["plans"])


@router.get("/plans", response_model=list[PlanInfo], response_model_by_alias=True)
async def list_plans(db: Session = Depends(get_db)):
    """プラン一覧 (表示順)"""
    return subscription_service.list_plans(db)

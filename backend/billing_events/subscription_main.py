"""subscription側アプリケーション: 課金イベント consume + 購読参照API"""
from contextlib import asynccontextmanager
from fastapi import FastAPI

from billing_events.core.config import settings
from billing_events.core.database import SessionLocal
from billing_events.core.logging import setup_logging, get_logger
from billing_events.routers import health, plans, subscriptions
from billing_events.services import subscription_service
from billing_events.services.event_consumer import EventConsumer

logger = get_logger(__name__)


def _seed_plans():
    db = SessionLocal()
    try:
        subscription_service.seed_default_plans(db)
    except Exception as e:
        logger.error(f"初期プラン投入失敗: {e}")
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG, service="subscription")
    if settings.SEED_DEFAULT_PLANS:
        _seed_plans()
    consumer = EventConsumer()
    app.state.consumer = consumer
    app.state.broker = consumer
    consumer.start()
    logger.info("subscription アプリケーション起動")
    yield
    await consumer.stop()
    logger.info("subscription アプリケーション終了")


app = FastAPI(
    title=f"{settings.SITE_NAME} (subscription)",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# ルーター登録
app.include_router(health.router)
app.include_router(plans.router)
app.include_router(subscriptions.router)

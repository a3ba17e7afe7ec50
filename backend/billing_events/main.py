"""billing側アプリケーション: Stripe Webhook 受信 + 課金イベント publish + Checkout Session 作成"""
from contextlib import asynccontextmanager
from fastapi import FastAPI

from billing_events.core.config import settings
from billing_events.core.logging import setup_logging, get_logger
from billing_events.routers import checkout, health, webhooks_stripe
from billing_events.services.event_publisher import EventPublisher

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG, service="billing")
    publisher = EventPublisher()
    app.state.publisher = publisher
    app.state.broker = publisher
    publisher.start()
    logger.info("billing アプリケーション起動")
    yield
    await publisher.stop()
    logger.info("billing アプリケーション終了")


app = FastAPI(
    title=f"{settings.SITE_NAME} (billing)",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# ルーター登録
app.include_router(health.router)
app.include_router(webhooks_stripe.router)
app.include_router(checkout.router)

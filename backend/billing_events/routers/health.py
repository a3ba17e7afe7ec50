from fastapi import APIRouter, Request
from billing_events.core.database import check_db_connection

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check(request: Request):
    """ヘルスチェックエンドポイント"""
    db_ok = check_db_connection()
    broker = getattr(request.app.state, "broker", None)
    broker_ok = broker is not None and broker.is_connected

    status = "ok" if (db_ok and broker_ok) else "degraded"

    return {
        "status": status,
        "db": "connected" if db_ok else "disconnected",
        "broker": broker.state.value if broker is not None else "disabled",
    }

"""Stripe Webhook ルーター (billing側)"""
from fastapi import APIRouter, Request, HTTPException

from billing_events.core.exceptions import InvalidSignature, MalformedPayload, WebhookConfigurationError
from billing_events.services import stripe_service
from billing_events.services.event_codec import decode_stripe_event
from billing_events.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/api/billing/stripe/webhook")
async def stripe_webhook(request: Request):
    """Stripe Webhook エンドポイント (署名検証 → イベント変換 → publish)

    publish はブローカーの応答を待たない。Stripe側のリトライを誘発しないよう即座に返す。
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="stripe-signature ヘッダーがありません")

    try:
        event = stripe_service.construct_webhook_event(
            payload, sig_header, stripe_service.get_webhook_secret()
        )
    except WebhookConfigurationError as e:
        logger.error(f"Stripe webhook設定エラー: {e}")
        raise HTTPException(status_code=500, detail="Webhook設定が不足しています")
    except InvalidSignature as e:
        logger.warning(f"Stripe webhook署名検証失敗: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except MalformedPayload as e:
        # 署名は正しいので再送されても同じ内容。200 で破棄
        logger.warning(f"Stripe webhook payload不正: {e}")
        return {"received": True}

    event_type = event.get("type")
    logger.info(f"Stripe webhook受信: {event_type} ({event.get('id')})")

    try:
        routed = decode_stripe_event(event)
    except MalformedPayload as e:
        # 再送しても形式は変わらないため 200 で破棄
        logger.warning(f"Stripeイベント変換不可: {event_type} - {e}")
        return {"received": True}

    publisher = request.app.state.publisher
    for routing_key, billing_event in routed:
        outcome = publisher.publish(routing_key, billing_event)
        logger.info(
            f"イベント送出: {routing_key.value} ({outcome.value})",
            extra={
                "routing_key": routing_key.value,
                "stripe_event_id": event.get("id"),
                "stripe_subscription_id": billing_event.stripe_subscription_id,
                "stripe_invoice_id": billing_event.stripe_invoice_id,
                "extra_data": {"outcome": outcome.value},
            },
        )

    return {"received": True}

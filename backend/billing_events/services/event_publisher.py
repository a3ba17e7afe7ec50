"""課金イベント Publisher (billing側)"""
import asyncio
from enum import Enum
from typing import Optional

import aio_pika
from aio_pika import DeliveryMode
from aio_pika.abc import AbstractExchange

from billing_events.core.config import settings
from billing_events.core.logging import get_logger
from billing_events.schemas.billing_event import BillingEvent, BillingRoutingKey
from billing_events.services.broker import BrokerClient

logger = get_logger(__name__)


class PublishOutcome(str, Enum):
    ENQUEUED = "enqueued"
    DROPPED_NO_CONNECTION = "dropped_no_connection"


class EventPublisher(BrokerClient):
    """topic exchange へ永続メッセージとして publish する

    publish() は呼び出し元をブロックせず例外も送出しない。
    未接続時はメモリに溜めずに破棄してログを残す。
    """

    role = "publisher"

    def __init__(
        self,
        url: Optional[str] = None,
        exchange_name: Optional[str] = None,
        retry_delay: Optional[float] = None,
    ):
        super().__init__(
            url=url or settings.RABBITMQ_URL,
            exchange_name=exchange_name or settings.RABBITMQ_EXCHANGE,
            retry_delay=settings.retry_delay_seconds if retry_delay is None else retry_delay,
        )
        self._inflight: set[asyncio.Task] = set()

    def publish(self, routing_key: BillingRoutingKey | str, event: BillingEvent) -> PublishOutcome:
        key = getattr(routing_key, "value", routing_key)
        exchange = self._exchange
        if not self.is_connected or exchange is None:
            logger.warning(f"イベント未送信 (channel未接続): {key}")
            return PublishOutcome.DROPPED_NO_CONNECTION

        message = aio_pika.Message(
            body=event.to_message_body(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
        )
        try:
            task = asyncio.get_running_loop().create_task(self._send(exchange, key, message))
        except RuntimeError:
            logger.warning(f"イベント未送信 (イベントループなし): {key}")
            return PublishOutcome.DROPPED_NO_CONNECTION

        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return PublishOutcome.ENQUEUED

    async def _send(self, exchange: AbstractExchange, routing_key: str, message: aio_pika.Message):
        try:
            await exchange.publish(message, routing_key=routing_key)
            logger.info(f"イベント publish: {routing_key}")
        except Exception as e:
            # 接続断は close コールバック経由で再接続される
            logger.error(f"イベント publish 失敗: {routing_key} - {e}")

    async def stop(self):
        # 送信中のものは待つ
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        await super().stop()

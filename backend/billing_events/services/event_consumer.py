"""課金イベント Consumer (subscription側)"""
import asyncio
from typing import Awaitable, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractIncomingMessage

from billing_events.core.config import settings
from billing_events.core.exceptions import MalformedMessage
from billing_events.core.logging import get_logger
from billing_events.schemas.billing_event import BillingEvent, ROUTING_KEYS
from billing_events.services import reconciler
from billing_events.services.broker import BrokerClient

logger = get_logger(__name__)

RETRY_COUNT_HEADER = "x-retry-count"
ORIGINAL_ROUTING_KEY_HEADER = "x-original-routing-key"

EventHandler = Callable[[str, BillingEvent], Awaitable[None]]


async def reconcile_in_thread(routing_key: str, event: BillingEvent):
    """同期DB処理をスレッドで実行 (イベントループを止めない)"""
    await asyncio.to_thread(reconciler.apply_billing_event, routing_key, event)


class EventConsumer(BrokerClient):
    """永続キューから1件ずつ受信し、Reconciler に渡して ack する

    処理に失敗したメッセージも ack する (無限リトライしない)。
    max_retries > 0 の場合のみ、ヘッダーで回数を数えてキューへ再投入し、
    上限到達後は dead letter routing key (設定時) へ送る。
    """

    role = "consumer"

    def __init__(
        self,
        handler: Optional[EventHandler] = None,
        url: Optional[str] = None,
        exchange_name: Optional[str] = None,
        queue_name: Optional[str] = None,
        retry_delay: Optional[float] = None,
        routing_keys: tuple[str, ...] = ROUTING_KEYS,
        prefetch_count: Optional[int] = None,
        max_retries: Optional[int] = None,
        dead_letter_routing_key: Optional[str] = None,
    ):
        super().__init__(
            url=url or settings.RABBITMQ_URL,
            exchange_name=exchange_name or settings.RABBITMQ_EXCHANGE,
            retry_delay=settings.retry_delay_seconds if retry_delay is None else retry_delay,
        )
        self._handler = handler or reconcile_in_thread
        self._queue_name = queue_name or settings.RABBITMQ_SUBSCRIPTION_QUEUE
        self._routing_keys = routing_keys
        self._prefetch_count = settings.RABBITMQ_PREFETCH_COUNT if prefetch_count is None else prefetch_count
        self._max_retries = settings.CONSUMER_MAX_RETRIES if max_retries is None else max_retries
        if dead_letter_routing_key is None:
            dead_letter_routing_key = settings.RABBITMQ_DEAD_LETTER_ROUTING_KEY
        self._dead_letter_routing_key = dead_letter_routing_key or None

    async def _on_connected(self, channel: AbstractChannel, exchange: AbstractExchange):
        # prefetch=1: 同じ購読行への書き込みが並行しないよう逐次処理
        await channel.set_qos(prefetch_count=self._prefetch_count)
        queue = await channel.declare_queue(self._queue_name, durable=True)
        for routing_key in self._routing_keys:
            await queue.bind(exchange, routing_key=routing_key)
        await queue.consume(self._on_message)
        logger.info(f"RabbitMQ consumer 準備完了: queue={self._queue_name}")

    async def _on_message(self, message: AbstractIncomingMessage):
        headers = message.headers or {}
        routing_key = str(headers.get(ORIGINAL_ROUTING_KEY_HEADER) or message.routing_key or "")

        try:
            event = BillingEvent.from_message_body(message.body)
        except MalformedMessage as e:
            logger.error(f"不正なイベント: {routing_key} - {e}")
            await self._dead_letter(message, routing_key)
            await self._ack(message)
            return

        try:
            await self._handler(routing_key, event)
        except Exception as e:
            logger.error(
                f"イベント処理エラー: {routing_key} - {e}",
                exc_info=True,
                extra={"routing_key": routing_key, "stripe_subscription_id": event.stripe_subscription_id},
            )
            await self._handle_failure(message, routing_key)

        await self._ack(message)

    async def _handle_failure(self, message: AbstractIncomingMessage, routing_key: str):
        attempts = _retry_count(message)
        if attempts < self._max_retries:
            await self._requeue(message, routing_key, attempts + 1)
        else:
            if self._max_retries:
                logger.warning(f"リトライ上限到達: {routing_key} ({attempts}/{self._max_retries})")
            await self._dead_letter(message, routing_key)

    async def _requeue(self, message: AbstractIncomingMessage, routing_key: str, attempt: int):
        """自キューにのみ再投入 (他の購読者へは再配信しない)"""
        channel = self._channel
        if channel is None:
            logger.error(f"再投入失敗 (channel未接続): {routing_key}")
            return
        try:
            await channel.default_exchange.publish(
                _copy_message(message, routing_key, attempt),
                routing_key=self._queue_name,
            )
            logger.info(f"イベント再投入: {routing_key} (retry={attempt}/{self._max_retries})")
        except Exception as e:
            logger.error(f"再投入失敗: {routing_key} - {e}")

    async def _dead_letter(self, message: AbstractIncomingMessage, routing_key: str):
        if not self._dead_letter_routing_key:
            return
        exchange = self._exchange
        if exchange is None:
            logger.error(f"dead letter 送信失敗 (channel未接続): {routing_key}")
            return
        try:
            await exchange.publish(
                _copy_message(message, routing_key, _retry_count(message)),
                routing_key=self._dead_letter_routing_key,
            )
            logger.warning(f"dead letter 送信: {routing_key} → {self._dead_letter_routing_key}")
        except Exception as e:
            logger.error(f"dead letter 送信失敗: {routing_key} - {e}")

    async def _ack(self, message: AbstractIncomingMessage):
        try:
            await message.ack()
        except Exception as e:
            # チャネル断: 未ackのメッセージはブローカーが再配信する
            logger.error(f"ack失敗: {e}")


def _retry_count(message: AbstractIncomingMessage) -> int:
    try:
        return int((message.headers or {}).get(RETRY_COUNT_HEADER, 0))
    except (TypeError, ValueError):
        return 0


def _copy_message(message: AbstractIncomingMessage, routing_key: str, attempt: int) -> aio_pika.Message:
    headers = dict(message.headers or {})
    headers[RETRY_COUNT_HEADER] = attempt
    headers[ORIGINAL_ROUTING_KEY_HEADER] = routing_key
    return aio_pika.Message(
        body=message.body,
        headers=headers,
        content_type=message.content_type or "application/json",
        delivery_mode=DeliveryMode.PERSISTENT,
    )

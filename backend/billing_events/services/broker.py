"""RabbitMQ 接続管理 (Publisher / Consumer 共通)

接続状態は Disconnected → Connecting → Connected の状態機械で、
遷移させるのは run() を実行する単一タスクのみ。
切断コールバックはシグナル (asyncio.Event) を立てるだけで、状態は書き換えない。
"""
import asyncio
from contextlib import suppress
from enum import Enum
from typing import Optional

import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange

from billing_events.core.exceptions import BrokerUnavailable
from billing_events.core.logging import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class BrokerClient:
    """1接続 + 1チャネルを所有し、切断時は一定間隔で再接続する"""

    role = "broker"

    def __init__(self, url: str, exchange_name: str, retry_delay: float):
        self._url = url
        self._exchange_name = exchange_name
        self._retry_delay = retry_delay

        self._state = ConnectionState.DISCONNECTED
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None

        self._lost = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and not self._lost.is_set()

    # =========================================================
    # ライフサイクル
    # =========================================================

    def start(self) -> asyncio.Task:
        """バックグラウンドタスクとして接続ループを開始 (二重起動しない)"""
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run(), name=f"rabbitmq-{self.role}")
        return self._task

    async def stop(self):
        """再接続待ちを取り消し、チャネル → 接続の順に閉じる (エラーは無視)"""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._release()
        logger.info(f"RabbitMQ {self.role} 停止")

    async def run(self):
        """接続 → 切断シグナル待ち → 待機 → 再接続 を停止まで繰り返す"""
        while not self._stopping:
            try:
                await self._connect()
            except BrokerUnavailable as e:
                logger.error(f"RabbitMQ {self.role} 接続失敗: {e} ({self._retry_delay}秒後に再接続)")
                await self._release()
                await asyncio.sleep(self._retry_delay)
                continue

            await self._lost.wait()
            await self._release()
            if self._stopping:
                break
            logger.warning(f"RabbitMQ {self.role} 接続断: {self._retry_delay}秒後に再接続")
            await asyncio.sleep(self._retry_delay)

    # =========================================================
    # 接続・解放
    # =========================================================

    async def _connect(self):
        self._state = ConnectionState.CONNECTING
        self._lost.clear()
        try:
            connection = await aio_pika.connect(self._url)
            self._connection = connection
            connection.close_callbacks.add(self._on_closed)

            channel = await connection.channel()
            self._channel = channel
            channel.close_callbacks.add(self._on_closed)

            self._exchange = await channel.declare_exchange(
                self._exchange_name,
                ExchangeType.TOPIC,
                durable=True,
            )
            await self._on_connected(channel, self._exchange)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise BrokerUnavailable(str(e) or type(e).__name__) from e

        self._state = ConnectionState.CONNECTED
        logger.info(f"RabbitMQ {self.role} 接続: exchange={self._exchange_name}")

    async def _on_connected(self, channel: AbstractChannel, exchange: AbstractExchange):
        """接続確立後のトポロジ宣言 (サブクラスで拡張)"""

    def _on_closed(self, sender, exc=None):
        # 古い接続からの通知は無視
        if sender is self._connection or sender is self._channel:
            if exc is not None and not self._stopping:
                logger.error(f"RabbitMQ {self.role} エラー: {exc}")
            self._lost.set()

    async def _release(self):
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        self._exchange = None
        self._state = ConnectionState.DISCONNECTED

        for handle in (channel, connection):
            if handle is None:
                continue
            try:
                await handle.close()
            except Exception as e:
                logger.debug(f"RabbitMQ {self.role} クローズ時エラー (無視): {e}")

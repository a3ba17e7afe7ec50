"""Consumer エントリポイント: python -m billing_events.worker で起動"""
import asyncio
import signal

from billing_events.core.config import settings
from billing_events.core.logging import setup_logging, get_logger
from billing_events.services.event_consumer import EventConsumer

setup_logging(debug=settings.DEBUG, service="worker")
logger = get_logger("worker")


async def main():
    logger.info("Worker起動")
    consumer = EventConsumer()
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    consumer.start()
    await stop_requested.wait()
    logger.info("Worker停止シグナル受信")
    await consumer.stop()
    logger.info("Worker終了")


if __name__ == "__main__":
    asyncio.run(main())

import logging
import sys
import json
from datetime import datetime, timezone
from typing import Optional

# 課金イベント追跡用に extra で渡されたら最上位に出すキー
EVENT_FIELDS = ("routing_key", "stripe_event_id", "stripe_subscription_id", "stripe_invoice_id")


class ServiceFilter(logging.Filter):
    """全レコードにサービス名 (billing / subscription / worker) を付与"""

    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def filter(self, record):
        record.service = self.service
        return True


class JSONFormatter(logging.Formatter):
    """構造化JSONログフォーマッター"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", None),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in EVENT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value
        if hasattr(record, "extra_data"):
            log_entry["data"] = record.extra_data
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        # Decimal / datetime はそのまま文字列化
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False, service: Optional[str] = None):
    """ロギング設定を初期化"""
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    if service:
        handler.addFilter(ServiceFilter(service))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # SQLAlchemy / AMQPクライアントの過剰ログを抑制
    for name in ("sqlalchemy.engine", "aio_pika", "aiormq"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)

import json
import logging
import sys
from decimal import Decimal

from billing_events.core.logging import JSONFormatter, ServiceFilter


def _record(**extra):
    record = logging.LogRecord("billing_events.test", logging.WARNING, __file__, 1, "イベント破棄: %s", ("sub_1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_line_includes_service_and_event_fields():
    record = _record(routing_key="billing.payment.succeeded", stripe_invoice_id="in_1",
                     extra_data={"amount": Decimal("42.00")})
    ServiceFilter("billing").filter(record)

    entry = json.loads(JSONFormatter().format(record))

    assert entry["service"] == "billing"
    assert entry["level"] == "WARNING"
    assert entry["message"] == "イベント破棄: sub_1"
    assert entry["routing_key"] == "billing.payment.succeeded"
    assert entry["stripe_invoice_id"] == "in_1"
    assert "stripe_subscription_id" not in entry
    assert entry["data"] == {"amount": "42.00"}


def test_exception_is_formatted():
    try:
        raise RuntimeError("db down")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    entry = json.loads(JSONFormatter().format(record))

    assert entry["service"] is None
    assert "RuntimeError: db down" in entry["exception"]

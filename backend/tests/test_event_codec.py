import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billing_events.core.exceptions import MalformedMessage, MalformedPayload
from billing_events.schemas.billing_event import BillingEvent, BillingRoutingKey, map_subscription_status
from billing_events.services.event_codec import decode_stripe_event, invoice_subscription_id

PERIOD_START = 1704067200  # 2024-01-01T00:00:00Z
PERIOD_END = 1706745600  # 2024-02-01T00:00:00Z


def _event(event_type: str, obj: dict) -> dict:
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def _subscription(**overrides) -> dict:
    sub = {
        "id": "sub_123",
        "object": "subscription",
        "status": "active",
        "metadata": {"userId": "user-1", "planId": "7"},
        "items": {"data": [{
            "price": {"id": "price_pro_monthly"},
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
        }]},
        "canceled_at": None,
        "ended_at": None,
    }
    sub.update(overrides)
    return sub


def _invoice(**overrides) -> dict:
    inv = {
        "id": "in_123",
        "object": "invoice",
        "subscription": "sub_123",
        "amount_paid": 4200,
        "amount_due": 4200,
        "currency": "eur",
        "description": "Pro monthly",
        "status_transitions": {"paid_at": PERIOD_START + 60},
        "lines": {"data": [{"period": {"start": PERIOD_START, "end": PERIOD_END}}]},
    }
    inv.update(overrides)
    return inv


def _utc(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class TestSubscriptionEvents:

    def test_created_maps_metadata_price_and_period(self):
        routed = decode_stripe_event(_event("customer.subscription.created", _subscription()))

        assert len(routed) == 1
        key, event = routed[0]
        assert key is BillingRoutingKey.SUBSCRIPTION_CREATED
        assert event.user_id == "user-1"
        assert event.plan_id == "7"
        assert event.stripe_price_id == "price_pro_monthly"
        assert event.stripe_subscription_id == "sub_123"
        assert event.status == "active"
        assert event.current_period_start == _utc(PERIOD_START)
        assert event.current_period_end == _utc(PERIOD_END)
        assert event.canceled_at is None

    def test_updated_collapses_processor_status(self):
        routed = decode_stripe_event(_event("customer.subscription.updated", _subscription(status="past_due")))

        key, event = routed[0]
        assert key is BillingRoutingKey.SUBSCRIPTION_UPDATED
        assert event.status == "active"

    def test_updated_keeps_explicit_cancellation(self):
        sub = _subscription(status="canceled", canceled_at=PERIOD_START + 10, ended_at=PERIOD_END)
        _, event = decode_stripe_event(_event("customer.subscription.updated", sub))[0]

        assert event.status == "canceled"
        assert event.canceled_at == _utc(PERIOD_START + 10)
        assert event.ended_at == _utc(PERIOD_END)

    def test_period_falls_back_to_legacy_top_level_fields(self):
        sub = _subscription(
            items={"data": [{"price": {"id": "price_pro_monthly"}}]},
            current_period_start=PERIOD_START,
            current_period_end=PERIOD_END,
        )
        _, event = decode_stripe_event(_event("customer.subscription.created", sub))[0]

        assert event.current_period_start == _utc(PERIOD_START)
        assert event.current_period_end == _utc(PERIOD_END)

    def test_deleted_becomes_canceled_event(self):
        sub = _subscription(status="canceled", canceled_at=PERIOD_START + 5, ended_at=PERIOD_START + 5)
        routed = decode_stripe_event(_event("customer.subscription.deleted", sub))

        assert len(routed) == 1
        key, event = routed[0]
        assert key is BillingRoutingKey.SUBSCRIPTION_CANCELED
        assert event.status == "canceled"
        assert event.canceled_at == _utc(PERIOD_START + 5)
        assert event.ended_at == _utc(PERIOD_START + 5)

    def test_deleted_without_timestamp_uses_now(self):
        before = datetime.now(timezone.utc)
        _, event = decode_stripe_event(_event("customer.subscription.deleted", _subscription()))[0]

        assert event.canceled_at >= before.replace(microsecond=0)
        assert event.ended_at is None

    def test_subscription_without_id_is_malformed(self):
        with pytest.raises(MalformedPayload):
            decode_stripe_event(_event("customer.subscription.created", _subscription(id=None)))


class TestInvoiceEvents:

    def test_payment_succeeded_normalizes_amount_and_currency(self):
        routed = decode_stripe_event(_event("invoice.payment_succeeded", _invoice()))

        key, event = routed[0]
        assert key is BillingRoutingKey.PAYMENT_SUCCEEDED
        assert event.amount == Decimal("42.00")
        assert str(event.amount) == "42.00"
        assert event.currency == "EUR"
        assert event.status == "paid"
        assert event.stripe_invoice_id == "in_123"
        assert event.stripe_subscription_id == "sub_123"
        assert event.paid_at == _utc(PERIOD_START + 60)

    def test_payment_succeeded_with_line_period_also_renews(self):
        routed = decode_stripe_event(_event("invoice.payment_succeeded", _invoice()))

        assert [key for key, _ in routed] == [
            BillingRoutingKey.PAYMENT_SUCCEEDED,
            BillingRoutingKey.SUBSCRIPTION_RENEWED,
        ]
        renewed = routed[1][1]
        assert renewed.stripe_subscription_id == "sub_123"
        assert renewed.status == "active"
        assert renewed.current_period_start == _utc(PERIOD_START)
        assert renewed.current_period_end == _utc(PERIOD_END)

    def test_payment_succeeded_without_period_emits_payment_only(self):
        routed = decode_stripe_event(_event("invoice.payment_succeeded", _invoice(lines={"data": []})))

        assert [key for key, _ in routed] == [BillingRoutingKey.PAYMENT_SUCCEEDED]

    def test_missing_currency_uses_default(self):
        _, event = decode_stripe_event(_event("invoice.payment_succeeded", _invoice(currency=None)))[0]

        assert event.currency == "EUR"

    def test_payment_failed_uses_amount_due(self):
        inv = _invoice(amount_paid=0, amount_due=1999, currency="usd")
        routed = decode_stripe_event(_event("invoice.payment_failed", inv))

        assert len(routed) == 1
        key, event = routed[0]
        assert key is BillingRoutingKey.PAYMENT_FAILED
        assert event.amount == Decimal("19.99")
        assert event.currency == "USD"
        assert event.status == "failed"

    @pytest.mark.parametrize("invoice", [
        {"id": "in_1", "subscription": "sub_legacy"},
        {"id": "in_1", "subscription": {"id": "sub_legacy", "object": "subscription"}},
        {"id": "in_1", "parent": {"subscription_details": {"subscription": "sub_legacy"}}},
    ])
    def test_subscription_reference_known_shapes(self, invoice):
        assert invoice_subscription_id(invoice) == "sub_legacy"

    def test_legacy_field_takes_priority_over_parent(self):
        invoice = {
            "id": "in_1",
            "subscription": "sub_legacy",
            "parent": {"subscription_details": {"subscription": "sub_parent"}},
        }
        assert invoice_subscription_id(invoice) == "sub_legacy"

    def test_invoice_without_subscription_is_malformed(self):
        with pytest.raises(MalformedPayload):
            decode_stripe_event(_event("invoice.payment_succeeded", _invoice(subscription=None)))


class TestOutOfScopeEvents:

    def test_checkout_completed_is_logged_only(self):
        session = {"id": "cs_1", "mode": "subscription", "subscription": "sub_123"}
        assert decode_stripe_event(_event("checkout.session.completed", session)) == []

    def test_unknown_event_type_is_dropped(self):
        assert decode_stripe_event(_event("customer.created", {"id": "cus_1"})) == []

    def test_missing_data_object_is_malformed(self):
        with pytest.raises(MalformedPayload):
            decode_stripe_event({"id": "evt_1", "type": "invoice.payment_failed", "data": {}})


class TestWireFormat:

    def test_message_body_uses_camel_case_fields(self):
        _, event = decode_stripe_event(_event("invoice.payment_succeeded", _invoice()))[0]
        body = json.loads(event.to_message_body())

        assert body["stripeSubscriptionId"] == "sub_123"
        assert body["stripeInvoiceId"] == "in_123"
        assert Decimal(str(body["amount"])) == Decimal("42.00")
        assert "paidAt" in body
        assert "userId" not in body

    def test_numeric_user_and_plan_ids_are_accepted(self):
        event = BillingEvent.from_message_body(b'{"userId": 12, "planId": 3, "stripeSubscriptionId": "sub_1"}')

        assert event.user_id == "12"
        assert event.plan_id == "3"

    def test_numeric_amount_from_other_producers_is_accepted(self):
        event = BillingEvent.from_message_body(b'{"stripeInvoiceId": "in_1", "amount": 42.5}')

        assert event.amount == Decimal("42.5")

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"amount": "abc"}'])
    def test_undecodable_body_is_malformed_message(self, body):
        with pytest.raises(MalformedMessage):
            BillingEvent.from_message_body(body)


@pytest.mark.parametrize("raw, expected", [
    ("canceled", "canceled"),
    ("active", "active"),
    ("past_due", "active"),
    ("unpaid", "active"),
    ("incomplete", "active"),
    (None, "active"),
])
def test_status_mapping(raw, expected):
    assert map_subscription_status(raw) == expected

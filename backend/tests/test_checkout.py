from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe
from fastapi.testclient import TestClient

from billing_events.core.config import settings
from billing_events.core.database import get_db
from billing_events.main import app

CHECKOUT_URL = "/api/billing/subscriptions/checkout-session"


@pytest.fixture
def client(db, monkeypatch):
    def _override_get_db():
        yield db

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_dummy")
    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def session_create():
    create = MagicMock(return_value=SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1"))
    with patch.object(stripe.checkout.Session, "create", create):
        yield create


def _request(**overrides):
    body = {
        "userId": "user-1",
        "planId": "1",
        "stripePriceId": "price_pro_monthly",
        "successUrl": "https://app.example.com/billing/success",
        "cancelUrl": "https://app.example.com/billing/cancel",
    }
    body.update(overrides)
    return body


def test_creates_subscription_session_with_owner_metadata(client, session_create):
    response = client.post(CHECKOUT_URL, json=_request(customerEmail="user@example.com"))

    assert response.status_code == 200
    assert response.json() == {"sessionId": "cs_test_1", "url": "https://checkout.stripe.com/c/cs_test_1"}

    params = session_create.call_args.kwargs
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_pro_monthly", "quantity": 1}]
    assert params["client_reference_id"] == "user-1"
    assert params["metadata"] == {"userId": "user-1", "planId": "1"}
    assert params["subscription_data"] == {"metadata": {"userId": "user-1", "planId": "1"}}
    assert params["customer_email"] == "user@example.com"
    assert "customer" not in params
    assert stripe.api_key == "sk_test_dummy"


def test_existing_customer_takes_precedence_over_email(client, session_create):
    response = client.post(CHECKOUT_URL, json=_request(stripeCustomerId="cus_1", customerEmail="user@example.com"))

    assert response.status_code == 200
    params = session_create.call_args.kwargs
    assert params["customer"] == "cus_1"
    assert "customer_email" not in params


def test_price_is_resolved_from_plan_when_omitted(client, session_create, plan):
    body = _request(planId=str(plan.id))
    del body["stripePriceId"]

    response = client.post(CHECKOUT_URL, json=body)

    assert response.status_code == 200
    assert session_create.call_args.kwargs["line_items"] == [{"price": plan.stripe_price_id, "quantity": 1}]


def test_unknown_plan_without_price_is_rejected(client, session_create):
    body = _request(planId="999")
    del body["stripePriceId"]

    response = client.post(CHECKOUT_URL, json=body)

    assert response.status_code == 400
    session_create.assert_not_called()


@pytest.mark.parametrize("overrides", [
    {"userId": "  "},
    {"successUrl": "not-a-url"},
    {"cancelUrl": "ftp://example.com/cancel"},
    {"customerEmail": "no-at-sign"},
])
def test_invalid_request_is_rejected(client, session_create, overrides):
    response = client.post(CHECKOUT_URL, json=_request(**overrides))

    assert response.status_code == 422
    session_create.assert_not_called()


def test_missing_secret_key_is_server_error(client, session_create, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")

    response = client.post(CHECKOUT_URL, json=_request())

    assert response.status_code == 500
    session_create.assert_not_called()


def test_stripe_failure_is_server_error(client, session_create):
    session_create.side_effect = stripe.InvalidRequestError("No such price", param="line_items")

    response = client.post(CHECKOUT_URL, json=_request())

    assert response.status_code == 500

"""
Admin endpoint tests (X-Admin-Token).
"""

from unittest.mock import AsyncMock

import pytest

from payments_api.db.models import SubscriptionAuditLog
from payments_api.errors import PaymentGatewayError

ADMIN_TOKEN = "test-admin-token-abcdef"
SUSPEND = "/admin/academies/academy_1/subscription/suspend"
REINSTATE = "/admin/academies/academy_1/subscription/reinstate"


@pytest.fixture
def gateway(app) -> AsyncMock:
    gateway = AsyncMock()
    gateway.charge_billing_key.return_value = {}
    gateway.cancel_payment.return_value = {"cancellation": {"status": "SUCCEEDED"}}
    app.state.subscription_service.gateway = gateway
    return gateway


@pytest.fixture
def active_subscription(gateway, client) -> dict:
    response = client.post(
        "/v1/academies/academy_1/subscription/checkout",
        json={"plan_tier": "pro", "billing_key": "bk_1"},
    )
    assert response.status_code == 201
    return response.json()


def test_missing_token_rejected(client):
    response = client.post(SUSPEND, json={"reason": "fraud"})

    assert response.status_code == 422


def test_wrong_token_rejected(client):
    response = client.post(SUSPEND, json={"reason": "fraud"}, headers={"X-Admin-Token": "nope"})

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Header"
    assert response.json()["detail"] == "Invalid X-Admin-Token"


def test_unconfigured_token_is_server_error(app, client, settings):
    app.state.settings = settings.model_copy(update={"admin_token": None})

    response = client.post(SUSPEND, json={"reason": "fraud"}, headers={"X-Admin-Token": ADMIN_TOKEN})

    assert response.status_code == 500


def test_suspend_and_reinstate(client, active_subscription, db_session):
    headers = {"X-Admin-Token": ADMIN_TOKEN}

    suspended = client.post(SUSPEND, json={"reason": "chargeback"}, headers=headers)
    assert suspended.status_code == 200
    assert suspended.json()["status"] == "suspended"
    assert suspended.json()["suspended_reason"] == "chargeback"

    # free limits apply while suspended
    limits = client.get("/v1/academies/academy_1/usage/limits").json()
    assert limits["plan_tier"] == "free"
    assert limits["subscription_active"] is False

    reinstated = client.post(REINSTATE, headers=headers)
    assert reinstated.status_code == 200
    assert reinstated.json()["status"] == "active"

    audit = db_session.query(SubscriptionAuditLog).order_by(SubscriptionAuditLog.id).all()
    assert [entry.event_type for entry in audit] == ["checkout", "suspend", "reinstate"]
    assert audit[1].actor == "admin@testclient"


def test_blank_reason_rejected(client, active_subscription):
    response = client.post(SUSPEND, json={"reason": "   "}, headers={"X-Admin-Token": ADMIN_TOKEN})

    assert response.status_code == 400


def test_suspend_free_subscription_conflicts(client):
    response = client.post(SUSPEND, json={"reason": "fraud"}, headers={"X-Admin-Token": ADMIN_TOKEN})

    assert response.status_code == 409


def _refund_path(invoice_id: int) -> str:
    return f"/admin/invoices/{invoice_id}/refund"


def test_full_refund(client, gateway, active_subscription, db_session):
    invoice = active_subscription["invoice"]

    response = client.post(
        _refund_path(invoice["id"]),
        json={"reason": "duplicate signup"},
        headers={"X-Admin-Token": ADMIN_TOKEN},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "refunded"
    assert body["refunded_amount"] == invoice["amount"]
    assert body["refund_reason"] == "duplicate signup"
    assert gateway.cancel_payment.await_args.kwargs["payment_id"] == invoice["payment_id"]

    audit = db_session.query(SubscriptionAuditLog).order_by(SubscriptionAuditLog.id).all()
    assert audit[-1].event_type == "invoice_refunded"
    assert audit[-1].actor == "admin@testclient"


def test_partial_refund_then_second_refund_conflicts(client, gateway, active_subscription):
    invoice_id = active_subscription["invoice"]["id"]
    headers = {"X-Admin-Token": ADMIN_TOKEN}

    partial = client.post(
        _refund_path(invoice_id), json={"reason": "outage credit", "amount": 10000}, headers=headers
    )
    assert partial.status_code == 200
    assert partial.json()["status"] == "partially_refunded"
    assert partial.json()["refunded_amount"] == 10000

    again = client.post(_refund_path(invoice_id), json={"reason": "again"}, headers=headers)
    assert again.status_code == 409
    assert gateway.cancel_payment.await_count == 1


def test_refund_amount_above_invoice_rejected(client, gateway, active_subscription):
    invoice = active_subscription["invoice"]

    response = client.post(
        _refund_path(invoice["id"]),
        json={"reason": "typo", "amount": invoice["amount"] + 1},
        headers={"X-Admin-Token": ADMIN_TOKEN},
    )

    assert response.status_code == 400
    gateway.cancel_payment.assert_not_awaited()


def test_refund_unknown_invoice(client, gateway):
    response = client.post(
        _refund_path(424242), json={"reason": "missing"}, headers={"X-Admin-Token": ADMIN_TOKEN}
    )

    assert response.status_code == 404
    assert response.json()["error_code"] == "INVOICE_NOT_FOUND"


def test_refund_refused_by_portone(client, gateway, active_subscription):
    gateway.cancel_payment.side_effect = PaymentGatewayError("NOT_CANCELLABLE", status_code=409)
    invoice_id = active_subscription["invoice"]["id"]

    response = client.post(
        _refund_path(invoice_id), json={"reason": "late request"}, headers={"X-Admin-Token": ADMIN_TOKEN}
    )

    assert response.status_code == 402
    assert response.json()["detail"] == "NOT_CANCELLABLE"
    invoices = client.get("/v1/academies/academy_1/invoices").json()
    assert invoices[0]["status"] == "paid"


def test_refund_requires_admin_token(client, active_subscription):
    response = client.post(
        _refund_path(active_subscription["invoice"]["id"]),
        json={"reason": "x"},
        headers={"X-Admin-Token": "nope"},
    )

    assert response.status_code == 401

"""
Webhook endpoint contract tests.

Covers:
1. Signed Settlement.Settled → 200 processed, row stored as SETTLED
2. Tampered body / stale timestamp / missing headers → 401 (never 500)
3. Invalid JSON / unknown event / wrong endpoint → 400
4. Duplicate webhook-id → 200 already_processed, zero side effects
5. Secret unset → 500 WEBHOOK_PROVIDER_MISCONFIG with Retry-After
6. Side effects: invoice confirmed by settlement, alert on Payout.Failed
7. Interrupted processing never leaves the delivery unclaimable
8. Verification-failure alerts are throttled per endpoint and reason
"""

import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from payments_api.db.models import Invoice, Payout, Settlement, WebhookEvent

SETTLED_EVENT = {
    "type": "Settlement.Settled",
    "data": {"settlementId": "s1", "partnerId": "p1", "status": "SETTLED"},
}


def _raw(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


def _post(client, path, raw, headers):
    return client.post(path, content=raw, headers=headers)


def test_signed_settlement_is_processed(client, sign, db_session):
    raw = _raw(SETTLED_EVENT)

    response = _post(client, "/webhooks/settlements", raw, sign(raw, webhook_id="test-settlement-123"))

    assert response.status_code == 200
    assert response.json() == {"status": "processed"}

    settlement = db_session.get(Settlement, "s1")
    assert settlement.status == "SETTLED"
    assert settlement.partner_id == "p1"
    assert settlement.source == "webhook"

    event = db_session.query(WebhookEvent).filter_by(webhook_id="test-settlement-123").one()
    assert event.status == "done"
    assert event.event_type == "Settlement.Settled"


def test_status_taken_from_event_type_when_absent(client, sign, db_session):
    payload = {
        "type": "Settlement.InProcess",
        "data": {"settlementId": "s2", "partnerId": "p1"},
    }
    raw = _raw(payload)

    response = _post(client, "/webhooks/settlements", raw, sign(raw))

    assert response.status_code == 200
    assert db_session.get(Settlement, "s2").status == "IN_PROCESS"


def test_tampered_body_rejected(client, sign, notifier, db_session):
    raw = _raw(SETTLED_EVENT)
    headers = sign(raw)
    tampered = raw.replace(b'"p1"', b'"p2"')

    response = _post(client, "/webhooks/settlements", tampered, headers)

    assert response.status_code == 401
    assert response.headers["content-type"].startswith("application/problem+json")
    body = response.json()
    assert body["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert body["kind"] == "settlement"
    assert db_session.get(Settlement, "s1") is None
    notifier.webhook_verification_failed.assert_awaited_once_with("settlement", "SIGNATURE_MISMATCH")


def test_replayed_delivery_rejected(client, sign):
    raw = _raw(SETTLED_EVENT)
    headers = sign(raw, timestamp=int(time.time()) - 301)

    response = _post(client, "/webhooks/settlements", raw, headers)

    assert response.status_code == 401
    assert response.json()["detail"] == "webhook-timestamp outside the replay window"


def test_missing_headers_rejected(client):
    response = client.post(
        "/webhooks/settlements",
        content=_raw(SETTLED_EVENT),
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 401


def test_invalid_json_rejected(client, sign):
    raw = b"{not json"

    response = _post(client, "/webhooks/settlements", raw, sign(raw))

    assert response.status_code == 400
    assert response.json()["error_code"] == "WEBHOOK_INVALID_JSON"


def test_unknown_event_type_rejected(client, sign):
    raw = _raw({"type": "Payment.Paid", "data": {"paymentId": "pay_1"}})

    response = _post(client, "/webhooks/settlements", raw, sign(raw))

    assert response.status_code == 400
    assert response.json()["error_code"] == "WEBHOOK_INVALID_PAYLOAD"


def test_event_on_wrong_endpoint_rejected(client, sign):
    raw = _raw(SETTLED_EVENT)

    response = _post(client, "/webhooks/payouts", raw, sign(raw))

    assert response.status_code == 400
    assert response.json()["error_code"] == "WEBHOOK_EVENT_KIND_MISMATCH"


def test_duplicate_delivery_has_no_side_effects(client, sign, db_session):
    first = _raw(SETTLED_EVENT)
    assert _post(client, "/webhooks/settlements", first, sign(first, webhook_id="msg_dup")).json() == {
        "status": "processed"
    }

    # same id, different content: still a duplicate
    second = _raw(
        {"type": "Settlement.Canceled", "data": {"settlementId": "s1", "partnerId": "p1"}}
    )
    response = _post(client, "/webhooks/settlements", second, sign(second, webhook_id="msg_dup"))

    assert response.status_code == 200
    assert response.json() == {"status": "already_processed"}
    db_session.expire_all()
    assert db_session.get(Settlement, "s1").status == "SETTLED"
    assert db_session.query(WebhookEvent).count() == 1


def test_missing_secret_is_server_misconfiguration(app, client, sign, settings):
    app.state.settings = settings.model_copy(update={"portone_webhook_secret": None})
    raw = _raw(SETTLED_EVENT)

    response = _post(client, "/webhooks/settlements", raw, sign(raw))

    assert response.status_code == 500
    assert response.headers["Retry-After"] == "60"
    assert response.json()["error_code"] == "WEBHOOK_PROVIDER_MISCONFIG"


def test_out_of_order_delivery_does_not_regress(client, sign, db_session):
    settled = _raw(SETTLED_EVENT)
    scheduled = _raw(
        {"type": "Settlement.Scheduled", "data": {"settlementId": "s1", "partnerId": "p1"}}
    )

    _post(client, "/webhooks/settlements", settled, sign(settled, webhook_id="msg_a"))
    response = _post(client, "/webhooks/settlements", scheduled, sign(scheduled, webhook_id="msg_b"))

    assert response.json() == {"status": "processed"}
    db_session.expire_all()
    assert db_session.get(Settlement, "s1").status == "SETTLED"


def test_settlement_confirms_matching_invoice(client, sign, db_session):
    db_session.add(
        Invoice(
            academy_id="academy_1",
            payment_id="pay_42",
            amount=50000,
            currency="KRW",
            status="pending",
            due_date=datetime(2025, 3, 1, tzinfo=timezone.utc),
        )
    )
    db_session.commit()

    payload = {
        "type": "Settlement.Settled",
        "data": {"settlementId": "s42", "partnerId": "p1", "paymentId": "pay_42"},
    }
    raw = _raw(payload)
    response = _post(client, "/webhooks/settlements", raw, sign(raw))

    assert response.status_code == 200
    db_session.expire_all()
    invoice = db_session.query(Invoice).filter_by(payment_id="pay_42").one()
    assert invoice.status == "paid"
    assert invoice.paid_at is not None


def test_failed_payout_alerts(client, sign, notifier, db_session):
    payload = {
        "type": "Payout.Failed",
        "data": {
            "payoutId": "po1",
            "partnerId": "p1",
            "amount": 120000,
            "failureReason": "Invalid account",
        },
    }
    raw = _raw(payload)

    response = _post(client, "/webhooks/payouts", raw, sign(raw))

    assert response.status_code == 200
    payout = db_session.get(Payout, "po1")
    assert payout.status == "FAILED"
    assert payout.failure_reason == "Invalid account"
    notifier.payout_failed.assert_awaited_once()


def test_request_id_echoed(client, sign):
    raw = _raw(SETTLED_EVENT)
    headers = sign(raw)
    headers["X-Request-ID"] = "req-abc-123"

    response = _post(client, "/webhooks/settlements", raw, headers)

    assert response.headers["X-Request-ID"] == "req-abc-123"


class _WorkerKilled(BaseException):
    """Stands in for task cancellation: not an Exception subclass."""


def _event_status(db_session, webhook_id):
    db_session.expire_all()
    return db_session.query(WebhookEvent).filter_by(webhook_id=webhook_id).one().status


def test_interrupted_processing_releases_claim(client, sign, db_session):
    raw = _raw(SETTLED_EVENT)
    headers = sign(raw, webhook_id="msg_interrupted")

    with patch(
        "payments_api.routers.webhooks._apply_event",
        AsyncMock(side_effect=_WorkerKilled()),
    ), pytest.raises(BaseException):
        _post(client, "/webhooks/settlements", raw, headers)

    assert _event_status(db_session, "msg_interrupted") == "failed"

    response = _post(client, "/webhooks/settlements", raw, headers)

    assert response.json() == {"status": "processed"}
    assert _event_status(db_session, "msg_interrupted") == "done"
    assert db_session.get(Settlement, "s1").status == "SETTLED"


def test_unreleased_claim_reclaimed_after_lease(client, sign, db_session):
    raw = _raw(SETTLED_EVENT)
    headers = sign(raw, webhook_id="msg_stuck")

    with patch(
        "payments_api.routers.webhooks._apply_event",
        AsyncMock(side_effect=RuntimeError("boom")),
    ), patch(
        "payments_api.routers.webhooks.mark_dedup_failed",
        side_effect=OperationalError("UPDATE webhook_events", {}, Exception("connection lost")),
    ):
        response = _post(client, "/webhooks/settlements", raw, headers)

    assert response.status_code == 500
    assert response.json()["error_code"] == "WEBHOOK_INTERNAL_ERROR"
    assert _event_status(db_session, "msg_stuck") == "processing"

    # Inside the lease the row still looks in flight
    assert _post(client, "/webhooks/settlements", raw, headers).json() == {"status": "already_processed"}

    db_session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.webhook_id == "msg_stuck")
        .values(last_seen_at=datetime.now(timezone.utc) - timedelta(hours=1))
    )
    db_session.commit()

    response = _post(client, "/webhooks/settlements", raw, headers)

    assert response.json() == {"status": "processed"}
    assert _event_status(db_session, "msg_stuck") == "done"


def test_verification_alerts_throttled(client, sign, notifier):
    raw = _raw(SETTLED_EVENT)
    tampered = raw.replace(b'"p1"', b'"p2"')

    for n in range(5):
        response = _post(client, "/webhooks/settlements", tampered, sign(raw, webhook_id=f"msg_forged_{n}"))
        assert response.status_code == 401

    notifier.webhook_verification_failed.assert_awaited_once_with("settlement", "SIGNATURE_MISMATCH")

    # A different endpoint or reason has its own window
    _post(client, "/webhooks/payouts", tampered, sign(raw))
    _post(client, "/webhooks/settlements", raw, {"Content-Type": "application/json"})

    assert notifier.webhook_verification_failed.await_count == 3

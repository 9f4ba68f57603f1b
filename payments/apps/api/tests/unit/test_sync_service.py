"""Unit tests for the reconciliation sync.

PortOne is faked with httpx.MockTransport; the store is in-memory SQLite.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from payments_api.billing.portone import PortOneClient
from payments_api.billing.sync_service import SyncService
from payments_api.db.models import Payout, Settlement
from payments_api.db.repo_ledger import SettlementFacts, get_settlement, upsert_settlement

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _settlement_item(n: int, status: str = "SETTLED") -> dict:
    return {
        "id": f"set_{n:03d}",
        "partnerId": "partner_1",
        "paymentId": f"pay_{n:03d}",
        "status": status,
        "orderAmount": 10000,
        "settlementAmount": 9500,
        "settlementCurrency": "KRW",
        "settlementDate": "2025-03-01",
    }


def _payout_item(n: int, status: str = "SUCCEEDED") -> dict:
    return {
        "id": f"po_{n:03d}",
        "partnerId": "partner_1",
        "status": status,
        "amount": 50000,
        "currency": "KRW",
    }


class FakePortOne:
    """Serves canned pages per path and records every request body."""

    def __init__(self, settlements=None, payouts=None, fail_paths=()):
        self.pages = {
            "/platform/partner-settlements": settlements or [],
            "/platform/payouts": payouts or [],
        }
        self.fail_paths = set(fail_paths)
        self.requests: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.url.params["requestBody"])
        self.requests.append({"path": request.url.path, "body": body})

        if request.url.path in self.fail_paths:
            return httpx.Response(503, json={"message": "maintenance"})

        pages = self.pages[request.url.path]
        number = body["page"]["number"]
        items = pages[number] if number < len(pages) else []
        total = sum(len(page) for page in pages)
        return httpx.Response(
            200,
            json={
                "items": items,
                "page": {"number": number, "size": body["page"]["size"], "totalCount": total},
            },
        )

    def client(self) -> PortOneClient:
        return PortOneClient("test_api_secret", transport=httpx.MockTransport(self.handler))


def _service(fake: FakePortOne, session_factory, notifier, **kwargs) -> SyncService:
    return SyncService(fake.client(), session_factory, notifier, clock=lambda: NOW, **kwargs)


@pytest.mark.asyncio
async def test_malformed_items_counted_not_fatal(session_factory, notifier, db_session):
    items = [_settlement_item(n) for n in range(8)]
    items.insert(3, {"id": "set_bad_1", "status": "SETTLED"})  # no partnerId
    items.insert(7, {"id": "set_bad_2", "partnerId": "partner_1", "status": "EXPLODED"})
    fake = FakePortOne(settlements=[items])

    result = await _service(fake, session_factory, notifier).sync_all()

    assert result.success is True
    assert result.settlements.synced == 8
    assert result.settlements.errors == 2
    assert db_session.query(Settlement).count() == 8


@pytest.mark.asyncio
async def test_non_object_items_counted_per_item(session_factory, notifier, db_session):
    items = [_settlement_item(n) for n in range(9)]
    items.insert(4, None)
    fake = FakePortOne(settlements=[items])

    result = await _service(fake, session_factory, notifier).sync_all()

    assert result.success is True
    assert result.settlements.upstream_error is None
    assert result.settlements.synced == 9
    assert result.settlements.errors == 1
    assert db_session.query(Settlement).count() == 9


@pytest.mark.asyncio
async def test_scalar_and_list_items_counted_per_item(session_factory, notifier, db_session):
    fake = FakePortOne(payouts=[[_payout_item(1), "po_002", 17, [_payout_item(3)], _payout_item(4)]])

    result = await _service(fake, session_factory, notifier).sync_all()

    assert result.payouts.synced == 2
    assert result.payouts.errors == 3
    assert db_session.query(Payout).count() == 2


@pytest.mark.asyncio
async def test_pages_until_short_page(session_factory, notifier, db_session):
    pages = [
        [_settlement_item(n) for n in range(0, 2)],
        [_settlement_item(n) for n in range(2, 4)],
        [_settlement_item(4)],
    ]
    fake = FakePortOne(settlements=pages)

    result = await _service(fake, session_factory, notifier, page_limit=2).sync_all()

    assert result.settlements.synced == 5
    assert result.settlements.pages == 3
    assert db_session.query(Settlement).count() == 5


@pytest.mark.asyncio
async def test_request_window_and_page_size(session_factory, notifier):
    fake = FakePortOne()
    since = datetime(2025, 2, 1, tzinfo=timezone.utc)

    await _service(fake, session_factory, notifier).sync_all(since=since, limit=500)

    first = fake.requests[0]["body"]
    assert first["page"] == {"number": 0, "size": 100}
    assert first["filter"]["criteria"]["timestampRange"] == {
        "from": "2025-02-01T00:00:00Z",
        "until": "2025-03-01T12:00:00Z",
    }


@pytest.mark.asyncio
async def test_default_lookback_window(session_factory, notifier):
    fake = FakePortOne()

    await _service(fake, session_factory, notifier, lookback_days=7).sync_all()

    window = fake.requests[0]["body"]["filter"]["criteria"]["timestampRange"]
    assert window["from"] == "2025-02-22T12:00:00Z"


@pytest.mark.asyncio
async def test_max_pages_caps_the_run(session_factory, notifier):
    pages = [[_settlement_item(n)] for n in range(5)]
    fake = FakePortOne(settlements=pages)

    result = await _service(fake, session_factory, notifier, page_limit=1, max_pages=2).sync_all()

    assert result.settlements.synced == 2
    assert result.settlements.pages == 2


@pytest.mark.asyncio
async def test_upstream_failure_reported_but_other_kind_runs(session_factory, notifier, db_session):
    fake = FakePortOne(
        payouts=[[_payout_item(1)]],
        fail_paths={"/platform/partner-settlements"},
    )

    result = await _service(fake, session_factory, notifier).sync_all()

    assert result.success is False
    assert result.settlements.upstream_error is not None
    assert result.payouts.synced == 1
    assert db_session.query(Payout).count() == 1


@pytest.mark.asyncio
async def test_sync_never_regresses_webhook_state(session_factory, notifier, db_session):
    upsert_settlement(
        db_session,
        SettlementFacts(settlement_id="set_000", partner_id="partner_1", status="PAID_OUT", source="webhook"),
    )
    db_session.commit()
    fake = FakePortOne(settlements=[[_settlement_item(0, status="SCHEDULED")]])

    result = await _service(fake, session_factory, notifier).sync_all()

    assert result.settlements.synced == 1
    db_session.expire_all()
    row = get_settlement(db_session, "set_000")
    assert row.status == "PAID_OUT"
    assert row.settlement_amount == 9500


@pytest.mark.asyncio
async def test_failed_payout_alerts_once(session_factory, notifier):
    fake = FakePortOne(payouts=[[_payout_item(1, status="FAILED")]])
    service = _service(fake, session_factory, notifier)

    await service.sync_all()
    await service.sync_all()

    notifier.payout_failed.assert_awaited_once()
    payout = notifier.payout_failed.await_args.args[0]
    assert payout.payout_id == "po_001"

"""Unit tests for the PortOne REST client (httpx.MockTransport)."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from payments_api.billing.portone import PortOneClient, UnconfiguredChargeGateway
from payments_api.errors import PaymentGatewayError, PortOneAPIError

SINCE = datetime(2025, 2, 1, tzinfo=timezone.utc)
UNTIL = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _client(handler) -> PortOneClient:
    return PortOneClient(
        "secret_abc",
        store_id="store-1",
        transport=httpx.MockTransport(handler),
    )


def test_secret_required():
    with pytest.raises(ValueError, match="PORTONE_API_SECRET"):
        PortOneClient(None)


@pytest.mark.asyncio
async def test_list_settlements_sends_auth_and_request_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.url.params["requestBody"])
        return httpx.Response(200, json={"items": [{"id": "s1"}], "page": {"totalCount": 1}})

    page = await _client(handler).list_settlements(page=2, size=50, since=SINCE, until=UNTIL)

    assert seen["auth"] == "PortOne secret_abc"
    assert seen["path"] == "/platform/partner-settlements"
    assert seen["body"]["page"] == {"number": 2, "size": 50}
    assert page.items == [{"id": "s1"}]
    assert page.page.total_count == 1


@pytest.mark.asyncio
async def test_list_non_2xx_raises_api_error():
    client = _client(lambda request: httpx.Response(401, json={"type": "UNAUTHORIZED"}))

    with pytest.raises(PortOneAPIError) as exc_info:
        await client.list_payouts(since=SINCE, until=UNTIL)

    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_list_transport_error_raises_api_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PortOneAPIError) as exc_info:
        await _client(handler).list_payouts(since=SINCE, until=UNTIL)

    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_list_unexpected_shape_raises_api_error():
    client = _client(lambda request: httpx.Response(200, json={"items": "nope"}))

    with pytest.raises(PortOneAPIError):
        await client.list_settlements(since=SINCE, until=UNTIL)


@pytest.mark.asyncio
async def test_charge_billing_key_posts_payment():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"payment": {"pgTxId": "tx_1"}})

    result = await _client(handler).charge_billing_key(
        payment_id="subscription_1_1700000000000_abcd1234",
        billing_key="bk_live_1",
        order_name="Pro subscription",
        amount=150000,
        customer_name="Hana Academy",
    )

    assert result == {"payment": {"pgTxId": "tx_1"}}
    assert seen["method"] == "POST"
    assert seen["path"] == "/payments/subscription_1_1700000000000_abcd1234/billing-key"
    assert seen["body"]["amount"] == {"total": 150000}
    assert seen["body"]["storeId"] == "store-1"
    assert seen["body"]["customer"] == {"name": {"full": "Hana Academy"}}


@pytest.mark.asyncio
async def test_charge_declined_carries_short_reason():
    def handler(request):
        return httpx.Response(400, json={"type": "CARD_DECLINED", "message": "Insufficient funds"})

    with pytest.raises(PaymentGatewayError) as exc_info:
        await _client(handler).charge_billing_key(
            payment_id="p1", billing_key="bk", order_name="x", amount=1000
        )

    assert exc_info.value.status_code == 400
    assert exc_info.value.reason == "CARD_DECLINED: Insufficient funds"


@pytest.mark.asyncio
async def test_charge_unreachable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(PaymentGatewayError) as exc_info:
        await _client(handler).charge_billing_key(
            payment_id="p1", billing_key="bk", order_name="x", amount=1000
        )

    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_unconfigured_gateway_always_fails():
    with pytest.raises(PaymentGatewayError) as exc_info:
        await UnconfiguredChargeGateway().charge_billing_key(payment_id="p1", amount=1)

    assert exc_info.value.status_code == 503

"""PortOne API client (platform reconciliation reads, billing-key charges, refunds).

API Reference:
- Platform partner settlements: GET /platform/partner-settlements?requestBody=<json>
- Platform payouts:             GET /platform/payouts?requestBody=<json>
- Billing-key payment:          POST /payments/{paymentId}/billing-key
- Payment cancellation:         POST /payments/{paymentId}/cancel

Auth header: "Authorization: PortOne <API secret>".
Every call carries its own timeout; nothing here retries.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import httpx

from payments_api.errors import PaymentGatewayError, PortOneAPIError
from payments_api.schemas import PlatformPage
from payments_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)


def _iso(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


class PortOneClient:
    """Async PortOne REST client.

    transport is injectable (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        api_secret: Optional[str],
        *,
        base_url: str = "https://api.portone.io",
        store_id: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_secret:
            raise ValueError(
                "PORTONE_API_SECRET is required. Set it in environment configuration."
            )
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.store_id = store_id
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"PortOne {self.api_secret}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Platform reconciliation reads
    # ------------------------------------------------------------------

    async def _list(
        self,
        path: str,
        *,
        page: int,
        size: int,
        since: datetime,
        until: datetime,
        statuses: Optional[list[str]] = None,
    ) -> PlatformPage:
        criteria: dict[str, Any] = {
            "timestampRange": {"from": _iso(since), "until": _iso(until)},
        }
        filter_body: dict[str, Any] = {"criteria": criteria}
        if statuses:
            filter_body["statuses"] = statuses

        request_body = {"page": {"number": page, "size": size}, "filter": filter_body}

        try:
            async with self._client() as client:
                response = await client.get(
                    path,
                    params={"requestBody": json.dumps(request_body, separators=(",", ":"))},
                    headers=self._headers(),
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error(
                "PORTONE_LIST_FAILED",
                extra={"path": path, "page": page, "status_code": status_code},
            )
            raise PortOneAPIError(
                f"PortOne API returned HTTP {status_code} for {path}", status_code=status_code
            ) from exc
        except httpx.RequestError as exc:
            logger.error(
                "PORTONE_LIST_UNREACHABLE",
                extra={"path": path, "page": page, "error_type": type(exc).__name__},
            )
            raise PortOneAPIError(f"PortOne API unreachable for {path}") from exc
        except ValueError as exc:
            raise PortOneAPIError(f"PortOne API returned a non-JSON body for {path}") from exc

        try:
            return PlatformPage.model_validate(payload)
        except ValueError as exc:
            raise PortOneAPIError(f"PortOne API returned an unexpected page shape for {path}") from exc

    async def list_settlements(
        self,
        *,
        page: int = 0,
        size: int = 100,
        since: datetime,
        until: datetime,
        statuses: Optional[list[str]] = None,
    ) -> PlatformPage:
        """Fetch one page of partner settlements updated in [since, until]."""
        return await self._list(
            "/platform/partner-settlements",
            page=page, size=size, since=since, until=until, statuses=statuses,
        )

    async def list_payouts(
        self,
        *,
        page: int = 0,
        size: int = 100,
        since: datetime,
        until: datetime,
        statuses: Optional[list[str]] = None,
    ) -> PlatformPage:
        """Fetch one page of payouts updated in [since, until]."""
        return await self._list(
            "/platform/payouts",
            page=page, size=size, since=since, until=until, statuses=statuses,
        )

    # ------------------------------------------------------------------
    # Billing-key charge
    # ------------------------------------------------------------------

    async def charge_billing_key(
        self,
        *,
        payment_id: str,
        billing_key: str,
        order_name: str,
        amount: int,
        currency: str = "KRW",
        customer_name: Optional[str] = None,
    ) -> dict:
        """Charge a stored billing key once.

        Returns:
            PortOne payment response dict

        Raises:
            PaymentGatewayError: Non-2xx response or transport failure
        """
        body: dict[str, Any] = {
            "billingKey": billing_key,
            "orderName": order_name,
            "amount": {"total": amount},
            "currency": currency,
        }
        if customer_name:
            body["customer"] = {"name": {"full": customer_name}}
        if self.store_id:
            body["storeId"] = self.store_id

        path = f"/payments/{quote(payment_id, safe='')}/billing-key"

        try:
            async with self._client() as client:
                response = await client.post(path, json=body, headers=self._headers())
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            reason = _error_reason(exc.response)
            logger.warning(
                "PORTONE_CHARGE_REJECTED",
                extra={"payment_id": payment_id, "status_code": status_code, "reason": reason},
            )
            raise PaymentGatewayError(reason, status_code=status_code) from exc
        except httpx.RequestError as exc:
            logger.error(
                "PORTONE_CHARGE_UNREACHABLE",
                extra={"payment_id": payment_id, "error_type": type(exc).__name__},
            )
            raise PaymentGatewayError("Payment gateway unreachable") from exc
        except ValueError as exc:
            raise PaymentGatewayError("Payment gateway returned a non-JSON body") from exc

        logger.info(
            "PORTONE_CHARGE_SUCCEEDED",
            extra={"payment_id": payment_id, "amount": amount, "currency": currency},
        )
        return result


    # ------------------------------------------------------------------
    # Cancellation (refund)
    # ------------------------------------------------------------------

    async def cancel_payment(
        self,
        *,
        payment_id: str,
        reason: str,
        amount: Optional[int] = None,
        current_cancellable_amount: Optional[int] = None,
    ) -> dict:
        """Cancel a payment in full, or partially when amount is given.

        current_cancellable_amount lets PortOne reject a partial cancel when the
        payment has changed since the caller read it.

        Returns:
            PortOne cancellation response dict

        Raises:
            PaymentGatewayError: Non-2xx response or transport failure
        """
        body: dict[str, Any] = {"reason": reason}
        if amount is not None:
            body["amount"] = amount
        if current_cancellable_amount is not None:
            body["currentCancellableAmount"] = current_cancellable_amount
        if self.store_id:
            body["storeId"] = self.store_id

        path = f"/payments/{quote(payment_id, safe='')}/cancel"

        try:
            async with self._client() as client:
                response = await client.post(path, json=body, headers=self._headers())
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            reason_text = _error_reason(exc.response)
            logger.warning(
                "PORTONE_CANCEL_REJECTED",
                extra={"payment_id": payment_id, "status_code": status_code, "reason": reason_text},
            )
            raise PaymentGatewayError(reason_text, status_code=status_code) from exc
        except httpx.RequestError as exc:
            logger.error(
                "PORTONE_CANCEL_UNREACHABLE",
                extra={"payment_id": payment_id, "error_type": type(exc).__name__},
            )
            raise PaymentGatewayError("Payment gateway unreachable") from exc
        except ValueError as exc:
            raise PaymentGatewayError("Payment gateway returned a non-JSON body") from exc

        logger.info(
            "PORTONE_CANCEL_SUCCEEDED",
            extra={"payment_id": payment_id, "amount": amount},
        )
        return result


def _error_reason(
response: httpx.Response) -> str:
    """Short, sanitized reason from a PortOne error body (never the full body)."""
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        code = body.get("type") or body.get("code")
        message = body.get("message")
        parts = [str(p) for p in (code, message) if p]
        if parts:
            return sanitize_str(": ".join(parts))[:200]
    return f"HTTP {response.status_code}"


class UnconfiguredChargeGateway:
    """Stand-in when PORTONE_API_SECRET is unset: every charge or refund fails as unavailable."""

    async def charge_billing_key(self, *, payment_id: str, **_: Any) -> dict:
        logger.error("PORTONE_CHARGE_UNCONFIGURED", extra={"payment_id": payment_id})
        raise PaymentGatewayError("Payment gateway is not configured", status_code=503)

    async def cancel_payment(self, *, payment_id: str, **_: Any) -> dict:
        logger.error("PORTONE_CANCEL_UNCONFIGURED", extra={"payment_id": payment_id})
        raise PaymentGatewayError("Payment gateway is not configured", status_code=503)


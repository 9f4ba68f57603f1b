"""Operational alerts (payout failures, webhook verification failures).

Every alert is logged. With SLACK_WEBHOOK_URL configured it is also posted to
Slack. Delivery failures are logged and swallowed so an alert can never fail
the webhook or sync that raised it.
"""

import logging
import time
from typing import Callable, Optional, Protocol

import httpx

from payments_api.db.models import Payout

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    async def payout_failed(self, payout: Payout) -> None: ...

    async def webhook_verification_failed(self, kind: str, reason: str) -> None: ...

    async def billing_charge_failed(self, academy_id: str, amount: int, reason: str) -> None: ...


class LoggingNotifier:
    """Log-only dispatcher (default; used when Slack is not configured)."""

    async def payout_failed(self, payout: Payout) -> None:
        logger.error(
            "ALERT_PAYOUT_FAILED",
            extra={
                "alert": "payout_failed",
                "payout_id": payout.payout_id,
                "partner_id": payout.partner_id,
                "amount": payout.amount,
                "currency": payout.currency,
                "failure_reason": payout.failure_reason,
            },
        )

    async def webhook_verification_failed(self, kind: str, reason: str) -> None:
        logger.warning(
            "ALERT_WEBHOOK_VERIFICATION_FAILED",
            extra={"alert": "webhook_verification_failed", "kind": kind, "reason": reason},
        )

    async def billing_charge_failed(self, academy_id: str, amount: int, reason: str) -> None:
        logger.warning(
            "ALERT_BILLING_CHARGE_FAILED",
            extra={
                "alert": "billing_charge_failed",
                "academy_id": academy_id,
                "amount": amount,
                "reason": reason,
            },
        )


class SlackNotifier(LoggingNotifier):
    """Logs, then posts a short message to a Slack incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    async def _post(self, text: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json={"text": text})
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "ALERT_DELIVERY_FAILED",
                extra={"channel": "slack", "error_type": type(exc).__name__},
            )

    async def payout_failed(self, payout: Payout) -> None:
        await super().payout_failed(payout)
        await self._post(
            f":rotating_light: Payout failed: {payout.payout_id} "
            f"(partner {payout.partner_id}, {payout.amount:,} {payout.currency})"
            f" reason: {payout.failure_reason or 'unknown'}"
        )

    async def webhook_verification_failed(self, kind: str, reason: str) -> None:
        await super().webhook_verification_failed(kind, reason)
        await self._post(f":warning: {kind} webhook verification failed: {reason}")

    async def billing_charge_failed(self, academy_id: str, amount: int, reason: str) -> None:
        await super().billing_charge_failed(academy_id, amount, reason)
        await self._post(
            f":credit_card: Subscription charge failed for academy {academy_id} "
            f"({amount:,} KRW): {reason}"
        )


def build_notifier(slack_webhook_url: Optional[str]) -> NotificationDispatcher:
    if slack_webhook_url:
        return SlackNotifier(slack_webhook_url)
    return LoggingNotifier()


class AlertThrottle:
    """At most one alert per key per window, counted in-process.

    Keys must come from a bounded set (endpoint kind + verification reason
    code) since nothing is ever evicted. Alerts dropped inside a window are
    counted and reported with the next one that goes out.
    """

    def __init__(self, window_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._last_sent: dict[str, float] = {}
        self._suppressed: dict[str, int] = {}

    def allow(self, key: str) -> tuple[bool, int]:
        """Returns (send, suppressed_since_last_send)."""
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self.window_seconds:
            self._suppressed[key] = self._suppressed.get(key, 0) + 1
            return False, 0
        self._last_sent[key] = now
        return True, self._suppressed.pop(key, 0)

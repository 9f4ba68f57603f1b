"""PortOne webhook handlers (settlements, payouts).

Both endpoints share one flow: raw body → signature → tagged-union parse →
dedup gate on webhook-id → monotonic upsert → side effects.

Webhook error taxonomy (what the sender should do next):
  (A) Invalid JSON / unknown event shape / wrong endpoint → 400 (do not retry)
  (B) Missing headers, stale timestamp, signature mismatch → 401 (do not retry)
  (C) Our misconfig (no webhook secret)                  → 500 WEBHOOK_PROVIDER_MISCONFIG
  (D) Storage/processing error after verification         → 500 WEBHOOK_INTERNAL_ERROR
  500 is ONLY for (C)(D). Signature mismatch is NEVER 500.
  Duplicate webhook-id → 200 already_processed, zero side effects.
"""

import json as _json
import logging
from datetime import datetime, timezone
from typing import Any, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from payments_api.billing.notifications import AlertThrottle, NotificationDispatcher
from payments_api.billing.signature import SignatureVerifier
from payments_api.billing.webhook_dedup import (
    mark_dedup_done,
    mark_dedup_failed,
    try_acquire_dedup,
)
from payments_api.config.env import Settings
from payments_api.context import request_id_var, webhook_id_var
from payments_api.db.repo_ledger import (
    SETTLEMENT_RANK,
    PayoutFacts,
    SettlementFacts,
    get_payout,
    upsert_payout,
    upsert_settlement,
)
from payments_api.db.repo_subscriptions import mark_invoice_paid_by_payment_id
from payments_api.db.session import get_db
from payments_api.errors import VerificationError
from payments_api.schemas import PayoutEvent, SettlementEvent, webhook_event_adapter
from payments_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

# Settlement statuses at which the underlying payment counts as collected
_INVOICE_CONFIRMING_RANK = SETTLEMENT_RANK["SETTLED"]


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    kind: str,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.

    Response extensions (beyond RFC 9457 base):
      kind, payload_hash, error_code  (safe; never contain raw payload/secrets)
    """
    request_id = request_id_var.get(None)
    instance = f"urn:classraum:trace:{request_id}" if request_id else str(request.url.path)

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "kind": kind,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:classraum:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "kind": kind,
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    content["instance"] = instance

    response_headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        response_headers["Retry-After"] = "60"

    return JSONResponse(
        status_code=status,
        content=content,
        headers=response_headers,
    )


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/settlements")
async def settlement_webhook(request: Request):
    """PortOne partner settlement events (Settlement.*)."""
    return await _handle_webhook(request, "settlement")


@router.post("/payouts")
async def payout_webhook(request: Request):
    """PortOne payout events (Payout.*)."""
    return await _handle_webhook(request, "payout")


async def _handle_webhook(request: Request, kind: str):
    settings: Settings = request.app.state.settings
    notifier: NotificationDispatcher = request.app.state.notifier

    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)
    payload_size = len(raw_body)
    request.state.payload_hash = payload_hash
    request.state.payload_size = payload_size

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"kind": kind, "payload_hash": payload_hash, "payload_size": payload_size},
    )

    # ── Step 1: Secret configured (C → 500) ─────────────────────────────────
    if not settings.portone_webhook_secret:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook verification is not configured",
            kind=kind,
            payload_hash=payload_hash,
        )

    # ── Step 2: Signature verification over the raw bytes (B → 401) ─────────
    verifier = SignatureVerifier(
        settings.portone_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )
    try:
        verifier.verify(raw_body, request.headers)
    except VerificationError as exc:
        response = _webhook_problem(
            request, 401,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail=exc.message,
            kind=kind,
            payload_hash=payload_hash,
            extra={"reason": exc.reason},
        )
        # Unauthenticated callers can trigger this; alerts are throttled and
        # sent after the response
        throttle: AlertThrottle = request.app.state.alert_throttle
        send, suppressed = throttle.allow(f"{kind}:{exc.reason}")
        if send:
            response.background = BackgroundTask(
                _send_verification_alert, notifier, kind, exc.reason, suppressed
            )
        return response

    webhook_id = request.headers["webhook-id"]
    webhook_id_var.set(webhook_id)

    # ── Step 3: JSON parsing (A → 400) ──────────────────────────────────────
    try:
        body = _json.loads(raw_body)
    except (_json.JSONDecodeError, UnicodeDecodeError):
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_JSON",
            title="Invalid JSON payload",
            detail="Request body is not valid JSON",
            kind=kind,
            payload_hash=payload_hash,
        )

    # ── Step 4: Event shape (A → 400) ───────────────────────────────────────
    try:
        event = webhook_event_adapter.validate_python(body)
    except ValidationError as exc:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail="Payload does not match a known settlement or payout event",
            kind=kind,
            payload_hash=payload_hash,
            extra={"validation_errors": exc.error_count()},
        )

    if event.kind != kind:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_EVENT_KIND_MISMATCH",
            title="Event sent to the wrong endpoint",
            detail=f"{event.type} events are not accepted on the {kind} endpoint",
            kind=kind,
            payload_hash=payload_hash,
        )

    # ── Step 5: Dedup gate (atomic, concurrent-safe) ────────────────────────
    db: Session = next(get_db())
    try:
        is_first = try_acquire_dedup(
            db,
            webhook_id,
            kind=kind,
            event_type=event.type,
            entity_id=event.entity_id,
            raw_payload=body,
            payload_hash=payload_hash,
            lease_seconds=settings.webhook_processing_lease_seconds,
        )
        if not is_first:
            # Duplicate or concurrent duplicate: ACK immediately, no side effects
            logger.info(
                "WEBHOOK_ALREADY_PROCESSED",
                extra={"kind": kind, "event_type": event.type, "payload_hash": payload_hash},
            )
            return {"status": "already_processed"}

        # ── Step 6: Persist + side effects (D → 500) ────────────────────────
        # The claim is released on any exit, including task cancellation
        applied = False
        try:
            await _apply_event(db, event, body, notifier)
            mark_dedup_done(db, webhook_id)
            applied = True
        finally:
            if not applied:
                _release_claim(db, webhook_id)

        logger.info(
            "WEBHOOK_PROCESSED",
            extra={"kind": kind, "event_type": event.type, "entity_id": event.entity_id},
        )
        return {"status": "processed"}

    except Exception as exc:
        db.rollback()
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            kind=kind,
            payload_hash=payload_hash,
            extra={
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )
    finally:
        db.close()


async def _send_verification_alert(
    notifier: NotificationDispatcher, kind: str, reason: str, suppressed: int
) -> None:
    if suppressed:
        logger.warning(
            "WEBHOOK_ALERTS_SUPPRESSED",
            extra={"kind": kind, "reason": reason, "suppressed": suppressed},
        )
    await notifier.webhook_verification_failed(kind, reason)


def _release_claim(db: Session, webhook_id: str) -> None:
    """Mark the dedup row failed so a redelivery can reclaim it.

    If the store is unreachable the row stays 'processing' and becomes
    reclaimable once the processing lease lapses.
    """
    try:
        db.rollback()
        mark_dedup_failed(db, webhook_id)
    except SQLAlchemyError as exc:
        logger.error(
            "WEBHOOK_DEDUP_RELEASE_FAILED",
            extra={"webhook_id_prefix": webhook_id[:16], "error_type": type(exc).__name__},
        )


async def _apply_event(
    db: Session,
    event: Union[SettlementEvent, PayoutEvent],
    body: dict[str, Any],
    notifier: NotificationDispatcher,
) -> None:
    """Upsert the entity, then apply side effects once per state transition."""
    now = datetime.now(timezone.utc)

    if isinstance(event, SettlementEvent):
        outcome = upsert_settlement(db, SettlementFacts.from_event(event, body))
        payment_id = event.data.payment_id
        if (
            payment_id
            and outcome.status in SETTLEMENT_RANK
            and SETTLEMENT_RANK[outcome.status] >= _INVOICE_CONFIRMING_RANK
        ):
            mark_invoice_paid_by_payment_id(db, payment_id, now)
        db.commit()
        return

    outcome = upsert_payout(db, PayoutFacts.from_event(event, body))
    db.commit()
    if outcome.entered("FAILED"):
        payout = get_payout(db, event.data.payout_id)
        if payout is not None:
            await notifier.payout_failed(payout)

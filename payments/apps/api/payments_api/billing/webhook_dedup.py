"""Webhook dedup gate: atomic INSERT ON CONFLICT keyed by webhook-id.

Guarantees at most one successful processing per webhook-id even when the
processor redelivers concurrently.

  1. INSERT ON CONFLICT (webhook_id) DO NOTHING RETURNING id
       → row returned : this request is the FIRST processor → continue
       → no row       : conflict → maybe a re-processable delivery
  2. UPDATE ... WHERE webhook_id=:id
                  AND (status='failed'
                       OR (status='processing' AND last_seen_at < now - lease))
     RETURNING id
       → row returned : previous attempt failed or died mid-flight; reclaim
       → no row       : status is 'done' or a live 'processing' (true duplicate) → 200

The UNIQUE constraint on webhook_id decides the race; the UPDATE in step 2 is a
single-row atomic write, so two redeliveries cannot both reclaim. A handler
killed between claim and mark (cancelled task, lost DB connection) leaves a
'processing' row that becomes reclaimable once the lease lapses. Works on
PostgreSQL and SQLite (3.35+).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from payments_api.db.models import WebhookEvent
from payments_api.db.upsert import dialect_insert

logger = logging.getLogger(__name__)

DEFAULT_PROCESSING_LEASE_SECONDS = 120


def try_acquire_dedup(
    db: Session,
    webhook_id: str,
    *,
    kind: str,
    event_type: str,
    entity_id: Optional[str],
    raw_payload: dict[str, Any],
    payload_hash: Optional[str] = None,
    lease_seconds: int = DEFAULT_PROCESSING_LEASE_SECONDS,
    now: Optional[datetime] = None,
) -> bool:
    """Attempt to atomically claim processing rights for webhook_id.

    Returns:
        True:  INSERT succeeded, or a 'failed' / lease-expired 'processing'
               record was reclaimed. The caller proceeds.
        False: A 'done' record or a live 'processing' record already exists.
               The caller is a duplicate and ACKs with 200, no side effects.
    """
    now = now or datetime.now(timezone.utc)

    insert_stmt = (
        dialect_insert(db, WebhookEvent)
        .values(
            webhook_id=webhook_id,
            kind=kind,
            event_type=event_type,
            entity_id=entity_id,
            verified=True,
            raw_payload=raw_payload,
            payload_hash=payload_hash,
            status="processing",
            received_at=now,
            last_seen_at=now,
        )
        .on_conflict_do_nothing(index_elements=["webhook_id"])
        .returning(WebhookEvent.id)
    )
    row = db.execute(insert_stmt).fetchone()

    if row is not None:
        db.commit()
        logger.debug(
            "WEBHOOK_DEDUP_ACQUIRED",
            extra={"kind": kind, "webhook_id_prefix": webhook_id[:16]},
        )
        return True

    stale_before = now - timedelta(seconds=lease_seconds)
    reclaim_stmt = (
        update(WebhookEvent)
        .where(
            WebhookEvent.webhook_id == webhook_id,
            or_(
                WebhookEvent.status == "failed",
                and_(
                    WebhookEvent.status == "processing",
                    func.coalesce(WebhookEvent.last_seen_at, WebhookEvent.received_at) < stale_before,
                ),
            ),
        )
        .values(status="processing", last_seen_at=now)
        .returning(WebhookEvent.id)
        .execution_options(synchronize_session=False)
    )
    retry_row = db.execute(reclaim_stmt).fetchone()

    if retry_row is not None:
        db.commit()
        logger.info(
            "WEBHOOK_DEDUP_RETRY_RECLAIMED",
            extra={"kind": kind, "webhook_id_prefix": webhook_id[:16]},
        )
        return True

    db.commit()
    logger.info(
        "WEBHOOK_DEDUP_DUPLICATE",
        extra={"kind": kind, "webhook_id_prefix": webhook_id[:16]},
    )
    return False


def mark_dedup_done(db: Session, webhook_id: str) -> None:
    """Mark the delivery 'done' and stamp applied_at after business processing."""
    now = datetime.now(timezone.utc)
    db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.webhook_id == webhook_id)
        .values(status="done", applied_at=now, last_seen_at=now)
    )
    db.commit()


def mark_dedup_failed(db: Session, webhook_id: str) -> None:
    """Mark the delivery 'failed' on processing error (allows redelivery to reclaim)."""
    db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.webhook_id == webhook_id)
        .values(status="failed", last_seen_at=datetime.now(timezone.utc))
    )
    db.commit()

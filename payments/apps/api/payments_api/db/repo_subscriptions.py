"""Subscription, invoice, audit and usage persistence.

Invoice rule: a paid invoice is immutable. mark_* helpers refuse to touch it
and report that through their return value. Callers own the transaction.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from payments_api.db.models import (
    Invoice,
    Subscription,
    SubscriptionAuditLog,
    UsageSnapshot,
)
from payments_api.db.upsert import dialect_insert

logger = logging.getLogger(__name__)

RENEWABLE_STATUSES = ("active", "past_due")


# ============================================================================
# Subscriptions
# ============================================================================


def get_subscription(db: Session, academy_id: str) -> Optional[Subscription]:
    return db.execute(
        select(Subscription).where(Subscription.academy_id == academy_id)
    ).scalar_one_or_none()


def get_or_create_subscription(db: Session, academy_id: str) -> Subscription:
    """Return the academy's subscription, creating the free row on first use.

    Concurrent first calls both succeed; the unique academy_id keeps one row.
    """
    created = db.execute(
        dialect_insert(db, Subscription)
        .values(academy_id=academy_id, plan_tier="free", status="free", amount=0)
        .on_conflict_do_nothing(index_elements=["academy_id"])
        .returning(Subscription.id)
    ).fetchone()
    if created is not None:
        logger.info("SUBSCRIPTION_CREATED", extra={"academy_id": academy_id})

    return db.execute(
        select(Subscription)
        .where(Subscription.academy_id == academy_id)
        .execution_options(populate_existing=True)
    ).scalar_one()


def lock_subscription(db: Session, academy_id: str) -> Optional[Subscription]:
    """Load with SELECT ... FOR UPDATE (no-op lock on SQLite)."""
    return db.execute(
        select(Subscription)
        .where(Subscription.academy_id == academy_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def list_due_subscriptions(
    db: Session,
    now: datetime,
    *,
    max_attempts: int,
    limit: Optional[int] = None,
) -> list[Subscription]:
    """Renewing subscriptions whose next charge is due and not out of attempts."""
    stmt = (
        select(Subscription)
        .where(
            Subscription.auto_renew.is_(True),
            Subscription.status.in_(RENEWABLE_STATUSES),
            Subscription.next_payment_at.is_not(None),
            Subscription.next_payment_at <= now,
            Subscription.failed_attempts < max_attempts,
        )
        .order_by(Subscription.next_payment_at, Subscription.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars())


def lock_due_subscription(
    db: Session,
    subscription_id: int,
    now: datetime,
    *,
    max_attempts: Optional[int] = None,
) -> Optional[Subscription]:
    """Re-select a renewal candidate under FOR UPDATE SKIP LOCKED.

    Returns None when another worker holds the row or the row is no longer
    due (cancelled, already renewed, suspended or out of attempts).
    """
    stmt = (
        select(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.auto_renew.is_(True),
            Subscription.status.in_(RENEWABLE_STATUSES),
            Subscription.next_payment_at.is_not(None),
            Subscription.next_payment_at <= now,
        )
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    if max_attempts is not None:
        stmt = stmt.where(Subscription.failed_attempts < max_attempts)
    return db.execute(stmt).scalar_one_or_none()


def list_expired_cancellations(db: Session, now: datetime) -> list[Subscription]:
    """Non-renewing subscriptions whose paid period is over."""
    return list(
        db.execute(
            select(Subscription).where(
                Subscription.auto_renew.is_(False),
                Subscription.status.in_(RENEWABLE_STATUSES),
                Subscription.current_period_end.is_not(None),
                Subscription.current_period_end <= now,
            )
        ).scalars()
    )


# ============================================================================
# Invoices
# ============================================================================


def create_invoice(
    db: Session,
    *,
    academy_id: str,
    subscription_id: Optional[int],
    payment_id: str,
    amount: int,
    due_date: datetime,
    description: str,
    plan_tier: str,
    billing_cycle: str,
    billing_period_start: Optional[datetime] = None,
    billing_period_end: Optional[datetime] = None,
    attempt: int = 1,
    created_at: Optional[datetime] = None,
) -> Invoice:
    invoice = Invoice(
        academy_id=academy_id,
        subscription_id=subscription_id,
        payment_id=payment_id,
        amount=amount,
        currency="KRW",
        status="pending",
        description=description,
        plan_tier=plan_tier,
        billing_cycle=billing_cycle,
        billing_period_start=billing_period_start,
        billing_period_end=billing_period_end,
        attempt=attempt,
        due_date=due_date,
    )
    if created_at is not None:
        invoice.created_at = created_at
    db.add(invoice)
    db.flush()
    logger.info(
        "INVOICE_CREATED",
        extra={
            "invoice_id": invoice.id,
            "academy_id": academy_id,
            "payment_id": payment_id,
            "amount": amount,
        },
    )
    return invoice


def mark_invoice_paid(db: Session, invoice: Invoice, paid_at: datetime) -> bool:
    """pending/failed → paid. Returns False if the invoice was already paid or refunded."""
    if invoice.status not in ("pending", "failed"):
        logger.warning(
            "INVOICE_TRANSITION_REFUSED",
            extra={"invoice_id": invoice.id, "status": invoice.status, "target": "paid"},
        )
        return False
    invoice.status = "paid"
    invoice.paid_at = paid_at
    invoice.failure_reason = None
    db.flush()
    return True


def mark_invoice_failed(db: Session, invoice: Invoice, reason: str, failed_at: datetime) -> bool:
    """pending → failed. Returns False for any other current status."""
    if invoice.status != "pending":
        logger.warning(
            "INVOICE_TRANSITION_REFUSED",
            extra={"invoice_id": invoice.id, "status": invoice.status, "target": "failed"},
        )
        return False
    invoice.status = "failed"
    invoice.failed_at = failed_at
    invoice.failure_reason = reason[:500]
    db.flush()
    return True


def mark_invoice_paid_by_payment_id(db: Session, payment_id: str, paid_at: datetime) -> bool:
    """Settlement side effect: confirm the invoice charged under payment_id."""
    invoice = db.execute(
        select(Invoice)
        .where(Invoice.payment_id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if invoice is None:
        logger.info("INVOICE_NOT_FOUND_FOR_PAYMENT", extra={"payment_id": payment_id})
        return False
    if invoice.status == "paid":
        return False

    changed = mark_invoice_paid(db, invoice, paid_at)
    if changed:
        logger.info(
            "INVOICE_PAID_FROM_SETTLEMENT",
            extra={"invoice_id": invoice.id, "payment_id": payment_id},
        )
    return changed


def get_pending_invoice(db: Session, subscription_id: int) -> Optional[Invoice]:
    """The subscription's in-flight charge claim, if any."""
    return db.execute(
        select(Invoice)
        .where(Invoice.subscription_id == subscription_id, Invoice.status == "pending")
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_invoice_for_update(db: Session, invoice_id: int) -> Optional[Invoice]:
    return db.execute(
        select(Invoice)
        .where(Invoice.id == invoice_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def mark_invoice_refunded(
    db: Session,
    invoice: Invoice,
    amount: int,
    reason: str,
    refunded_at: datetime,
) -> bool:
    """paid → refunded (full) or partially_refunded. One refund per invoice."""
    if invoice.status != "paid":
        logger.warning(
            "INVOICE_TRANSITION_REFUSED",
            extra={"invoice_id": invoice.id, "status": invoice.status, "target": "refunded"},
        )
        return False
    invoice.status = "refunded" if amount >= invoice.amount else "partially_refunded"
    invoice.refunded_amount = amount
    invoice.refunded_at = refunded_at
    invoice.refund_reason = reason[:500]
    db.flush()
    return True


def list_invoices(db: Session, academy_id: str, limit: int = 50) -> list[Invoice]:
    return list(
        db.execute(
            select(Invoice)
            .where(Invoice.academy_id == academy_id)
            .order_by(Invoice.created_at.desc(), Invoice.id.desc())
            .limit(limit)
        ).scalars()
    )


# ============================================================================
# Audit log
# ============================================================================


def record_audit(
    db: Session,
    event_type: str,
    academy_id: str,
    *,
    actor: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> SubscriptionAuditLog:
    entry = SubscriptionAuditLog(
        event_type=event_type,
        academy_id=academy_id,
        actor=actor,
        details=details or {},
    )
    db.add(entry)
    db.flush()
    return entry


def list_audit(db: Session, academy_id: str) -> list[SubscriptionAuditLog]:
    return list(
        db.execute(
            select(SubscriptionAuditLog)
            .where(SubscriptionAuditLog.academy_id == academy_id)
            .order_by(SubscriptionAuditLog.id)
        ).scalars()
    )


# ============================================================================
# Usage snapshots
# ============================================================================

def get_usage_snapshot(db: Session, academy_id: str) -> Optional[UsageSnapshot]:
    return db.get(UsageSnapshot, academy_id)


def upsert_usage_snapshot(
    db: Session,
    academy_id: str,
    *,
    calculated_at: datetime,
    **counts: Any,
) -> None:
    """Replace the academy's recomputed counts (unknown keys raise TypeError)."""
    allowed = {
        "student_count",
        "teacher_count",
        "classroom_count",
        "storage_gb",
        "api_calls_month",
        "sms_sent_month",
        "emails_sent_month",
    }
    unknown = set(counts) - allowed
    if unknown:
        raise TypeError(f"Unknown usage fields: {sorted(unknown)}")

    values = {"academy_id": academy_id, "calculated_at": calculated_at, **counts}
    stmt = dialect_insert(db, UsageSnapshot).values(**values)
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=["academy_id"],
            set_={key: stmt.excluded[key] for key in values if key != "academy_id"},
        )
    )

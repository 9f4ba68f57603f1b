"""SQLAlchemy ORM models for the payments service."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    FLOAT,
    INTEGER,
    JSON,
    TEXT,
    TIMESTAMP,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY (test databases)
BigIntPK = BIGINT().with_variant(INTEGER(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class WebhookEvent(Base):
    """One row per PortOne webhook delivery id.

    webhook_id is the dedup key. The gate claims it with
    INSERT ... ON CONFLICT (webhook_id) DO NOTHING RETURNING id:
      → row returned : first handler → process
      → no row       : duplicate (done / in-flight) → 200, zero side effects
    A row left in status='failed', or stuck in 'processing' past the lease,
    may be reclaimed by a redelivery.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    webhook_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    kind: Mapped[str] = mapped_column(TEXT, nullable=False)  # settlement | payout
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)  # Settlement.Settled, ...
    entity_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    verified: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    raw_payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    # SHA-256 hex of the exact received bytes
    payload_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="processing"
    )  # processing | done | failed

    received_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    applied_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("webhook_id", name="uq_webhook_events_webhook_id"),
        Index("idx_webhook_events_status", "status"),
        Index("idx_webhook_events_received", "received_at"),
    )


class Settlement(Base):
    """Partner settlement keyed by PortOne settlement id.

    Written by both the webhook handler and the reconciliation sync.
    Status only moves forward: SCHEDULED → IN_PROCESS → SETTLED →
    PAYOUT_SCHEDULED → PAID_OUT, or CANCELED before PAID_OUT.
    """

    __tablename__ = "settlements"

    settlement_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    partner_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    payment_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    status: Mapped[str] = mapped_column(TEXT, nullable=False)

    # KRW, no minor unit
    order_amount: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)
    settlement_amount: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="KRW")
    settlement_date: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # YYYY-MM-DD

    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    source: Mapped[str] = mapped_column(TEXT, nullable=False)  # webhook | sync

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_settlements_partner", "partner_id"),
        Index("idx_settlements_payment", "payment_id"),
        Index("idx_settlements_status", "status"),
    )


class Payout(Base):
    """Partner payout keyed by PortOne payout id.

    SCHEDULED → PROCESSING → SUCCEEDED | FAILED | CANCELED (first terminal wins).
    """

    __tablename__ = "payouts"

    payout_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    partner_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False)

    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="KRW")
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    payout_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    source: Mapped[str] = mapped_column(TEXT, nullable=False)  # webhook | sync

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_payouts_partner", "partner_id"),
        Index("idx_payouts_status", "status"),
    )


class Subscription(Base):
    """Academy subscription. Exactly one row per academy.

    status: free | active | past_due | suspended
    A cancelled subscription keeps its status and only has auto_renew=False
    until current_period_end passes (see lifecycle_state).
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    academy_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    plan_tier: Mapped[str] = mapped_column(TEXT, nullable=False, default="free")
    billing_cycle: Mapped[str] = mapped_column(TEXT, nullable=False, default="monthly")
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="free")

    # Per-cycle charge (KRW)
    amount: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    billing_key: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    next_payment_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    auto_renew: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)

    # Downgrade scheduled for the next renewal
    pending_tier: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    failed_attempts: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    suspended_reason: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("academy_id", name="uq_subscriptions_academy"),
        Index("idx_subscriptions_due", "status", "auto_renew", "next_payment_at"),
    )


class Invoice(Base):
    """Invoice for one charge attempt. Once paid, only the refund fields change."""

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    academy_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    subscription_id: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)

    # PortOne payment id used for the billing-key charge
    payment_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="KRW")
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="pending"
    )  # pending | paid | failed | refunded | partially_refunded
    description: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    plan_tier: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    billing_cycle: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    billing_period_start: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    billing_period_end: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    attempt: Mapped[int] = mapped_column(INTEGER, nullable=False, default=1)

    due_date: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    refunded_amount: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_invoices_payment_id"),
        Index("idx_invoices_academy", "academy_id"),
        Index("idx_invoices_status", "status"),
        # At most one in-flight charge per subscription
        Index(
            "uq_invoices_pending_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class UsageSnapshot(Base):
    """Latest usage counters for an academy. Read-mostly."""

    __tablename__ = "usage_snapshots"

    academy_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    student_count: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    teacher_count: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    classroom_count: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    storage_gb: Mapped[float] = mapped_column(FLOAT, nullable=False, default=0.0)
    api_calls_month: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    sms_sent_month: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    emails_sent_month: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    calculated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )


class SubscriptionAuditLog(Base):
    """Append-only audit trail for subscription transitions."""

    __tablename__ = "subscription_audit_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    # SUBSCRIPTION_SUSPENDED, SUBSCRIPTION_REINSTATED, SUBSCRIPTION_CANCELLED, ...
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    academy_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # SYSTEM, ADMIN:<id>, USER
    details: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_subscription_audit_academy", "academy_id"),
        Index("idx_subscription_audit_created", "created_at"),
    )

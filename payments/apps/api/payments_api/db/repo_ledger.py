"""Settlement / payout persistence shared by the webhook handler and the sync.

Both write paths call the same upsert, keyed by the PortOne id, so a record
converges to the same state no matter which path (or how many deliveries)
arrive first.

Status rule (monotonic):
  - higher rank        → advance status, overwrite with every non-null incoming field
  - same status        → keep status, overwrite with every non-null incoming field
  - lower rank / after terminal → keep status, only fill fields still NULL
  - NULL incoming values never overwrite stored values
Settlement: SCHEDULED < IN_PROCESS < SETTLED < PAYOUT_SCHEDULED < PAID_OUT;
            CANCELED is reachable from any state before PAID_OUT.
Payout:     SCHEDULED < PROCESSING < {SUCCEEDED | FAILED | CANCELED}; first terminal wins.

Callers own the transaction (commit / rollback).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from payments_api.db.models import Payout, Settlement
from payments_api.db.upsert import dialect_insert
from payments_api.schemas import (
    PayoutEvent,
    PlatformPayout,
    PlatformSettlement,
    SettlementEvent,
)

logger = logging.getLogger(__name__)

SETTLEMENT_RANK: dict[str, int] = {
    "SCHEDULED": 0,
    "IN_PROCESS": 1,
    "SETTLED": 2,
    "PAYOUT_SCHEDULED": 3,
    "PAID_OUT": 4,
}
SETTLEMENT_TERMINAL = frozenset({"PAID_OUT", "CANCELED"})

PAYOUT_RANK: dict[str, int] = {
    "SCHEDULED": 0,
    "PROCESSING": 1,
    "SUCCEEDED": 2,
    "FAILED": 2,
    "CANCELED": 2,
}
PAYOUT_TERMINAL = frozenset({"SUCCEEDED", "FAILED", "CANCELED"})


# ============================================================================
# Normalized facts (one shape per entity, built from either write path)
# ============================================================================


@dataclass
class SettlementFacts:
    settlement_id: str
    partner_id: str
    status: str
    source: str
    payment_id: Optional[str] = None
    order_amount: Optional[int] = None
    settlement_amount: Optional[int] = None
    currency: Optional[str] = None
    settlement_date: Optional[str] = None
    raw_data: Optional[dict[str, Any]] = field(default=None, repr=False)

    @classmethod
    def from_event(cls, event: SettlementEvent, raw: dict[str, Any]) -> "SettlementFacts":
        data = event.data
        return cls(
            settlement_id=data.settlement_id,
            partner_id=data.partner_id,
            status=event.status,
            source="webhook",
            payment_id=data.payment_id,
            order_amount=data.amount.order if data.amount else None,
            settlement_amount=data.amount.settlement if data.amount else None,
            currency=data.currency,
            settlement_date=data.settlement_date,
            raw_data=raw,
        )

    @classmethod
    def from_platform(cls, item: PlatformSettlement, raw: dict[str, Any]) -> "SettlementFacts":
        return cls(
            settlement_id=item.id,
            partner_id=item.partner_id,
            status=item.status,
            source="sync",
            payment_id=item.payment_id,
            order_amount=item.order_amount,
            settlement_amount=item.settlement_amount,
            currency=item.settlement_currency,
            settlement_date=item.settlement_date,
            raw_data=raw,
        )


@dataclass
class PayoutFacts:
    payout_id: str
    partner_id: str
    status: str
    amount: int
    source: str
    currency: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    payout_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    raw_data: Optional[dict[str, Any]] = field(default=None, repr=False)

    @classmethod
    def from_event(cls, event: PayoutEvent, raw: dict[str, Any]) -> "PayoutFacts":
        data = event.data
        return cls(
            payout_id=data.payout_id,
            partner_id=data.partner_id,
            status=event.status,
            amount=data.amount,
            source="webhook",
            currency=data.currency,
            scheduled_at=data.scheduled_at,
            payout_at=data.payout_at,
            failure_reason=data.failure_reason,
            raw_data=raw,
        )

    @classmethod
    def from_platform(cls, item: PlatformPayout, raw: dict[str, Any]) -> "PayoutFacts":
        return cls(
            payout_id=item.id,
            partner_id=item.partner_id,
            status=item.status,
            amount=item.amount,
            source="sync",
            currency=item.currency,
            scheduled_at=item.scheduled_at,
            payout_at=item.payout_at,
            failure_reason=item.failure_reason,
            raw_data=raw,
        )


@dataclass(frozen=True)
class UpsertOutcome:
    """Result of one upsert.

    action: created | advanced | unchanged | ignored
      ignored = incoming status ranked below (or after terminal) the stored one
    """

    action: str
    status: str
    previous_status: Optional[str] = None

    def entered(self, status: str) -> bool:
        """True if this write moved the record into `status`."""
        return self.action in ("created", "advanced") and self.status == status


# ============================================================================
# Status ordering
# ============================================================================


def settlement_may_advance(current: str, incoming: str) -> bool:
    if current == incoming or current in SETTLEMENT_TERMINAL:
        return False
    if incoming == "CANCELED":
        return True
    return SETTLEMENT_RANK[incoming] > SETTLEMENT_RANK[current]


def payout_may_advance(current: str, incoming: str) -> bool:
    if current == incoming or current in PAYOUT_TERMINAL:
        return False
    return PAYOUT_RANK[incoming] > PAYOUT_RANK[current]


def _merge(row: Any, values: dict[str, Any], *, fill_only: bool) -> None:
    for name, value in values.items():
        if value is None:
            continue
        if fill_only and getattr(row, name) is not None:
            continue
        setattr(row, name, value)


def _classify(current: str, incoming: str, may_advance: bool) -> str:
    if may_advance:
        return "advanced"
    if current == incoming:
        return "unchanged"
    return "ignored"


# ============================================================================
# Upserts
# ============================================================================


def upsert_settlement(db: Session, facts: SettlementFacts) -> UpsertOutcome:
    """Insert-if-absent, then apply the monotonic status rule under a row lock."""
    created = db.execute(
        dialect_insert(db, Settlement)
        .values(
            settlement_id=facts.settlement_id,
            partner_id=facts.partner_id,
            payment_id=facts.payment_id,
            status=facts.status,
            order_amount=facts.order_amount,
            settlement_amount=facts.settlement_amount,
            currency=facts.currency or "KRW",
            settlement_date=facts.settlement_date,
            raw_data=facts.raw_data,
            source=facts.source,
        )
        .on_conflict_do_nothing(index_elements=["settlement_id"])
        .returning(Settlement.settlement_id)
    ).fetchone()

    if created is not None:
        logger.info(
            "SETTLEMENT_CREATED",
            extra={"settlement_id": facts.settlement_id, "status": facts.status, "source": facts.source},
        )
        return UpsertOutcome(action="created", status=facts.status)

    row = db.execute(
        select(Settlement)
        .where(Settlement.settlement_id == facts.settlement_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()

    current = row.status
    advance = settlement_may_advance(current, facts.status)
    action = _classify(current, facts.status, advance)

    values = {
        "partner_id": facts.partner_id,
        "payment_id": facts.payment_id,
        "order_amount": facts.order_amount,
        "settlement_amount": facts.settlement_amount,
        "currency": facts.currency,
        "settlement_date": facts.settlement_date,
        "raw_data": facts.raw_data,
    }
    _merge(row, values, fill_only=(action == "ignored"))
    if advance:
        row.status = facts.status
        row.source = facts.source
    db.flush()

    log = logger.warning if action == "ignored" else logger.info
    log(
        f"SETTLEMENT_{action.upper()}",
        extra={
            "settlement_id": facts.settlement_id,
            "previous_status": current,
            "incoming_status": facts.status,
            "status": row.status,
            "source": facts.source,
        },
    )
    return UpsertOutcome(action=action, status=row.status, previous_status=current)


def upsert_payout(db: Session, facts: PayoutFacts) -> UpsertOutcome:
    """Insert-if-absent, then apply the monotonic status rule under a row lock."""
    created = db.execute(
        dialect_insert(db, Payout)
        .values(
            payout_id=facts.payout_id,
            partner_id=facts.partner_id,
            status=facts.status,
            amount=facts.amount,
            currency=facts.currency or "KRW",
            scheduled_at=facts.scheduled_at,
            payout_at=facts.payout_at,
            failure_reason=facts.failure_reason,
            raw_data=facts.raw_data,
            source=facts.source,
        )
        .on_conflict_do_nothing(index_elements=["payout_id"])
        .returning(Payout.payout_id)
    ).fetchone()

    if created is not None:
        logger.info(
            "PAYOUT_CREATED",
            extra={"payout_id": facts.payout_id, "status": facts.status, "source": facts.source},
        )
        return UpsertOutcome(action="created", status=facts.status)

    row = db.execute(
        select(Payout)
        .where(Payout.payout_id == facts.payout_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()

    current = row.status
    advance = payout_may_advance(current, facts.status)
    action = _classify(current, facts.status, advance)

    values = {
        "partner_id": facts.partner_id,
        "amount": facts.amount,
        "currency": facts.currency,
        "scheduled_at": facts.scheduled_at,
        "payout_at": facts.payout_at,
        "failure_reason": facts.failure_reason,
        "raw_data": facts.raw_data,
    }
    _merge(row, values, fill_only=(action == "ignored"))
    if advance:
        row.status = facts.status
        row.source = facts.source
    db.flush()

    log = logger.warning if action == "ignored" else logger.info
    log(
        f"PAYOUT_{action.upper()}",
        extra={
            "payout_id": facts.payout_id,
            "previous_status": current,
            "incoming_status": facts.status,
            "status": row.status,
            "source": facts.source,
        },
    )
    return UpsertOutcome(action=action, status=row.status, previous_status=current)


def get_settlement(db: Session, settlement_id: str) -> Optional[Settlement]:
    return db.get(Settlement, settlement_id)


def get_payout(db: Session, payout_id: str) -> Optional[Payout]:
    return db.get(Payout, payout_id)

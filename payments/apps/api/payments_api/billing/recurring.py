"""Recurring billing run (scheduled, not request-driven).

Selects renewing subscriptions with next_payment_at <= now, status active or
past_due, and fewer than BILLING_MAX_ATTEMPTS failed attempts; charges each
once. One subscription's failure never stops the run. Each row is re-locked
(SKIP LOCKED) and re-checked before charging, so overlapping runs or a
cancel that lands after selection never produce a second charge.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from payments_api.billing.subscription import SubscriptionService
from payments_api.db.repo_subscriptions import list_due_subscriptions
from payments_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)


@dataclass
class BillingRunResult:
    found: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


async def run_recurring_billing(
    session_factory: sessionmaker[Session],
    service: SubscriptionService,
    *,
    max_attempts: int = 4,
    now: Optional[datetime] = None,
    batch_limit: Optional[int] = None,
) -> BillingRunResult:
    now = now or service.now()
    result = BillingRunResult()

    with session_factory() as db:
        due = list_due_subscriptions(db, now, max_attempts=max_attempts, limit=batch_limit)
        result.found = len(due)
        logger.info("BILLING_RUN_STARTED", extra={"found": result.found})

        for subscription in due:
            academy_id = subscription.academy_id

            if not subscription.billing_key:
                result.skipped += 1
                result.errors.append(f"Academy {academy_id}: No billing key")
                logger.error("BILLING_SKIPPED_NO_BILLING_KEY", extra={"academy_id": academy_id})
                continue

            try:
                outcome = await service.renew(db, subscription, now, max_attempts=max_attempts)
                if outcome is None:
                    result.skipped += 1
                elif outcome:
                    result.succeeded += 1
                else:
                    result.failed += 1
            except (SQLAlchemyError, ValueError) as exc:
                db.rollback()
                result.errors.append(f"Academy {academy_id}: {type(exc).__name__}")
                logger.error(
                    "BILLING_RENEWAL_ERROR",
                    extra={
                        "academy_id": academy_id,
                        "error_type": type(exc).__name__,
                        "error_msg": sanitize_str(str(exc))[:300],
                    },
                )

    logger.info(
        "BILLING_RUN_COMPLETED",
        extra={
            "found": result.found,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "skipped": result.skipped,
            "errors": len(result.errors),
        },
    )
    return result

"""Recurring billing loop.

Each tick: expire cancelled subscriptions past their period end, then charge
every renewal that is due (see payments_api.billing.recurring).
Interval: BILLING_INTERVAL_SEC (default 3600).
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from payments_api.billing.recurring import BillingRunResult, run_recurring_billing
from payments_api.billing.subscription import SubscriptionService
from payments_scheduler.shutdown import shutdown_event

logger = logging.getLogger(__name__)


def run_billing_once(
    session_factory: sessionmaker[Session],
    service: SubscriptionService,
    *,
    max_attempts: int = 4,
    batch_limit: Optional[int] = None,
) -> BillingRunResult:
    with session_factory() as db:
        expired = service.expire_cancelled(db)
    if expired:
        logger.info(f"Billing tick expired {expired} cancelled subscriptions")

    return asyncio.run(
        run_recurring_billing(
            session_factory,
            service,
            max_attempts=max_attempts,
            batch_limit=batch_limit,
        )
    )


def billing_loop(
    session_factory: sessionmaker[Session],
    service: SubscriptionService,
    interval_seconds: int = 3600,
    max_attempts: int = 4,
    batch_limit: Optional[int] = None,
    stop_after_one_iteration: bool = False,
) -> None:
    """Periodically expire cancellations and charge due renewals.

    Args:
        session_factory: SQLAlchemy sessionmaker (one session per tick)
        service: SubscriptionService with a charge gateway
        interval_seconds: Sleep interval between ticks
        max_attempts: Failed attempts after which a subscription is no longer selected
        batch_limit: Max subscriptions charged per tick (None = all due)
        stop_after_one_iteration: For testing only - exit after one tick
    """
    logger.info(f"Billing loop started (interval={interval_seconds}s, max_attempts={max_attempts})")

    iteration = 0
    while not shutdown_event.is_set():
        iteration += 1
        try:
            result = run_billing_once(
                session_factory,
                service,
                max_attempts=max_attempts,
                batch_limit=batch_limit,
            )
            if result.found:
                logger.info(
                    f"Billing iteration {iteration}: {result.succeeded} charged, "
                    f"{result.failed} declined, {result.skipped} skipped",
                    extra={"iteration": iteration, **result.to_dict()},
                )
        except Exception as e:
            logger.error(f"Billing loop error in iteration {iteration}: {e}", exc_info=True)

        if stop_after_one_iteration:
            logger.info("Billing loop stopping after one iteration (test mode)")
            break

        shutdown_event.wait(interval_seconds)

    logger.info(f"Billing loop stopped gracefully after {iteration} iterations")

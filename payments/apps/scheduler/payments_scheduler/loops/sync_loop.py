"""Reconciliation sync loop.

- Each iteration: take the sync lock, run SyncService.sync_all over the lookback window
- Interval: SYNC_INTERVAL_SEC (default 900)
- A failed run (upstream error or exception) backs off exponentially with jitter,
  capped at SYNC_MAX_BACKOFF_SEC; the first successful run resets the delay
- Lock held elsewhere (manual POST /sync) → skip, not a failure
"""

import asyncio
import logging
import random
import time
from typing import Callable, Optional

from payments_api.billing.backoff import backoff_seconds
from payments_api.billing.sync_service import SyncResult, SyncService
from payments_api.rate_limiter import SyncLock
from payments_scheduler.shutdown import shutdown_event

logger = logging.getLogger(__name__)


def run_sync_once(service: SyncService, sync_lock: SyncLock) -> Optional[SyncResult]:
    """One locked sync run.

    Returns:
        SyncResult, or None if another run holds the lock

    Raises:
        PersistenceError: Database unavailable mid-run
    """
    token = sync_lock.acquire()
    if token is None:
        logger.info("SYNC_LOOP_SKIPPED_LOCKED")
        return None
    try:
        return asyncio.run(service.sync_all())
    finally:
        sync_lock.release(token)


def next_delay(
    consecutive_failures: int,
    interval_seconds: int,
    max_backoff_seconds: int,
    rng: Optional[Callable[[], float]] = None,
) -> int:
    """Seconds to wait before the next iteration."""
    if consecutive_failures <= 0:
        return interval_seconds
    delay = backoff_seconds(
        consecutive_failures + 1,
        base=interval_seconds,
        cap=max_backoff_seconds,
        rng=rng,
    )
    return max(interval_seconds, delay)


def sync_loop(
    service: SyncService,
    sync_lock: SyncLock,
    interval_seconds: int = 900,
    max_backoff_seconds: int = 21600,
    stop_after_one_iteration: bool = False,
    rng: Optional[Callable[[], float]] = None,
) -> None:
    """Periodically reconcile settlements and payouts.

    Args:
        service: Configured SyncService
        sync_lock: Same lock POST /sync uses
        interval_seconds: Delay between healthy runs
        max_backoff_seconds: Upper bound for the failure delay
        stop_after_one_iteration: For testing only - exit after one run
        rng: Jitter source (default random.random)
    """
    rng = rng or random.random
    logger.info(
        f"Sync loop started (interval={interval_seconds}s, max_backoff={max_backoff_seconds}s)"
    )

    iteration = 0
    consecutive_failures = 0

    while not shutdown_event.is_set():
        iteration += 1
        iteration_start = time.time()

        try:
            result = run_sync_once(service, sync_lock)
            if result is not None:
                if result.success:
                    consecutive_failures = 0
                else:
                    consecutive_failures += 1
                logger.info(
                    f"Sync iteration {iteration} finished",
                    extra={
                        "iteration": iteration,
                        "success": result.success,
                        "settlements_synced": result.settlements.synced,
                        "payouts_synced": result.payouts.synced,
                        "item_errors": result.settlements.errors + result.payouts.errors,
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                    },
                )
        except Exception as e:
            consecutive_failures += 1
            logger.error(f"Sync loop error in iteration {iteration}: {e}", exc_info=True)

        if stop_after_one_iteration:
            logger.info("Sync loop stopping after one iteration (test mode)")
            break

        delay = next_delay(consecutive_failures, interval_seconds, max_backoff_seconds, rng)
        if consecutive_failures:
            logger.warning(
                "SYNC_LOOP_BACKING_OFF",
                extra={"consecutive_failures": consecutive_failures, "delay_seconds": delay},
            )
        shutdown_event.wait(delay)

    logger.info(f"Sync loop stopped gracefully after {iteration} iterations")

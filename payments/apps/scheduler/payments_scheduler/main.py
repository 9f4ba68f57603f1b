"""Payments Scheduler main entry point.

Two independent loops, one thread each:

1. Sync Loop:
   - Pull PortOne settlements/payouts over the lookback window and upsert them
   - Interval: SYNC_INTERVAL_SEC (default 900), exponential backoff on failed runs
   - Disabled when PORTONE_API_SECRET is unset

2. Billing Loop:
   - Expire cancelled subscriptions, then charge due renewals
   - Interval: BILLING_INTERVAL_SEC (default 3600)
"""

import logging
import os
import threading

from payments_api.billing.notifications import build_notifier
from payments_api.billing.portone import PortOneClient, UnconfiguredChargeGateway
from payments_api.billing.subscription import SubscriptionService
from payments_api.billing.sync_service import SyncService
from payments_api.config.env import Settings
from payments_api.db.engine import build_engine, build_sessionmaker
from payments_api.db.redis_client import RedisClient
from payments_api.pricing import load_plan_catalog
from payments_api.rate_limiter import RedisSyncLock
from payments_api.utils import configure_json_logging
from payments_scheduler.loops.billing_loop import billing_loop
from payments_scheduler.loops.sync_loop import sync_loop
from payments_scheduler.shutdown import install_signal_handlers

logger = logging.getLogger(__name__)


def main() -> None:
    """Main entry point for the scheduler."""
    # Fail-fast configuration (production requires DATABASE_URL + webhook secret)
    settings = Settings.from_env()
    if settings.json_logs:
        configure_json_logging(log_level=settings.log_level)
    install_signal_handlers()

    sync_interval_sec = int(os.getenv("SYNC_INTERVAL_SEC", "900"))
    sync_max_backoff_sec = int(os.getenv("SYNC_MAX_BACKOFF_SEC", "21600"))
    billing_interval_sec = int(os.getenv("BILLING_INTERVAL_SEC", "3600"))
    billing_batch_limit = int(os.getenv("BILLING_BATCH_LIMIT", "0")) or None

    # Database engine (shared); each loop opens its own sessions
    engine = build_engine(settings.database_url)
    SessionLocal = build_sessionmaker(engine)

    # Redis (shared - redis-py is thread-safe)
    redis_client = RedisClient.get_client(settings.redis_url)

    notifier = build_notifier(settings.slack_webhook_url)
    catalog = load_plan_catalog()

    portone_client = None
    if settings.portone_api_secret:
        portone_client = PortOneClient(
            settings.portone_api_secret,
            base_url=settings.portone_api_base_url,
            store_id=settings.portone_store_id,
            timeout=settings.portone_http_timeout_seconds,
        )

    subscription_service = SubscriptionService(
        catalog,
        portone_client or UnconfiguredChargeGateway(),
        notifier,
        backoff_base_seconds=settings.billing_backoff_base_seconds,
        backoff_max_seconds=settings.billing_backoff_max_seconds,
        charge_lease_seconds=settings.billing_charge_lease_seconds,
    )

    threads: list[threading.Thread] = []

    if portone_client is not None:
        sync_service = SyncService(
            portone_client,
            SessionLocal,
            notifier,
            page_limit=settings.sync_page_limit,
            lookback_days=settings.sync_lookback_days,
            max_pages=settings.sync_max_pages,
        )
        threads.append(
            threading.Thread(
                target=sync_loop,
                kwargs={
                    "service": sync_service,
                    "sync_lock": RedisSyncLock(redis_client, ttl_seconds=settings.sync_lock_ttl_seconds),
                    "interval_seconds": sync_interval_sec,
                    "max_backoff_seconds": sync_max_backoff_sec,
                },
                name="SyncLoop",
                daemon=False,
            )
        )
        logger.info(f"Sync Loop: interval={sync_interval_sec}s, max_backoff={sync_max_backoff_sec}s")
    else:
        logger.warning("Sync Loop: DISABLED (PORTONE_API_SECRET unset)")

    threads.append(
        threading.Thread(
            target=billing_loop,
            kwargs={
                "session_factory": SessionLocal,
                "service": subscription_service,
                "interval_seconds": billing_interval_sec,
                "max_attempts": settings.billing_max_attempts,
                "batch_limit": billing_batch_limit,
            },
            name="BillingLoop",
            daemon=False,
        )
    )
    logger.info(
        f"Billing Loop: interval={billing_interval_sec}s, max_attempts={settings.billing_max_attempts}"
    )

    try:
        for thread in threads:
            logger.info(f"Starting {thread.name} thread...")
            thread.start()

        # Blocks until SIGTERM/SIGINT sets the shutdown event
        for thread in threads:
            thread.join()

    except KeyboardInterrupt:
        logger.info("Scheduler stopped by user (KeyboardInterrupt)")

    finally:
        engine.dispose()
        logger.info("Scheduler shutdown complete")


if __name__ == "__main__":
    main()

"""Reconciliation sync: pull settlements and payouts from PortOne and upsert them.

Covers webhooks that were missed, delayed, or delivered out of order. Writes go
through the same keyed upserts as the webhook handler, so a sync racing live
deliveries converges to the same rows.

Semantics:
  - since defaults to now - SYNC_LOOKBACK_DAYS, page size to SYNC_PAGE_LIMIT (max 100)
  - each resource kind is paged independently until a short/empty page,
    the reported totalCount, or SYNC_MAX_PAGES
  - a bad item (parse failure, constraint violation) is rolled back, counted in
    `errors`, and skipped; the run continues
  - an upstream page failure stops that kind only; it is reported on the result
  - a lost database connection aborts the run (PersistenceError)
  - no retries here; the scheduler owns cadence and backoff
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from payments_api.billing.notifications import NotificationDispatcher
from payments_api.billing.portone import PortOneClient
from payments_api.db.repo_ledger import (
    PayoutFacts,
    SettlementFacts,
    UpsertOutcome,
    get_payout,
    upsert_payout,
    upsert_settlement,
)
from payments_api.errors import PersistenceError, PortOneAPIError
from payments_api.schemas import PlatformPage, PlatformPayout, PlatformSettlement
from payments_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 100


@dataclass
class KindResult:
    synced: int = 0
    errors: int = 0
    pages: int = 0
    upstream_error: Optional[str] = None


@dataclass
class SyncResult:
    settlements: KindResult = field(default_factory=KindResult)
    payouts: KindResult = field(default_factory=KindResult)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        """Item-level errors do not fail a run; upstream page failures do."""
        return self.settlements.upstream_error is None and self.payouts.upstream_error is None


class SyncService:
    """Pull-based reconciliation against the PortOne platform API."""

    def __init__(
        self,
        client: PortOneClient,
        session_factory: sessionmaker[Session],
        notifier: NotificationDispatcher,
        *,
        page_limit: int = 100,
        lookback_days: int = 7,
        max_pages: int = 500,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.notifier = notifier
        self.page_limit = min(max(page_limit, 1), MAX_PAGE_LIMIT)
        self.lookback_days = lookback_days
        self.max_pages = max_pages
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def sync_all(
        self,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> SyncResult:
        """Sync settlements then payouts over [since, now].

        Raises:
            PersistenceError: Database connection lost mid-run
        """
        started = time.perf_counter()
        until = self._clock()
        since = since or until - timedelta(days=self.lookback_days)
        size = min(max(limit or self.page_limit, 1), MAX_PAGE_LIMIT)

        logger.info(
            "SYNC_STARTED",
            extra={"since": since.isoformat(), "until": until.isoformat(), "limit": size},
        )

        result = SyncResult()
        result.settlements = await self.sync_settlements(since, until, size)
        result.payouts = await self.sync_payouts(since, until, size)
        result.duration_ms = int((time.perf_counter() - started) * 1000)

        log = logger.info if result.success else logger.error
        log(
            "SYNC_COMPLETED" if result.success else "SYNC_COMPLETED_WITH_UPSTREAM_ERRORS",
            extra={
                "duration_ms": result.duration_ms,
                "settlements_synced": result.settlements.synced,
                "settlements_errors": result.settlements.errors,
                "payouts_synced": result.payouts.synced,
                "payouts_errors": result.payouts.errors,
            },
        )
        return result

    async def sync_settlements(self, since: datetime, until: datetime, size: int) -> KindResult:
        return await self._sync_kind(
            "settlement",
            self.client.list_settlements,
            self._store_settlement,
            since,
            until,
            size,
        )

    async def sync_payouts(self, since: datetime, until: datetime, size: int) -> KindResult:
        return await self._sync_kind(
            "payout",
            self.client.list_payouts,
            self._store_payout,
            since,
            until,
            size,
        )

    # ------------------------------------------------------------------

    async def _sync_kind(
        self,
        kind: str,
        fetch: Callable[..., Awaitable[PlatformPage]],
        store: Callable[[Session, dict[str, Any]], Awaitable[None]],
        since: datetime,
        until: datetime,
        size: int,
    ) -> KindResult:
        result = KindResult()
        page_number = 0

        with self.session_factory() as db:
            while True:
                if page_number >= self.max_pages:
                    logger.warning(
                        "SYNC_MAX_PAGES_REACHED",
                        extra={"kind": kind, "max_pages": self.max_pages},
                    )
                    break

                try:
                    page = await fetch(page=page_number, size=size, since=since, until=until)
                except PortOneAPIError as exc:
                    result.upstream_error = sanitize_str(str(exc))
                    logger.error(
                        "SYNC_PAGE_FETCH_FAILED",
                        extra={"kind": kind, "page": page_number, "status_code": exc.status_code},
                    )
                    break

                result.pages += 1
                if not page.items:
                    break

                for item in page.items:
                    if not isinstance(item, dict):
                        result.errors += 1
                        logger.warning(
                            "SYNC_ITEM_FAILED",
                            extra={
                                "kind": kind,
                                "item_id": None,
                                "error_type": "NotAnObject",
                                "error_msg": f"item is {type(item).__name__}",
                            },
                        )
                        continue
                    try:
                        await store(db, item)
                        result.synced += 1
                    except OperationalError as exc:
                        db.rollback()
                        raise PersistenceError(f"Database unavailable during {kind} sync") from exc
                    except (ValidationError, SQLAlchemyError, ValueError, TypeError) as exc:
                        db.rollback()
                        result.errors += 1
                        logger.warning(
                            "SYNC_ITEM_FAILED",
                            extra={
                                "kind": kind,
                                "item_id": item.get("id"),
                                "error_type": type(exc).__name__,
                                "error_msg": sanitize_str(str(exc))[:300],
                            },
                        )

                total = page.page.total_count
                if len(page.items) < size or (total and (page_number + 1) * size >= total):
                    break
                page_number += 1

        logger.info(
            "SYNC_KIND_COMPLETED",
            extra={
                "kind": kind,
                "synced": result.synced,
                "errors": result.errors,
                "pages": result.pages,
            },
        )
        return result

    async def _store_settlement(self, db: Session, item: dict[str, Any]) -> None:
        parsed = PlatformSettlement.model_validate(item)
        upsert_settlement(db, SettlementFacts.from_platform(parsed, item))
        db.commit()

    async def _store_payout(self, db: Session, item: dict[str, Any]) -> None:
        parsed = PlatformPayout.model_validate(item)
        outcome: UpsertOutcome = upsert_payout(db, PayoutFacts.from_platform(parsed, item))
        db.commit()

        if outcome.entered("FAILED"):
            payout = get_payout(db, parsed.id)
            if payout is not None:
                await self.notifier.payout_failed(payout)

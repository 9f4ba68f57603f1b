"""Reconciliation sync trigger.

POST /sync?since=<ISO8601>&limit=<int>
  429 SYNC_RATE_LIMITED     per-IP fixed window exceeded (Retry-After)
  400 SYNC_INVALID_PARAMS   since not ISO 8601 / limit not an integer
  500 SYNC_PROVIDER_MISCONFIG  PORTONE_API_SECRET unset
  409 SYNC_IN_PROGRESS      another run holds the lock
  502 SYNC_UPSTREAM_FAILED  a PortOne page fetch failed (counts still returned)
  500 SYNC_PERSISTENCE_ERROR   database unavailable mid-run
  200                       run completed; item-level errors are counted, not fatal
GET /sync → parameter documentation (static, never fails)
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from payments_api.billing.notifications import NotificationDispatcher
from payments_api.billing.portone import PortOneClient
from payments_api.billing.sync_service import MAX_PAGE_LIMIT, SyncResult, SyncService
from payments_api.config.env import Settings
from payments_api.context import request_id_var
from payments_api.db.session import get_session_factory
from payments_api.errors import PersistenceError
from payments_api.rate_limiter import RateLimiter, SyncLock
from payments_api.schemas import SyncCounts, SyncDocs, SyncParameterDoc, SyncResponse

router = APIRouter(tags=["sync"])
logger = logging.getLogger(__name__)


def _sync_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str,
    headers: Optional[dict[str, str]] = None,
    body_extra: Optional[dict] = None,
) -> JSONResponse:
    """Log once + RFC 9457 response (4xx → warning, 5xx → error)."""
    request_id = request_id_var.get(None)
    instance = f"urn:classraum:trace:{request_id}" if request_id else str(request.url.path)

    log = logger.error if status >= 500 else logger.warning
    log(code, extra={"event": f"sync.{code.lower()}", "error_code": code})

    content: dict = {
        "type": f"urn:classraum:sync:{code.lower()}",
        "title": title,
        "status": status,
        "detail": detail,
        "instance": instance,
        "error_code": code,
    }
    if body_extra:
        content.update(body_extra)

    return JSONResponse(
        status_code=status,
        content=content,
        media_type="application/problem+json",
        headers=headers,
    )


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def parse_since(raw: Optional[str]) -> Optional[datetime]:
    """ISO 8601 (trailing Z accepted); naive values are taken as UTC.

    Raises:
        ValueError: Not ISO 8601
    """
    if raw is None or raw.strip() == "":
        return None
    value = raw.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_limit(raw: Optional[str]) -> Optional[int]:
    """Integer page size clamped to 1..100.

    Raises:
        ValueError: Not an integer
    """
    if raw is None or raw.strip() == "":
        return None
    return min(max(int(raw.strip()), 1), MAX_PAGE_LIMIT)


def _counts(result: SyncResult) -> dict:
    return {
        "settlements": SyncCounts(
            synced=result.settlements.synced, errors=result.settlements.errors
        ).model_dump(),
        "payouts": SyncCounts(
            synced=result.payouts.synced, errors=result.payouts.errors
        ).model_dump(),
    }


@router.get("/sync", response_model=SyncDocs)
async def sync_docs(request: Request) -> SyncDocs:
    """Describe the sync trigger."""
    settings: Settings = request.app.state.settings
    return SyncDocs(
        endpoint="/sync",
        method="POST",
        description=(
            "Pull PortOne partner settlements and payouts updated since `since` and "
            "upsert them. Item-level failures are counted, never fatal."
        ),
        parameters={
            "since": SyncParameterDoc(
                type="string (ISO 8601)",
                required=False,
                default=f"now - {settings.sync_lookback_days} days",
                description="Lower bound of the update window",
            ),
            "limit": SyncParameterDoc(
                type="integer",
                required=False,
                default=str(settings.sync_page_limit),
                description=f"Items per page, clamped to 1..{MAX_PAGE_LIMIT}",
            ),
        },
        example={
            "request": "POST /sync?since=2024-01-01T00:00:00Z&limit=50",
            "response": {
                "success": True,
                "duration": 1234,
                "settlements": {"synced": 10, "errors": 0},
                "payouts": {"synced": 5, "errors": 0},
            },
        },
    )


@router.post("/sync", response_model=SyncResponse)
async def trigger_sync(
    request: Request,
    since: Optional[str] = Query(None, description="ISO 8601 lower bound"),
    limit: Optional[str] = Query(None, description="Items per page (1..100)"),
):
    settings: Settings = request.app.state.settings
    rate_limiter: RateLimiter = request.app.state.rate_limiter
    sync_lock: SyncLock = request.app.state.sync_lock
    notifier: NotificationDispatcher = request.app.state.notifier
    client: Optional[PortOneClient] = request.app.state.portone_client

    # ── Step 1: Per-IP rate limit (429) ─────────────────────────────────────
    rate = rate_limiter.check_rate_limit(_client_ip(request), "sync")
    if not rate.allowed:
        return _sync_problem(
            request, 429,
            code="SYNC_RATE_LIMITED",
            title="Too Many Requests",
            detail="Sync rate limit exceeded. Please retry after the specified time.",
            headers={"Retry-After": str(rate.reset)},
        )

    # ── Step 2: Parameters (400) ────────────────────────────────────────────
    try:
        since_dt = parse_since(since)
        page_limit = parse_limit(limit)
    except ValueError:
        return _sync_problem(
            request, 400,
            code="SYNC_INVALID_PARAMS",
            title="Invalid sync parameters",
            detail="`since` must be ISO 8601 and `limit` an integer",
        )

    # ── Step 3: Upstream configured (500) ───────────────────────────────────
    if client is None:
        return _sync_problem(
            request, 500,
            code="SYNC_PROVIDER_MISCONFIG",
            title="Sync provider misconfiguration",
            detail="PortOne API access is not configured",
        )

    # ── Step 4: Best-effort single run (409) ────────────────────────────────
    token = sync_lock.acquire()
    if token is None:
        return _sync_problem(
            request, 409,
            code="SYNC_IN_PROGRESS",
            title="Sync already in progress",
            detail="Another sync run is active; retry when it finishes",
        )

    # ── Step 5: Run ─────────────────────────────────────────────────────────
    service = SyncService(
        client,
        get_session_factory(),
        notifier,
        page_limit=settings.sync_page_limit,
        lookback_days=settings.sync_lookback_days,
        max_pages=settings.sync_max_pages,
    )
    try:
        result = await service.sync_all(since=since_dt, limit=page_limit)
    except PersistenceError:
        return _sync_problem(
            request, 500,
            code="SYNC_PERSISTENCE_ERROR",
            title="Sync storage failure",
            detail="The database became unavailable during the sync run",
            headers={"Retry-After": "60"},
        )
    finally:
        sync_lock.release(token)

    if not result.success:
        return _sync_problem(
            request, 502,
            code="SYNC_UPSTREAM_FAILED",
            title="PortOne API error",
            detail="Fetching from PortOne failed; stored results are partial",
            body_extra={"success": False, "duration": result.duration_ms, **_counts(result)},
        )

    return SyncResponse(
        success=True,
        duration=result.duration_ms,
        message="Sync completed",
        **_counts(result),
    )

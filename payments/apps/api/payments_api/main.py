"""Classraum Payments API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from payments_api.billing.notifications import AlertThrottle, NotificationDispatcher, build_notifier
from payments_api.billing.portone import PortOneClient, UnconfiguredChargeGateway
from payments_api.billing.subscription import SubscriptionService
from payments_api.config.env import Settings
from payments_api.context import academy_id_var, request_id_var, webhook_id_var
from payments_api.db.redis_client import RedisClient
from payments_api.errors import (
    InvalidTransitionError,
    InvoiceNotFoundError,
    PaymentGatewayError,
    PlanLimitExceededError,
    SubscriptionNotFoundError,
    UnknownPlanError,
)
from payments_api.pricing import PlanCatalogModel, UsageEnforcement, load_plan_catalog
from payments_api.rate_limiter import RateLimiter, RedisRateLimiter, RedisSyncLock, SyncLock
from payments_api.routers import admin, health, plans, subscriptions, sync, usage, webhooks
from payments_api.schemas import ProblemDetail
from payments_api.utils import configure_json_logging

PROBLEM_BASE = "https://api.classraum.com/problems"

logger = logging.getLogger(__name__)


def _instance() -> str:
    request_id = request_id_var.get()
    return f"urn:classraum:trace:{request_id}" if request_id else f"urn:classraum:trace:{uuid.uuid4()}"


def _problem_response(
    status_code: int,
    *,
    type_: str,
    title: str,
    detail: Optional[str],
    error_code: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    problem = ProblemDetail(
        type=type_,
        title=title,
        status=status_code,
        detail=detail,
        instance=_instance(),
        error_code=error_code,
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        402: "Payment Required",
        403: "Forbidden",
        404: "Not Found",
        409: "Conflict",
        429: "Too Many Requests",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


async def plan_limit_handler(request: Request, exc: PlanLimitExceededError) -> JSONResponse:
    return _problem_response(
        exc.status_code,
        type_=exc.error_type,
        title=exc.title,
        detail=exc.detail,
        error_code="PLAN_LIMIT_EXCEEDED",
    )


async def invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    logger.warning(
        "SUBSCRIPTION_TRANSITION_REJECTED",
        extra={"from_status": exc.from_status, "action": exc.action},
    )
    return _problem_response(
        status.HTTP_409_CONFLICT,
        type_=f"{PROBLEM_BASE}/invalid-transition",
        title="Invalid subscription transition",
        detail=exc.detail,
        error_code="INVALID_TRANSITION",
    )


async def subscription_not_found_handler(request: Request, exc: SubscriptionNotFoundError) -> JSONResponse:
    return _problem_response(
        status.HTTP_404_NOT_FOUND,
        type_=f"{PROBLEM_BASE}/subscription-not-found",
        title="Subscription not found",
        detail=str(exc),
        error_code="SUBSCRIPTION_NOT_FOUND",
    )


async def invoice_not_found_handler(request: Request, exc: InvoiceNotFoundError) -> JSONResponse:
    return _problem_response(
        status.HTTP_404_NOT_FOUND,
        type_=f"{PROBLEM_BASE}/invoice-not-found",
        title="Invoice not found",
        detail=str(exc),
        error_code="INVOICE_NOT_FOUND",
    )


async def unknown_plan_handler(request: Request, exc: UnknownPlanError) -> JSONResponse:
    return _problem_response(
        status.HTTP_400_BAD_REQUEST,
        type_=f"{PROBLEM_BASE}/unknown-plan",
        title="Unknown plan",
        detail=str(exc),
        error_code="UNKNOWN_PLAN",
    )


async def payment_gateway_handler(request: Request, exc: PaymentGatewayError) -> JSONResponse:
    """Declines → 402; gateway outages (no status / 5xx) → 502.

    A failed charge has already marked its invoice failed; a refused refund
    leaves the invoice paid.
    """
    if exc.status_code is None or exc.status_code >= 500:
        return _problem_response(
            status.HTTP_502_BAD_GATEWAY,
            type_=f"{PROBLEM_BASE}/payment-gateway-unavailable",
            title="Payment gateway unavailable",
            detail=exc.reason,
            error_code="PAYMENT_GATEWAY_UNAVAILABLE",
            headers={"Retry-After": "60"},
        )
    return _problem_response(
        status.HTTP_402_PAYMENT_REQUIRED,
        type_=f"{PROBLEM_BASE}/payment-declined",
        title="Payment declined",
        detail=exc.reason,
        error_code="PAYMENT_DECLINED",
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """HTTP exceptions as top-level RFC 9457 fields (no {"detail": ...} wrapper)."""
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)

    headers = dict(exc.headers or {})
    if exc.status_code == 429:
        headers.setdefault("Retry-After", "60")

    return _problem_response(
        exc.status_code,
        type_=f"{PROBLEM_BASE}/http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        detail=detail_value,
        headers=headers or None,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 with the first offending field."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    return _problem_response(
        422,
        type_=f"{PROBLEM_BASE}/validation-error",
        title="Request Validation Failed",
        detail=f"Invalid field '{field}': {msg}",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("UNHANDLED_EXCEPTION", extra={"error_type": type(exc).__name__}, exc_info=True)
    return _problem_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        type_=f"{PROBLEM_BASE}/internal-error",
        title="Internal Server Error",
        detail="An unexpected error occurred. Please try again later.",
    )


# ============================================================================
# Application Factory
# ============================================================================


def create_app(
    settings: Optional[Settings] = None,
    *,
    rate_limiter: Optional[RateLimiter] = None,
    api_rate_limiter: Optional[RateLimiter] = None,
    sync_lock: Optional[SyncLock] = None,
    notifier: Optional[NotificationDispatcher] = None,
    portone_client: Optional[PortOneClient] = None,
    catalog: Optional[PlanCatalogModel] = None,
    otel_span_exporter=None,
    otel_metric_reader=None,
) -> FastAPI:
    """Create the payments API.

    Every collaborator can be injected (tests pass NoOp limiter/lock, a mock
    notifier and a PortOne client on httpx.MockTransport). Defaults are built
    from settings; Redis connections are opened lazily on first command.

    Args:
        settings: Resolved settings (default: Settings.from_env())
        rate_limiter: Per-IP limiter for POST /sync
        api_rate_limiter: Per-caller limiter for /v1/* routes
        sync_lock: Sync-in-progress lock
        notifier: Alert dispatcher (default: Slack if configured, else logs)
        portone_client: PortOne REST client (default: built if PORTONE_API_SECRET is set)
        catalog: Plan catalog (default: packaged plans.json)
        otel_span_exporter: Span exporter override when OTel is enabled (testing)
        otel_metric_reader: Metric reader override when OTel is enabled (testing)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings.from_env()

    if settings.json_logs:
        configure_json_logging(log_level=settings.log_level)

    new_app = FastAPI(
        title="Classraum Payments API",
        description=(
            "PortOne webhook verification, settlement/payout reconciliation and "
            "academy subscription billing. Errors use RFC 9457 Problem Details."
        ),
        version=health.SERVICE_VERSION,
        docs_url="/api-docs",
        redoc_url="/redoc",
    )

    cors_origins = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_origins:
        allowed_origins = [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
    else:
        allowed_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

    new_app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Admin-Token"],
        expose_headers=["RateLimit-Policy", "RateLimit", "Retry-After", "X-Request-ID"],
    )

    # ── Collaborators ────────────────────────────────────────────────────────
    if rate_limiter is None or api_rate_limiter is None or sync_lock is None:
        redis_client = RedisClient.get_client(settings.redis_url)
        rate_limiter = rate_limiter or RedisRateLimiter(
            redis_client, quota=settings.sync_rate_limit_per_min, window=60
        )
        api_rate_limiter = api_rate_limiter or RedisRateLimiter(redis_client, quota=60, window=60)
        sync_lock = sync_lock or RedisSyncLock(redis_client, ttl_seconds=settings.sync_lock_ttl_seconds)

    if portone_client is None and settings.portone_api_secret:
        portone_client = PortOneClient(
            settings.portone_api_secret,
            base_url=settings.portone_api_base_url,
            store_id=settings.portone_store_id,
            timeout=settings.portone_http_timeout_seconds,
        )

    notifier = notifier or build_notifier(settings.slack_webhook_url)
    catalog = catalog or load_plan_catalog()

    new_app.state.settings = settings
    new_app.state.rate_limiter = rate_limiter
    new_app.state.api_rate_limiter = api_rate_limiter
    new_app.state.sync_lock = sync_lock
    new_app.state.notifier = notifier
    new_app.state.alert_throttle = AlertThrottle(settings.webhook_alert_window_seconds)
    new_app.state.portone_client = portone_client
    new_app.state.catalog = catalog
    new_app.state.enforcement = UsageEnforcement(catalog)
    new_app.state.subscription_service = SubscriptionService(
        catalog,
        portone_client or UnconfiguredChargeGateway(),
        notifier,
        backoff_base_seconds=settings.billing_backoff_base_seconds,
        backoff_max_seconds=settings.billing_backoff_max_seconds,
        charge_lease_seconds=settings.billing_charge_lease_seconds,
    )

    # ── Routers ──────────────────────────────────────────────────────────────
    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(webhooks.router)
    new_app.include_router(sync.router)
    new_app.include_router(plans.router)
    new_app.include_router(subscriptions.router)
    new_app.include_router(usage.router)
    new_app.include_router(admin.router)

    # ── Exception handlers ───────────────────────────────────────────────────
    new_app.add_exception_handler(PlanLimitExceededError, plan_limit_handler)
    new_app.add_exception_handler(InvalidTransitionError, invalid_transition_handler)
    new_app.add_exception_handler(SubscriptionNotFoundError, subscription_not_found_handler)
    new_app.add_exception_handler(InvoiceNotFoundError, invoice_not_found_handler)
    new_app.add_exception_handler(UnknownPlanError, unknown_plan_handler)
    new_app.add_exception_handler(PaymentGatewayError, payment_gateway_handler)
    new_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    new_app.add_exception_handler(RequestValidationError, validation_exception_handler)
    new_app.add_exception_handler(Exception, general_exception_handler)

    # Instrument before the HTTP middlewares below so their work is inside the span
    new_app.state.otel_enabled = settings.otel_enabled
    if settings.otel_enabled:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        from payments_api.otel import init_otel

        providers = init_otel(
            settings.otel_service_name,
            span_exporter=otel_span_exporter,
            metric_reader=otel_metric_reader,
        )
        FastAPIInstrumentor.instrument_app(
            new_app,
            tracer_provider=providers.tracer_provider,
            meter_provider=providers.meter_provider,
        )
        new_app.state.request_duration = providers.meter_provider.get_meter(__name__).create_histogram(
            name="http.server.request.duration",
            unit="s",
            description="Measures the duration of inbound HTTP requests",
        )

    # IETF RateLimit headers for /v1/* (POST /sync has its own per-IP policy)
    @new_app.middleware("http")
    async def rate_limit_mw(request: Request, call_next):
        if not request.url.path.startswith("/v1/"):
            return await call_next(request)

        limiter: RateLimiter = new_app.state.api_rate_limiter

        auth_header = request.headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            key = auth_header[7:]
        else:
            key = request.client.host if request.client else "anonymous"

        result = limiter.check_rate_limit(key, "v1")

        rate_limit_policy = f'"{result.policy_id}"; q={result.quota}; w={result.window}'
        rate_limit = f'"{result.policy_id}"; r={result.remaining}; t={result.reset}'

        if not result.allowed:
            return _problem_response(
                429,
                type_=f"{PROBLEM_BASE}/http-429",
                title="Too Many Requests",
                detail="Rate limit exceeded. Please retry after the specified time.",
                headers={
                    "RateLimit-Policy": rate_limit_policy,
                    "RateLimit": rate_limit,
                    "Retry-After": str(result.reset),
                },
            )

        response = await call_next(request)
        if 200 <= response.status_code < 300:
            response.headers.setdefault("RateLimit-Policy", rate_limit_policy)
            response.headers.setdefault("RateLimit", rate_limit)
        return response

    @new_app.middleware("http")
    async def completion_logging_mw(request: Request, call_next):
        """Emit "http.request.completed" for every request, even on exceptions."""
        academy_id_var.set("")
        webhook_id_var.set("")

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_seconds = time.perf_counter() - start_time
            log_extra = {
                "event": "http.request.completed",
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
            }
            if new_app.state.otel_enabled:
                from payments_api.otel import current_trace_ids

                log_extra.update(current_trace_ids())
                new_app.state.request_duration.record(
                    duration_seconds,
                    attributes={
                        "http.request.method": request.method,
                        "http.response.status_code": status_code,
                        "url.scheme": request.url.scheme,
                    },
                )
            logger.info("http.request.completed", extra=log_extra)
            academy_id_var.set("")
            webhook_id_var.set("")

    # Request ID middleware (registered last = outermost)
    @new_app.middleware("http")
    async def request_id_mw(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    return new_app


app = create_app()

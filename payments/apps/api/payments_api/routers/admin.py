"""Admin endpoints for subscription suspension and invoice refunds.

WARNING: These endpoints are for authorized operators only.
- Protected by X-Admin-Token header (ADMIN_TOKEN)
- All actions are written to subscription_audit_logs
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from payments_api.billing.subscription import SubscriptionService
from payments_api.config.env import Settings
from payments_api.context import academy_id_var, request_id_var
from payments_api.db.session import get_db
from payments_api.routers.subscriptions import get_subscription_service, subscription_out
from payments_api.schemas import InvoiceOut, RefundRequest, SubscriptionOut, SuspendRequest

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def require_admin(
    request: Request,
    x_admin_token: str = Header(..., alias="X-Admin-Token"),
) -> str:
    """Verify X-Admin-Token (constant-time). Returns the actor label for audit logs.

    Raises:
        HTTPException 401: Invalid token
        HTTPException 500: ADMIN_TOKEN not configured
    """
    settings: Settings = request.app.state.settings
    if not settings.admin_token:
        logger.error("ADMIN_TOKEN_NOT_CONFIGURED")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin token not configured on server",
        )

    if not secrets.compare_digest(x_admin_token, settings.admin_token):
        logger.warning(
            "ADMIN_AUTH_FAILED",
            extra={"event": "admin.auth_failed", "request_id": request_id_var.get()},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-Admin-Token",
            headers={"WWW-Authenticate": "Header"},
        )
    return f"admin@{_client_ip(request)}"


@router.post("/academies/{academy_id}/subscription/suspend", response_model=SubscriptionOut)
async def suspend_subscription(
    academy_id: str,
    body: SuspendRequest,
    actor: str = Depends(require_admin),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionOut:
    """Suspend an active or past-due subscription. A reason is mandatory."""
    academy_id_var.set(academy_id)
    try:
        subscription = service.suspend(db, academy_id, body.reason, actor=actor)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return subscription_out(subscription)


@router.post("/academies/{academy_id}/subscription/reinstate", response_model=SubscriptionOut)
async def reinstate_subscription(
    academy_id: str,
    actor: str = Depends(require_admin),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionOut:
    academy_id_var.set(academy_id)
    return subscription_out(service.reinstate(db, academy_id, actor=actor))


@router.post("/invoices/{invoice_id}/refund", response_model=InvoiceOut)
async def refund_invoice(
    invoice_id: int,
    body: RefundRequest,
    actor: str = Depends(require_admin),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> InvoiceOut:
    """Refund a paid invoice through PortOne (full unless amount is given).

    Errors:
        400: Blank reason or amount above the invoice amount
        404: Unknown invoice
        409: Invoice not paid (already refunded, failed, pending)
        402/502: PortOne refused or is unavailable
    """
    try:
        invoice = await service.refund_invoice(
            db, invoice_id, reason=body.reason, amount=body.amount, actor=actor
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    academy_id_var.set(invoice.academy_id)
    return InvoiceOut.model_validate(invoice)

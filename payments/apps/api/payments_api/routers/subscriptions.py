"""Academy subscription endpoints (checkout, cancel/resume, plan changes, invoices)."""

import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from payments_api.billing.subscription import SubscriptionService, lifecycle_state
from payments_api.context import academy_id_var
from payments_api.db.models import Subscription
from payments_api.db.repo_subscriptions import list_invoices
from payments_api.db.session import get_db
from payments_api.schemas import (
    ChangePlanRequest,
    CheckoutOut,
    CheckoutRequest,
    InvoiceOut,
    PlanChangeOut,
    ProrationQuoteOut,
    SubscriptionOut,
)

router = APIRouter(prefix="/v1/academies/{academy_id}", tags=["subscriptions"])
logger = logging.getLogger(__name__)


def get_subscription_service(request: Request) -> SubscriptionService:
    return request.app.state.subscription_service


def subscription_out(subscription: Subscription) -> SubscriptionOut:
    return SubscriptionOut(
        academy_id=subscription.academy_id,
        plan_tier=subscription.plan_tier,
        billing_cycle=subscription.billing_cycle,
        status=subscription.status,
        lifecycle_state=lifecycle_state(subscription),
        amount=subscription.amount,
        auto_renew=subscription.auto_renew,
        has_billing_key=bool(subscription.billing_key),
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        next_payment_at=subscription.next_payment_at,
        pending_tier=subscription.pending_tier,
        failed_attempts=subscription.failed_attempts,
        suspended_reason=subscription.suspended_reason,
    )


@router.get("/subscription", response_model=SubscriptionOut)
async def get_subscription(
    academy_id: str,
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionOut:
    """Current subscription (a free one is created on first read)."""
    academy_id_var.set(academy_id)
    return subscription_out(service.get(db, academy_id))


@router.post("/subscription/checkout", response_model=CheckoutOut, status_code=201)
async def checkout(
    academy_id: str,
    body: CheckoutRequest,
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CheckoutOut:
    """Start a paid plan and charge the first period with the billing key.

    Raises:
        409: Subscription is not free
        402/502: Charge declined / gateway unavailable (invoice recorded as failed)
    """
    academy_id_var.set(academy_id)
    subscription, invoice = await service.checkout(
        db,
        academy_id,
        tier=body.plan_tier,
        billing_cycle=body.billing_cycle,
        billing_key=body.billing_key,
        customer_name=body.customer_name,
    )
    return CheckoutOut(
        subscription=subscription_out(subscription),
        invoice=InvoiceOut.model_validate(invoice),
    )


@router.post("/subscription/cancel", response_model=SubscriptionOut)
async def cancel(
    academy_id: str,
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionOut:
    academy_id_var.set(academy_id)
    return subscription_out(service.cancel(db, academy_id))


@router.post("/subscription/resume", response_model=SubscriptionOut)
async def resume(
    academy_id: str,
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionOut:
    academy_id_var.set(academy_id)
    return subscription_out(service.resume(db, academy_id))


@router.get("/subscription/proration", response_model=ProrationQuoteOut)
async def proration_quote(
    academy_id: str,
    to_tier: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> ProrationQuoteOut:
    """Quote the charge for switching to `to_tier` now."""
    academy_id_var.set(academy_id)
    return ProrationQuoteOut.model_validate(service.quote_plan_change(db, academy_id, to_tier))


@router.post("/subscription/change-plan", response_model=PlanChangeOut)
async def change_plan(
    academy_id: str,
    body: ChangePlanRequest,
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> PlanChangeOut:
    """Upgrade immediately (prorated charge) or schedule a downgrade for renewal."""
    academy_id_var.set(academy_id)
    subscription, proration, invoice = await service.change_plan(db, academy_id, body.to_tier)
    return PlanChangeOut(
        subscription=subscription_out(subscription),
        proration=ProrationQuoteOut.model_validate(proration),
        invoice=InvoiceOut.model_validate(invoice) if invoice is not None else None,
    )


@router.get("/invoices", response_model=list[InvoiceOut])
async def invoices(
    academy_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
) -> list[InvoiceOut]:
    academy_id_var.set(academy_id)
    return [InvoiceOut.model_validate(invoice) for invoice in list_invoices(db, academy_id, limit)]

"""Subscription billing state machine.

Stored status: free | active | past_due | suspended

    free ──checkout──▶ active ◀──charge ok── past_due
                        │  ╲────charge failed──▶ │
                        │                         │
             cancel (auto_renew=False)     suspend(reason) ──▶ suspended
                        │                                          │
             period end passes ──▶ free              reinstate ──▶ active

A cancelled subscription keeps its stored status until current_period_end
passes; lifecycle_state() reports it as "cancelling". Expiry to free is lazy:
expire_cancelled() on the billing tick and _expire_if_due() on every read.

Charging: the pending invoice is the charge claim. It is written under the
subscription row lock and committed before the gateway call, so a crash
mid-charge leaves a visible pending invoice rather than an unrecorded payment,
and a second checkout, upgrade or renewal sees the claim and backs off. A
claim older than charge_lease_seconds is treated as abandoned.
No retries here; a failed renewal moves next_payment_at out by backoff and the
recurring billing run picks it up again.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payments_api.billing.backoff import backoff_seconds
from payments_api.billing.notifications import NotificationDispatcher
from payments_api.billing.proration import ProrationQuote, quote
from payments_api.db.models import Invoice, Subscription
from payments_api.db.repo_subscriptions import (
    RENEWABLE_STATUSES,
    create_invoice,
    get_invoice_for_update,
    get_or_create_subscription,
    get_pending_invoice,
    list_expired_cancellations,
    lock_due_subscription,
    lock_subscription,
    mark_invoice_failed,
    mark_invoice_paid,
    mark_invoice_refunded,
    record_audit,
)
from payments_api.errors import (
    InvalidTransitionError,
    InvoiceNotFoundError,
    PaymentGatewayError,
    SubscriptionNotFoundError,
)
from payments_api.pricing.models import PlanCatalogModel
from payments_api.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


class ChargeGateway(Protocol):
    async def charge_billing_key(
        self,
        *,
        payment_id: str,
        billing_key: str,
        order_name: str,
        amount: int,
        currency: str = "KRW",
        customer_name: Optional[str] = None,
    ) -> dict: ...

    async def cancel_payment(
        self,
        *,
        payment_id: str,
        reason: str,
        amount: Optional[int] = None,
        current_cancellable_amount: Optional[int] = None,
    ) -> dict: ...


def lifecycle_state(subscription: Subscription) -> str:
    """Stored status, or "cancelling" for a paid subscription that will not renew."""
    if subscription.status in RENEWABLE_STATUSES and not subscription.auto_renew:
        return "cancelling"
    return subscription.status


def new_payment_id(prefix: str, subscription_id: int, now: datetime) -> str:
    return f"{prefix}_{subscription_id}_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


class SubscriptionService:
    def __init__(
        self,
        catalog: PlanCatalogModel,
        gateway: ChargeGateway,
        notifier: NotificationDispatcher,
        *,
        backoff_base_seconds: int = 3600,
        backoff_max_seconds: int = 259200,
        charge_lease_seconds: int = 900,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.notifier = notifier
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.charge_lease_seconds = charge_lease_seconds
        self._clock = clock or utcnow
        self._rng = rng

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, db: Session, academy_id: str) -> Subscription:
        """Subscription for the academy (created as free on first read)."""
        subscription = get_or_create_subscription(db, academy_id)
        self._expire_if_due(db, subscription, self.now())
        db.commit()
        return subscription

    def _locked(self, db: Session, academy_id: str) -> Subscription:
        get_or_create_subscription(db, academy_id)
        subscription = lock_subscription(db, academy_id)
        if subscription is None:
            raise SubscriptionNotFoundError(academy_id)
        return subscription

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def checkout(
        self,
        db: Session,
        academy_id: str,
        *,
        tier: str,
        billing_cycle: str,
        billing_key: str,
        customer_name: Optional[str] = None,
    ) -> tuple[Subscription, Invoice]:
        """Start a paid subscription and charge the first period.

        Raises:
            InvalidTransitionError: Subscription is not free, or the plan is not self-serve
            UnknownPlanError: Tier not in the catalog
            PaymentGatewayError: First charge declined (invoice marked failed)
        """
        now = self.now()
        subscription = self._locked(db, academy_id)
        self._expire_if_due(db, subscription, now)

        if subscription.status != "free":
            raise InvalidTransitionError(subscription.status, "checkout")

        plan = self.catalog.get_plan(tier)
        amount = plan.price(billing_cycle)
        if plan.custom_pricing or amount <= 0:
            raise InvalidTransitionError(
                subscription.status,
                "checkout",
                detail=f"Plan '{tier}' is not available for self-serve checkout",
            )

        period_end = now + timedelta(days=self.catalog.days_in_cycle(billing_cycle))
        invoice = self._claim_charge(
            db,
            subscription,
            "checkout",
            now,
            payment_id=new_payment_id("subscription", subscription.id, now),
            amount=amount,
            due_date=now,
            description=f"{plan.display_name} subscription ({billing_cycle})",
            plan_tier=tier,
            billing_cycle=billing_cycle,
            billing_period_start=now,
            billing_period_end=period_end,
        )
        db.commit()

        await self._charge(
            db,
            subscription,
            invoice,
            billing_key=billing_key,
            order_name=f"{plan.display_name} subscription",
            customer_name=customer_name,
        )

        subscription.plan_tier = tier
        subscription.billing_cycle = billing_cycle
        subscription.amount = amount
        subscription.billing_key = billing_key
        subscription.auto_renew = True
        subscription.pending_tier = None
        subscription.suspended_reason = None
        self._start_period(subscription, now, period_end)
        record_audit(
            db,
            "checkout",
            academy_id,
            details={"tier": tier, "billing_cycle": billing_cycle, "invoice_id": invoice.id},
        )
        db.commit()

        logger.info(
            "SUBSCRIPTION_ACTIVATED",
            extra={"academy_id": academy_id, "tier": tier, "billing_cycle": billing_cycle},
        )
        return subscription, invoice

    # ------------------------------------------------------------------
    # Cancel / resume
    # ------------------------------------------------------------------

    def cancel(self, db: Session, academy_id: str, actor: Optional[str] = None) -> Subscription:
        """Stop renewal; the subscription stays usable until current_period_end."""
        subscription = self._locked(db, academy_id)
        if subscription.status not in RENEWABLE_STATUSES:
            raise InvalidTransitionError(subscription.status, "cancel")

        if subscription.auto_renew:
            subscription.auto_renew = False
            record_audit(
                db,
                "cancel",
                academy_id,
                actor=actor,
                details={"current_period_end": _iso(subscription.current_period_end)},
            )
            logger.info("SUBSCRIPTION_CANCELLED", extra={"academy_id": academy_id})
        db.commit()
        return subscription

    def resume(self, db: Session, academy_id: str, actor: Optional[str] = None) -> Subscription:
        """Undo cancel while the paid period is still running."""
        now = self.now()
        subscription = self._locked(db, academy_id)
        if subscription.status not in RENEWABLE_STATUSES:
            raise InvalidTransitionError(subscription.status, "resume")

        period_end = as_utc(subscription.current_period_end)
        if period_end is None or period_end <= now:
            raise InvalidTransitionError(
                subscription.status,
                "resume",
                detail="The billing period has ended; start a new checkout instead",
            )

        if not subscription.auto_renew:
            subscription.auto_renew = True
            if subscription.next_payment_at is None:
                subscription.next_payment_at = period_end
            record_audit(db, "resume", academy_id, actor=actor)
            logger.info("SUBSCRIPTION_RESUMED", extra={"academy_id": academy_id})
        db.commit()
        return subscription

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    def quote_plan_change(self, db: Session, academy_id: str, to_tier: str) -> ProrationQuote:
        """
        Raises:
            InvalidTransitionError: Subscription is not active
            UnknownPlanError: Target tier not in the catalog
        """
        subscription = self.get(db, academy_id)
        if subscription.status != "active":
            raise InvalidTransitionError(subscription.status, "change plan")
        return quote(
            self.catalog,
            from_tier=subscription.plan_tier,
            to_tier=to_tier,
            billing_cycle=subscription.billing_cycle,
            period_end=subscription.current_period_end,
            now=self.now(),
        )

    async def change_plan(
        self,
        db: Session,
        academy_id: str,
        to_tier: str,
        *,
        customer_name: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> tuple[Subscription, ProrationQuote, Optional[Invoice]]:
        """Upgrade now (charging the prorated delta) or schedule a downgrade.

        Moving to free is a cancellation at period end.

        Raises:
            InvalidTransitionError: Not active, same tier, or custom-priced target
            UnknownPlanError: Target tier not in the catalog
            PaymentGatewayError: Prorated charge declined (tier unchanged)
        """
        now = self.now()
        subscription = self._locked(db, academy_id)
        self._expire_if_due(db, subscription, now)

        if subscription.status != "active":
            raise InvalidTransitionError(subscription.status, "change plan")
        if to_tier == subscription.plan_tier:
            raise InvalidTransitionError(
                subscription.status,
                "change plan",
                detail=f"Subscription is already on the '{to_tier}' plan",
            )
        target = self.catalog.get_plan(to_tier)
        if target.custom_pricing:
            raise InvalidTransitionError(
                subscription.status,
                "change plan",
                detail=f"Plan '{to_tier}' requires a custom contract",
            )

        proration = quote(
            self.catalog,
            from_tier=subscription.plan_tier,
            to_tier=to_tier,
            billing_cycle=subscription.billing_cycle,
            period_end=subscription.current_period_end,
            now=now,
        )

        if to_tier == "free":
            subscription.auto_renew = False
            subscription.pending_tier = None
            record_audit(db, "cancel", academy_id, actor=actor, details={"via": "change_plan"})
            db.commit()
            return subscription, proration, None

        if not proration.is_upgrade:
            subscription.pending_tier = to_tier
            record_audit(
                db,
                "plan_downgrade_scheduled",
                academy_id,
                actor=actor,
                details={"from_tier": subscription.plan_tier, "to_tier": to_tier},
            )
            db.commit()
            logger.info(
                "SUBSCRIPTION_DOWNGRADE_SCHEDULED",
                extra={"academy_id": academy_id, "to_tier": to_tier},
            )
            return subscription, proration, None

        invoice: Optional[Invoice] = None
        if proration.prorated_amount > 0:
            if not subscription.billing_key:
                raise InvalidTransitionError(
                    subscription.status,
                    "change plan",
                    detail="No billing key on file for the prorated charge",
                )
            invoice = self._claim_charge(
                db,
                subscription,
                "change plan",
                now,
                payment_id=new_payment_id("upgrade", subscription.id, now),
                amount=proration.prorated_amount,
                due_date=now,
                description=(
                    f"Upgrade {subscription.plan_tier} → {to_tier} "
                    f"({proration.days_remaining}/{proration.cycle_total_days} days)"
                ),
                plan_tier=to_tier,
                billing_cycle=subscription.billing_cycle,
                billing_period_start=now,
                billing_period_end=subscription.current_period_end,
            )
            db.commit()
            await self._charge(
                db,
                subscription,
                invoice,
                billing_key=subscription.billing_key,
                order_name=f"{target.display_name} upgrade",
                customer_name=customer_name,
            )

        from_tier = subscription.plan_tier
        subscription.plan_tier = to_tier
        subscription.amount = target.price(subscription.billing_cycle)
        subscription.pending_tier = None
        record_audit(
            db,
            "plan_upgraded",
            academy_id,
            actor=actor,
            details={
                "from_tier": from_tier,
                "to_tier": to_tier,
                "prorated_amount": proration.prorated_amount,
            },
        )
        db.commit()
        logger.info(
            "SUBSCRIPTION_UPGRADED",
            extra={
                "academy_id": academy_id,
                "from_tier": from_tier,
                "to_tier": to_tier,
                "prorated_amount": proration.prorated_amount,
            },
        )
        return subscription, proration, invoice

    # ------------------------------------------------------------------
    # Administrative
    # ------------------------------------------------------------------

    def suspend(self, db: Session, academy_id: str, reason: str, actor: Optional[str] = None) -> Subscription:
        """
        Raises:
            ValueError: Empty reason
            InvalidTransitionError: Not active / past_due
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("A suspension reason is required")

        subscription = self._locked(db, academy_id)
        if subscription.status not in RENEWABLE_STATUSES:
            raise InvalidTransitionError(subscription.status, "suspend")

        previous = subscription.status
        subscription.status = "suspended"
        subscription.suspended_reason = reason
        record_audit(
            db,
            "suspend",
            academy_id,
            actor=actor,
            details={"previous_status": previous, "reason": reason},
        )
        db.commit()
        logger.warning(
            "SUBSCRIPTION_SUSPENDED",
            extra={"academy_id": academy_id, "previous_status": previous, "actor": actor},
        )
        return subscription

    def reinstate(self, db: Session, academy_id: str, actor: Optional[str] = None) -> Subscription:
        subscription = self._locked(db, academy_id)
        if subscription.status != "suspended":
            raise InvalidTransitionError(subscription.status, "reinstate")

        subscription.status = "active"
        subscription.suspended_reason = None
        subscription.failed_attempts = 0
        record_audit(db, "reinstate", academy_id, actor=actor)
        db.commit()
        logger.info("SUBSCRIPTION_REINSTATED", extra={"academy_id": academy_id, "actor": actor})
        return subscription

    async def refund_invoice(
        self,
        db: Session,
        invoice_id: int,
        *,
        reason: str,
        amount: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> Invoice:
        """Cancel a paid invoice's PortOne payment, in full or partially.

        The invoice row stays locked across the PortOne call so two admins
        cannot refund the same invoice. One refund per invoice.

        Raises:
            ValueError: Empty reason, or amount outside 1..invoice.amount
            InvoiceNotFoundError: No such invoice
            InvalidTransitionError: Invoice is not paid or has no PortOne payment id
            PaymentGatewayError: PortOne refused the cancellation (invoice unchanged)
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("A refund reason is required")

        invoice = get_invoice_for_update(db, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        if invoice.status != "paid":
            raise InvalidTransitionError(invoice.status, "refund")
        if not invoice.payment_id:
            raise InvalidTransitionError(
                invoice.status, "refund", detail="Invoice has no PortOne payment id"
            )

        full = amount is None or amount == invoice.amount
        refund_amount = invoice.amount if amount is None else amount
        if refund_amount <= 0 or refund_amount > invoice.amount:
            raise ValueError(f"Refund amount must be between 1 and {invoice.amount}")

        try:
            await self.gateway.cancel_payment(
                payment_id=invoice.payment_id,
                reason=reason,
                amount=None if full else refund_amount,
                current_cancellable_amount=None if full else invoice.amount,
            )
        except PaymentGatewayError as exc:
            db.rollback()
            logger.error(
                "INVOICE_REFUND_FAILED",
                extra={"invoice_id": invoice_id, "reason": exc.reason, "actor": actor},
            )
            raise

        now = self.now()
        mark_invoice_refunded(db, invoice, refund_amount, reason, now)
        record_audit(
            db,
            "invoice_refunded",
            invoice.academy_id,
            actor=actor,
            details={
                "invoice_id": invoice.id,
                "refund_type": "full" if full else "partial",
                "amount": refund_amount,
                "reason": reason,
            },
        )
        db.commit()
        logger.warning(
            "INVOICE_REFUNDED",
            extra={
                "invoice_id": invoice.id,
                "academy_id": invoice.academy_id,
                "amount": refund_amount,
                "actor": actor,
            },
        )
        return invoice

    # ------------------------------------------------------------------
    # Scheduled transitions
    # ------------------------------------------------------------------

    def expire_cancelled(self, db: Session, now: Optional[datetime] = None) -> int:
        """Move non-renewing subscriptions past their period end to free."""
        now = now or self.now()
        expired = 0
        for subscription in list_expired_cancellations(db, now):
            if self._expire_if_due(db, subscription, now):
                expired += 1
        db.commit()
        if expired:
            logger.info("SUBSCRIPTIONS_EXPIRED", extra={"count": expired})
        return expired

    async def renew(
        self,
        db: Session,
        subscription: Subscription,
        now: Optional[datetime] = None,
        *,
        max_attempts: Optional[int] = None,
    ) -> Optional[bool]:
        """Charge one renewal.

        Returns True on success, False on a declined charge and None when the
        subscription is no longer due (cancelled, renewed or suspended since it
        was selected) or another worker holds it. Applies a scheduled downgrade.
        The caller checks billing_key first.
        """
        now = now or self.now()
        academy_id = subscription.academy_id
        subscription = lock_due_subscription(db, subscription.id, now, max_attempts=max_attempts)
        if subscription is None:
            db.rollback()
            logger.info("BILLING_RENEWAL_NOT_DUE", extra={"academy_id": academy_id})
            return None

        tier = subscription.pending_tier or subscription.plan_tier
        plan = self.catalog.get_plan(tier)
        amount = plan.price(subscription.billing_cycle)
        period_end = now + timedelta(days=self.catalog.days_in_cycle(subscription.billing_cycle))

        try:
            invoice = self._claim_charge(
                db,
                subscription,
                "renew",
                now,
                payment_id=new_payment_id("subscription", subscription.id, now),
                amount=amount,
                due_date=as_utc(subscription.next_payment_at) or now,
                description=f"{plan.display_name} subscription renewal ({subscription.billing_cycle})",
                plan_tier=tier,
                billing_cycle=subscription.billing_cycle,
                billing_period_start=now,
                billing_period_end=period_end,
                attempt=subscription.failed_attempts + 1,
            )
        except InvalidTransitionError:
            db.rollback()
            logger.info("BILLING_RENEWAL_IN_FLIGHT", extra={"academy_id": academy_id})
            return None
        db.commit()

        try:
            await self._charge(
                db,
                subscription,
                invoice,
                billing_key=subscription.billing_key or "",
                order_name=f"{plan.display_name} subscription",
            )
        except PaymentGatewayError:
            subscription.status = "past_due"
            subscription.failed_attempts += 1
            delay = backoff_seconds(
                subscription.failed_attempts,
                base=self.backoff_base_seconds,
                cap=self.backoff_max_seconds,
                rng=self._rng,
            )
            subscription.next_payment_at = now + timedelta(seconds=delay)
            db.commit()
            logger.warning(
                "SUBSCRIPTION_PAST_DUE",
                extra={
                    "academy_id": subscription.academy_id,
                    "failed_attempts": subscription.failed_attempts,
                    "retry_in_seconds": delay,
                },
            )
            return False

        if subscription.pending_tier:
            record_audit(
                db,
                "plan_downgrade_applied",
                subscription.academy_id,
                details={"from_tier": subscription.plan_tier, "to_tier": tier},
            )
        subscription.plan_tier = tier
        subscription.amount = amount
        subscription.pending_tier = None
        self._start_period(subscription, now, period_end)
        db.commit()
        logger.info(
            "SUBSCRIPTION_RENEWED",
            extra={"academy_id": subscription.academy_id, "tier": tier, "amount": amount},
        )
        return True

    # ------------------------------------------------------------------

    def _claim_charge(
        self,
        db: Session,
        subscription: Subscription,
        action: str,
        now: datetime,
        **invoice_fields,
    ) -> Invoice:
        """Write the pending invoice that claims the subscription's next charge.

        Call with the subscription row locked; the caller commits before charging.

        Raises:
            InvalidTransitionError: Another charge for the subscription is in flight
        """
        status = subscription.status
        pending = get_pending_invoice(db, subscription.id)
        if pending is not None:
            started = as_utc(pending.created_at)
            if started is not None and now - started < timedelta(seconds=self.charge_lease_seconds):
                raise InvalidTransitionError(
                    status,
                    action,
                    detail="A charge for this subscription is already in progress",
                )
            # Settlement webhooks may still confirm it (failed → paid)
            mark_invoice_failed(db, pending, "CHARGE_ABANDONED", now)
            logger.warning(
                "INVOICE_CLAIM_ABANDONED",
                extra={
                    "invoice_id": pending.id,
                    "academy_id": subscription.academy_id,
                    "payment_id": pending.payment_id,
                },
            )

        try:
            return create_invoice(
                db,
                academy_id=subscription.academy_id,
                subscription_id=subscription.id,
                created_at=now,
                **invoice_fields,
            )
        except IntegrityError:
            # Lost the race on uq_invoices_pending_subscription
            db.rollback()
            raise InvalidTransitionError(
                status,
                action,
                detail="A charge for this subscription is already in progress",
            ) from None

    async def _charge(
        self,
        db: Session,
        subscription: Subscription,
        invoice: Invoice,
        *,
        billing_key: str,
        order_name: str,
        customer_name: Optional[str] = None,
    ) -> None:
        """Charge the invoice; marks it paid or failed and commits the invoice.

        Raises:
            PaymentGatewayError: Charge declined or gateway unreachable
        """
        now = self.now()
        try:
            await self.gateway.charge_billing_key(
                payment_id=invoice.payment_id,
                billing_key=billing_key,
                order_name=order_name,
                amount=invoice.amount,
                customer_name=customer_name,
            )
        except PaymentGatewayError as exc:
            mark_invoice_failed(db, invoice, exc.reason, now)
            db.commit()
            await self.notifier.billing_charge_failed(subscription.academy_id, invoice.amount, exc.reason)
            raise

        mark_invoice_paid(db, invoice, now)
        db.commit()

    def _start_period(self, subscription: Subscription, start: datetime, end: datetime) -> None:
        subscription.status = "active"
        subscription.current_period_start = start
        subscription.current_period_end = end
        subscription.next_payment_at = end
        subscription.last_payment_at = start
        subscription.failed_attempts = 0

    def _expire_if_due(self, db: Session, subscription: Subscription, now: datetime) -> bool:
        """Lazy cancelling → free transition; caller commits."""
        if subscription.status not in RENEWABLE_STATUSES or subscription.auto_renew:
            return False
        period_end = as_utc(subscription.current_period_end)
        if period_end is None or period_end > now:
            return False

        previous_tier = subscription.plan_tier
        subscription.status = "free"
        subscription.plan_tier = "free"
        subscription.amount = 0
        subscription.billing_key = None
        subscription.pending_tier = None
        subscription.next_payment_at = None
        subscription.failed_attempts = 0
        record_audit(
            db,
            "expired",
            subscription.academy_id,
            details={"previous_tier": previous_tier, "period_end": _iso(period_end)},
        )
        logger.info(
            "SUBSCRIPTION_EXPIRED_TO_FREE",
            extra={"academy_id": subscription.academy_id, "previous_tier": previous_tier},
        )
        return True


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None

"""Unit tests for the subscription state machine.

The charge gateway is an AsyncMock; time is driven through an injected clock.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from payments_api.billing.subscription import SubscriptionService, lifecycle_state
from payments_api.db.repo_subscriptions import get_subscription, list_audit, list_invoices
from payments_api.errors import (
    InvalidTransitionError,
    InvoiceNotFoundError,
    PaymentGatewayError,
    UnknownPlanError,
)
from payments_api.utils.clock import as_utc

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
ACADEMY = "academy_1"


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> Clock:
    return Clock(T0)


@pytest.fixture
def gateway() -> AsyncMock:
    gateway = AsyncMock()
    gateway.charge_billing_key.return_value = {"payment": {"status": "PAID"}}
    return gateway


@pytest.fixture
def service(catalog, gateway, notifier, clock) -> SubscriptionService:
    return SubscriptionService(catalog, gateway, notifier, clock=clock, rng=lambda: 0.5)


async def _checkout(service, db, tier="basic", cycle="monthly"):
    return await service.checkout(db, ACADEMY, tier=tier, billing_cycle=cycle, billing_key="bk_1")


def test_first_read_creates_free_subscription(service, db_session):
    subscription = service.get(db_session, ACADEMY)

    assert subscription.status == "free"
    assert subscription.plan_tier == "free"
    assert subscription.amount == 0
    assert lifecycle_state(subscription) == "free"


@pytest.mark.asyncio
async def test_checkout_activates_and_charges(service, gateway, db_session):
    subscription, invoice = await _checkout(service, db_session)

    assert subscription.status == "active"
    assert subscription.plan_tier == "basic"
    assert subscription.amount == 50000
    assert subscription.auto_renew is True
    assert as_utc(subscription.current_period_end) == T0 + timedelta(days=30)
    assert as_utc(subscription.next_payment_at) == T0 + timedelta(days=30)
    assert invoice.status == "paid"
    assert invoice.amount == 50000

    kwargs = gateway.charge_billing_key.await_args.kwargs
    assert kwargs["amount"] == 50000
    assert kwargs["billing_key"] == "bk_1"
    assert kwargs["payment_id"] == invoice.payment_id


@pytest.mark.asyncio
async def test_checkout_declined_leaves_failed_invoice(service, gateway, notifier, db_session):
    gateway.charge_billing_key.side_effect = PaymentGatewayError("CARD_DECLINED", status_code=400)

    with pytest.raises(PaymentGatewayError):
        await _checkout(service, db_session)

    db_session.expire_all()
    assert service.get(db_session, ACADEMY).status == "free"
    invoices = list_invoices(db_session, ACADEMY)
    assert [inv.status for inv in invoices] == ["failed"]
    assert invoices[0].failure_reason == "CARD_DECLINED"
    notifier.billing_charge_failed.assert_awaited_once_with(ACADEMY, 50000, "CARD_DECLINED")


@pytest.mark.asyncio
async def test_checkout_twice_rejected(service, db_session):
    await _checkout(service, db_session)

    with pytest.raises(InvalidTransitionError):
        await _checkout(service, db_session, tier="pro")


@pytest.mark.asyncio
async def test_checkout_custom_priced_plan_rejected(service, gateway, db_session):
    with pytest.raises(InvalidTransitionError):
        await _checkout(service, db_session, tier="enterprise")
    with pytest.raises(UnknownPlanError):
        await _checkout(service, db_session, tier="platinum")

    gateway.charge_billing_key.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_keeps_access_until_period_end(service, clock, db_session):
    await _checkout(service, db_session)

    subscription = service.cancel(db_session, ACADEMY, actor="USER")
    assert subscription.status == "active"
    assert lifecycle_state(subscription) == "cancelling"

    clock.advance(days=29)
    assert service.get(db_session, ACADEMY).status == "active"

    clock.advance(days=2)
    expired = service.get(db_session, ACADEMY)
    assert expired.status == "free"
    assert expired.plan_tier == "free"
    assert expired.billing_key is None

    events = [entry.event_type for entry in list_audit(db_session, ACADEMY)]
    assert events == ["checkout", "cancel", "expired"]


@pytest.mark.asyncio
async def test_resume_before_period_end(service, clock, db_session):
    await _checkout(service, db_session)
    service.cancel(db_session, ACADEMY)

    clock.advance(days=10)
    subscription = service.resume(db_session, ACADEMY)

    assert subscription.auto_renew is True
    assert lifecycle_state(subscription) == "active"


@pytest.mark.asyncio
async def test_resume_after_period_end_rejected(service, clock, db_session):
    await _checkout(service, db_session)
    service.cancel(db_session, ACADEMY)
    clock.advance(days=31)

    with pytest.raises(InvalidTransitionError):
        service.resume(db_session, ACADEMY)


def test_cancel_free_rejected(service, db_session):
    with pytest.raises(InvalidTransitionError) as exc_info:
        service.cancel(db_session, ACADEMY)
    assert exc_info.value.from_status == "free"


@pytest.mark.asyncio
async def test_mid_cycle_upgrade_charges_prorated_delta(service, gateway, clock, db_session):
    await _checkout(service, db_session)
    clock.advance(days=15)

    subscription, proration, invoice = await service.change_plan(db_session, ACADEMY, "pro")

    assert proration.days_remaining == 15
    assert proration.prorated_amount == 50000
    assert invoice.amount == 50000
    assert invoice.status == "paid"
    assert subscription.plan_tier == "pro"
    assert subscription.amount == 150000
    # period is unchanged by an upgrade
    assert as_utc(subscription.current_period_end) == T0 + timedelta(days=30)
    assert gateway.charge_billing_key.await_count == 2


@pytest.mark.asyncio
async def test_upgrade_declined_keeps_tier(service, gateway, clock, db_session):
    await _checkout(service, db_session)
    clock.advance(days=15)
    gateway.charge_billing_key.side_effect = PaymentGatewayError("CARD_DECLINED", status_code=400)

    with pytest.raises(PaymentGatewayError):
        await service.change_plan(db_session, ACADEMY, "pro")

    db_session.expire_all()
    assert service.get(db_session, ACADEMY).plan_tier == "basic"


@pytest.mark.asyncio
async def test_downgrade_is_scheduled_and_applied_on_renewal(service, gateway, clock, db_session):
    await _checkout(service, db_session, tier="pro")

    subscription, proration, invoice = await service.change_plan(db_session, ACADEMY, "basic")
    assert invoice is None
    assert proration.prorated_amount == 0
    assert subscription.plan_tier == "pro"
    assert subscription.pending_tier == "basic"

    clock.advance(days=30)
    assert await service.renew(db_session, subscription) is True

    assert subscription.plan_tier == "basic"
    assert subscription.pending_tier is None
    assert subscription.amount == 50000
    assert gateway.charge_billing_key.await_args.kwargs["amount"] == 50000


@pytest.mark.asyncio
async def test_change_to_same_tier_rejected(service, db_session):
    await _checkout(service, db_session)

    with pytest.raises(InvalidTransitionError):
        await service.change_plan(db_session, ACADEMY, "basic")


@pytest.mark.asyncio
async def test_quote_plan_change(service, clock, db_session):
    await _checkout(service, db_session)
    clock.advance(days=20)

    proration = service.quote_plan_change(db_session, ACADEMY, "pro")

    assert proration.days_remaining == 10
    assert proration.prorated_amount == 33333


@pytest.mark.asyncio
async def test_declined_renewal_goes_past_due_with_backoff(service, gateway, clock, db_session):
    subscription, _ = await _checkout(service, db_session)
    clock.advance(days=30)
    gateway.charge_billing_key.side_effect = PaymentGatewayError("CARD_DECLINED", status_code=400)

    assert await service.renew(db_session, subscription) is False

    assert subscription.status == "past_due"
    assert subscription.failed_attempts == 1
    # base 3600s, first retry, rng 0.5
    assert as_utc(subscription.next_payment_at) == clock.now + timedelta(seconds=1800)

    gateway.charge_billing_key.side_effect = None
    clock.advance(hours=1)
    assert await service.renew(db_session, subscription) is True
    assert subscription.status == "active"
    assert subscription.failed_attempts == 0


@pytest.mark.asyncio
async def test_suspend_and_reinstate(service, db_session):
    await _checkout(service, db_session)

    with pytest.raises(ValueError):
        service.suspend(db_session, ACADEMY, "  ")

    suspended = service.suspend(db_session, ACADEMY, "chargeback", actor="ADMIN:ops")
    assert suspended.status == "suspended"
    assert suspended.suspended_reason == "chargeback"

    with pytest.raises(InvalidTransitionError):
        service.suspend(db_session, ACADEMY, "again")

    reinstated = service.reinstate(db_session, ACADEMY, actor="ADMIN:ops")
    assert reinstated.status == "active"
    assert reinstated.suspended_reason is None


def test_reinstate_requires_suspended(service, db_session):
    with pytest.raises(InvalidTransitionError):
        service.reinstate(db_session, ACADEMY)


@pytest.mark.asyncio
async def test_expire_cancelled_batch(service, clock, db_session):
    await _checkout(service, db_session)
    service.cancel(db_session, ACADEMY)

    assert service.expire_cancelled(db_session, T0 + timedelta(days=10)) == 0
    assert service.expire_cancelled(db_session, T0 + timedelta(days=31)) == 1
    db_session.expire_all()
    assert service.get(db_session, ACADEMY).status == "free"


# ----------------------------------------------------------------------
# One in-flight charge per subscription
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_checkout_during_inflight_charge_is_rejected(service, gateway, session_factory, db_session):
    raced = []

    async def charge_while_second_checkout_arrives(**kwargs):
        with session_factory() as other:
            with pytest.raises(InvalidTransitionError) as exc_info:
                await service.checkout(
                    other, ACADEMY, tier="pro", billing_cycle="monthly", billing_key="bk_2"
                )
            raced.append(exc_info.value.detail)
        return {"payment": {"status": "PAID"}}

    gateway.charge_billing_key.side_effect = charge_while_second_checkout_arrives

    subscription, invoice = await _checkout(service, db_session)

    assert raced == ["A charge for this subscription is already in progress"]
    assert gateway.charge_billing_key.await_count == 1
    assert subscription.plan_tier == "basic"
    assert [inv.status for inv in list_invoices(db_session, ACADEMY)] == ["paid"]


@pytest.mark.asyncio
async def test_interrupted_charge_blocks_until_claim_lease_expires(service, gateway, clock, db_session):
    gateway.charge_billing_key.side_effect = RuntimeError("worker terminated")
    with pytest.raises(RuntimeError):
        await _checkout(service, db_session)
    db_session.rollback()

    gateway.charge_billing_key.side_effect = None
    with pytest.raises(InvalidTransitionError, match="already in progress"):
        await _checkout(service, db_session)
    db_session.rollback()

    clock.advance(seconds=901)
    subscription, invoice = await _checkout(service, db_session)

    assert subscription.status == "active"
    invoices = list_invoices(db_session, ACADEMY)
    assert [inv.status for inv in invoices] == ["paid", "failed"]
    assert invoices[0].id == invoice.id
    assert invoices[1].failure_reason == "CHARGE_ABANDONED"


@pytest.mark.asyncio
async def test_overlapping_renewals_charge_once(service, gateway, clock, session_factory, db_session):
    subscription, _ = await _checkout(service, db_session)
    clock.advance(days=30)
    gateway.charge_billing_key.reset_mock()
    raced = []

    async def charge_while_second_tick_runs(**kwargs):
        with session_factory() as other:
            raced.append(await service.renew(other, get_subscription(other, ACADEMY)))
        return {"payment": {"status": "PAID"}}

    gateway.charge_billing_key.side_effect = charge_while_second_tick_runs

    assert await service.renew(db_session, subscription) is True

    assert raced == [None]
    assert gateway.charge_billing_key.await_count == 1
    assert [inv.status for inv in list_invoices(db_session, ACADEMY)] == ["paid", "paid"]


@pytest.mark.asyncio
async def test_renewal_skipped_when_cancelled_after_selection(service, gateway, clock, session_factory, db_session):
    subscription, _ = await _checkout(service, db_session)
    clock.advance(days=30)
    gateway.charge_billing_key.reset_mock()

    with session_factory() as other:
        service.cancel(other, ACADEMY)

    assert await service.renew(db_session, subscription) is None
    gateway.charge_billing_key.assert_not_awaited()


@pytest.mark.asyncio
async def test_renewal_skipped_when_out_of_attempts(service, gateway, clock, db_session):
    subscription, _ = await _checkout(service, db_session)
    subscription.failed_attempts = 4
    db_session.commit()
    clock.advance(days=30)
    gateway.charge_billing_key.reset_mock()

    assert await service.renew(db_session, subscription, max_attempts=4) is None
    gateway.charge_billing_key.assert_not_awaited()


# ----------------------------------------------------------------------
# Refunds
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_refund(service, gateway, db_session):
    _, invoice = await _checkout(service, db_session)

    refunded = await service.refund_invoice(
        db_session, invoice.id, reason="duplicate signup", actor="admin@10.0.0.1"
    )

    assert refunded.status == "refunded"
    assert refunded.refunded_amount == 50000
    assert refunded.refund_reason == "duplicate signup"
    assert as_utc(refunded.refunded_at) == T0
    gateway.cancel_payment.assert_awaited_once_with(
        payment_id=invoice.payment_id,
        reason="duplicate signup",
        amount=None,
        current_cancellable_amount=None,
    )
    audit = list_audit(db_session, ACADEMY)[-1]
    assert audit.event_type == "invoice_refunded"
    assert audit.actor == "admin@10.0.0.1"
    assert audit.details["refund_type"] == "full"


@pytest.mark.asyncio
async def test_partial_refund_only_once(service, gateway, db_session):
    _, invoice = await _checkout(service, db_session)

    refunded = await service.refund_invoice(db_session, invoice.id, reason="service outage", amount=20000)

    assert refunded.status == "partially_refunded"
    assert refunded.refunded_amount == 20000
    kwargs = gateway.cancel_payment.await_args.kwargs
    assert kwargs["amount"] == 20000
    assert kwargs["current_cancellable_amount"] == 50000

    with pytest.raises(InvalidTransitionError):
        await service.refund_invoice(db_session, invoice.id, reason="again")
    assert gateway.cancel_payment.await_count == 1


@pytest.mark.asyncio
async def test_refund_refused_by_gateway_keeps_invoice_paid(service, gateway, db_session):
    _, invoice = await _checkout(service, db_session)
    gateway.cancel_payment.side_effect = PaymentGatewayError("ALREADY_CANCELLED", status_code=409)

    with pytest.raises(PaymentGatewayError):
        await service.refund_invoice(db_session, invoice.id, reason="duplicate signup")

    db_session.expire_all()
    assert list_invoices(db_session, ACADEMY)[0].status == "paid"
    assert [e.event_type for e in list_audit(db_session, ACADEMY)] == ["checkout"]


@pytest.mark.asyncio
async def test_refund_validation(service, gateway, db_session):
    _, invoice = await _checkout(service, db_session)

    with pytest.raises(ValueError):
        await service.refund_invoice(db_session, invoice.id, reason="   ")
    with pytest.raises(ValueError):
        await service.refund_invoice(db_session, invoice.id, reason="too much", amount=50001)
    db_session.rollback()
    with pytest.raises(InvoiceNotFoundError):
        await service.refund_invoice(db_session, 9999, reason="missing")

    gateway.cancel_payment.assert_not_awaited()


@pytest.mark.asyncio
async def test_refund_requires_paid_invoice(service, gateway, db_session):
    gateway.charge_billing_key.side_effect = PaymentGatewayError("CARD_DECLINED", status_code=400)
    with pytest.raises(PaymentGatewayError):
        await _checkout(service, db_session)
    failed = list_invoices(db_session, ACADEMY)[0]

    with pytest.raises(InvalidTransitionError):
        await service.refund_invoice(db_session, failed.id, reason="nothing was charged")
    gateway.cancel_payment.assert_not_awaited()

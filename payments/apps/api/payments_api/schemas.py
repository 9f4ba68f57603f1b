"""Pydantic schemas for webhook payloads, PortOne API items, and API responses."""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ============================================================================
# Status vocabularies
# ============================================================================

SettlementStatus = Literal[
    "SCHEDULED", "IN_PROCESS", "SETTLED", "PAYOUT_SCHEDULED", "PAID_OUT", "CANCELED"
]
PayoutStatus = Literal["SCHEDULED", "PROCESSING", "SUCCEEDED", "FAILED", "CANCELED"]

SettlementEventType = Literal[
    "Settlement.Scheduled",
    "Settlement.InProcess",
    "Settlement.Settled",
    "Settlement.PayoutScheduled",
    "Settlement.PaidOut",
    "Settlement.Canceled",
]
PayoutEventType = Literal[
    "Payout.Scheduled",
    "Payout.Processing",
    "Payout.Succeeded",
    "Payout.Failed",
    "Payout.Canceled",
]

# Status implied by the event type when data.status is absent
SETTLEMENT_STATUS_BY_TYPE: dict[str, str] = {
    "Settlement.Scheduled": "SCHEDULED",
    "Settlement.InProcess": "IN_PROCESS",
    "Settlement.Settled": "SETTLED",
    "Settlement.PayoutScheduled": "PAYOUT_SCHEDULED",
    "Settlement.PaidOut": "PAID_OUT",
    "Settlement.Canceled": "CANCELED",
}
PAYOUT_STATUS_BY_TYPE: dict[str, str] = {
    "Payout.Scheduled": "SCHEDULED",
    "Payout.Processing": "PROCESSING",
    "Payout.Succeeded": "SUCCEEDED",
    "Payout.Failed": "FAILED",
    "Payout.Canceled": "CANCELED",
}


# ============================================================================
# Webhook payloads (closed tagged union keyed by `type`)
# ============================================================================


class _Wire(BaseModel):
    """Base for processor payloads: camelCase on the wire, extra keys ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SettlementAmount(_Wire):
    order: Optional[int] = None
    settlement: Optional[int] = None


class SettlementEventData(_Wire):
    settlement_id: str = Field(alias="settlementId", min_length=1)
    partner_id: str = Field(alias="partnerId", min_length=1)
    payment_id: Optional[str] = Field(default=None, alias="paymentId")
    status: Optional[SettlementStatus] = None
    amount: Optional[SettlementAmount] = None
    currency: Optional[str] = None
    settlement_date: Optional[str] = Field(default=None, alias="settlementDate")


class PayoutEventData(_Wire):
    payout_id: str = Field(alias="payoutId", min_length=1)
    partner_id: str = Field(alias="partnerId", min_length=1)
    status: Optional[PayoutStatus] = None
    amount: int
    currency: str = "KRW"
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledAt")
    payout_at: Optional[datetime] = Field(default=None, alias="payoutAt")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")


class SettlementEvent(_Wire):
    type: SettlementEventType
    timestamp: Optional[str] = None
    data: SettlementEventData

    @property
    def kind(self) -> str:
        return "settlement"

    @property
    def status(self) -> str:
        return self.data.status or SETTLEMENT_STATUS_BY_TYPE[self.type]

    @property
    def entity_id(self) -> str:
        return self.data.settlement_id


class PayoutEvent(_Wire):
    type: PayoutEventType
    timestamp: Optional[str] = None
    data: PayoutEventData

    @property
    def kind(self) -> str:
        return "payout"

    @property
    def status(self) -> str:
        return self.data.status or PAYOUT_STATUS_BY_TYPE[self.type]

    @property
    def entity_id(self) -> str:
        return self.data.payout_id


PortOneWebhookEvent = Annotated[
    Union[SettlementEvent, PayoutEvent], Field(discriminator="type")
]

webhook_event_adapter: TypeAdapter[Union[SettlementEvent, PayoutEvent]] = TypeAdapter(
    PortOneWebhookEvent
)


# ============================================================================
# PortOne platform API items (reconciliation sync)
# ============================================================================


class PlatformSettlement(_Wire):
    id: str = Field(min_length=1)
    partner_id: str = Field(alias="partnerId", min_length=1)
    payment_id: Optional[str] = Field(default=None, alias="paymentId")
    status: SettlementStatus
    order_amount: Optional[int] = Field(default=None, alias="orderAmount")
    settlement_amount: Optional[int] = Field(default=None, alias="settlementAmount")
    settlement_currency: str = Field(default="KRW", alias="settlementCurrency")
    settlement_date: Optional[str] = Field(default=None, alias="settlementDate")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class PlatformPayout(_Wire):
    id: str = Field(min_length=1)
    partner_id: str = Field(alias="partnerId", min_length=1)
    status: PayoutStatus
    amount: int
    currency: str = "KRW"
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledAt")
    payout_at: Optional[datetime] = Field(default=None, alias="payoutAt")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class PageInfo(_Wire):
    number: int = 0
    size: int = 0
    total_count: int = Field(default=0, alias="totalCount")


class PlatformPage(_Wire):
    """One page of a PortOne list endpoint. Items stay raw so bad rows count individually."""

    items: list[Any] = Field(default_factory=list)
    page: PageInfo = Field(default_factory=PageInfo)


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP APIs."""

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: Optional[str] = Field(None, description="Human-readable explanation")
    instance: Optional[str] = Field(None, description="URI reference for this occurrence")
    error_code: Optional[str] = Field(None, description="Stable machine-readable code")


# ============================================================================
# /sync
# ============================================================================


class SyncCounts(BaseModel):
    synced: int = 0
    errors: int = 0


class SyncResponse(BaseModel):
    success: bool
    duration: int = Field(..., description="Wall time in milliseconds")
    settlements: SyncCounts
    payouts: SyncCounts
    message: Optional[str] = None


class SyncParameterDoc(BaseModel):
    type: str
    required: bool
    default: Optional[str] = None
    description: str


class SyncDocs(BaseModel):
    endpoint: str
    method: str
    description: str
    parameters: dict[str, SyncParameterDoc]
    example: dict[str, Any]


# ============================================================================
# Subscriptions
# ============================================================================


class CheckoutRequest(BaseModel):
    plan_tier: Literal["basic", "pro"]
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    billing_key: str = Field(..., min_length=1)
    customer_name: Optional[str] = None


class ChangePlanRequest(BaseModel):
    to_tier: Literal["free", "basic", "pro"]


class SuspendRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    # Omit for a full refund
    amount: Optional[int] = Field(default=None, gt=0)


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    academy_id: str
    plan_tier: str
    billing_cycle: str
    status: str
    lifecycle_state: str
    amount: int
    auto_renew: bool
    has_billing_key: bool
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_payment_at: Optional[datetime] = None
    pending_tier: Optional[str] = None
    failed_attempts: int = 0
    suspended_reason: Optional[str] = None


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    academy_id: str
    payment_id: Optional[str] = None
    amount: int
    currency: str
    status: str
    description: Optional[str] = None
    plan_tier: Optional[str] = None
    billing_cycle: Optional[str] = None
    due_date: datetime
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refunded_amount: int = 0
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None
    created_at: datetime


class ProrationQuoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_tier: str
    to_tier: str
    billing_cycle: str
    price_delta: int
    days_remaining: int
    cycle_total_days: int
    prorated_amount: int
    is_upgrade: bool


class CheckoutOut(BaseModel):
    subscription: SubscriptionOut
    invoice: InvoiceOut


class PlanChangeOut(BaseModel):
    subscription: SubscriptionOut
    proration: ProrationQuoteOut
    invoice: Optional[InvoiceOut] = None


# ============================================================================
# Usage
# ============================================================================


class LimitCheckOut(BaseModel):
    allowed: bool
    current: int
    limit: int
    requested: int = 0
    message: Optional[str] = None


class ExceededDimension(BaseModel):
    dimension: str
    current: float
    limit: int


class LimitsReportOut(BaseModel):
    academy_id: str
    plan_tier: str
    subscription_active: bool
    within_limits: bool
    exceeded: list[ExceededDimension]
    messages: list[str]


class FeatureAccessOut(BaseModel):
    feature: str
    plan_tier: str
    has_access: bool

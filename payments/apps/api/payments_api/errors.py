"""Domain exceptions.

Taxonomy:
  VerificationError      → webhook rejected at the boundary (401), never retried
  PersistenceError       → store unavailable during a write (500, sender retries)
  PortOneAPIError        → reconciliation read failed upstream (502)
  PaymentGatewayError    → billing-key charge failed (invoice failed, no retry here)
  InvalidTransitionError → subscription state machine refused a transition (409)
  SubscriptionNotFoundError → no subscription row for the academy (404)
  InvoiceNotFoundError   → no invoice with that id (404)
  UnknownPlanError       → tier not in the plan catalog (400)
  PlanLimitExceededError → hard usage gate tripped (402)

Per-item sync failures are counted, not raised.
"""

from typing import Optional


class VerificationError(Exception):
    """Webhook delivery failed authentication.

    reason is a stable machine code (MISSING_HEADERS, INVALID_TIMESTAMP,
    TIMESTAMP_OUT_OF_TOLERANCE, NO_V1_SIGNATURE, SIGNATURE_MISMATCH).
    """

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        self.message = message or reason
        super().__init__(self.message)


class PersistenceError(Exception):
    """Store unavailable or rejected a write."""


class PortOneAPIError(Exception):
    """PortOne platform API call failed (transport error or non-2xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PaymentGatewayError(Exception):
    """Billing-key charge attempt failed.

    reason is already sanitized and safe to persist on the invoice.
    """

    def __init__(self, reason: str, status_code: Optional[int] = None):
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)


class InvalidTransitionError(Exception):
    """Subscription state machine rejected a transition."""

    def __init__(self, from_status: str, action: str, detail: Optional[str] = None):
        self.from_status = from_status
        self.action = action
        self.detail = detail or f"Cannot {action} a subscription in status '{from_status}'"
        super().__init__(self.detail)


class SubscriptionNotFoundError(Exception):
    """No subscription exists for the academy."""

    def __init__(self, academy_id: str):
        self.academy_id = academy_id
        super().__init__(f"No subscription for academy '{academy_id}'")


class InvoiceNotFoundError(Exception):
    def __init__(self, invoice_id: int):
        self.invoice_id = invoice_id
        super().__init__(f"No invoice with id {invoice_id}")


class UnknownPlanError(ValueError):
    """Plan tier is not part of the catalog."""

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"Unknown plan tier '{tier}'")


class PlanLimitExceededError(Exception):
    """Usage gate refused an action that would exceed a plan limit.

    Rendered as RFC 9457 Problem Details with status 402.
    """

    def __init__(
        self,
        dimension: str,
        current: int,
        limit: int,
        requested: int,
        detail: Optional[str] = None,
    ):
        self.dimension = dimension
        self.current = current
        self.limit = limit
        self.requested = requested
        self.status_code = 402
        self.title = "Plan limit exceeded"
        self.error_type = "https://api.classraum.com/problems/plan-limit-exceeded"
        self.detail = detail or (
            f"{dimension} limit reached ({current}/{limit}). Please upgrade your subscription."
        )
        super().__init__(self.detail)

"""Request context management for observability.

Context variables for request tracking across async boundaries.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Academy being acted on (subscription / usage endpoints)
academy_id_var: ContextVar[str] = ContextVar("academy_id", default="")

# Webhook delivery id (webhook-id header) while a delivery is processed
webhook_id_var: ContextVar[str] = ContextVar("webhook_id", default="")

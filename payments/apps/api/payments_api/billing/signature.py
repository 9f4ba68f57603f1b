"""PortOne webhook signature verification (Standard Webhooks scheme).

signed_content = "{webhook-timestamp}.{webhook-id}.{raw body}"
signature      = base64(HMAC-SHA256(secret, signed_content))
header         = "v1,<signature>" (space-separated when several are sent)

The secret is used as its UTF-8 bytes. Verification runs over the exact
bytes received; parsed-and-reserialized JSON never verifies.
"""

import base64
import binascii
import hashlib
import hmac
import time
from typing import Callable, Mapping, Optional

from payments_api.errors import VerificationError

DEFAULT_TOLERANCE_SECONDS = 300

HEADER_ID = "webhook-id"
HEADER_TIMESTAMP = "webhook-timestamp"
HEADER_SIGNATURE = "webhook-signature"


def compute_signature(secret: str, webhook_id: str, timestamp: str, raw_body: bytes) -> str:
    """Return base64(HMAC-SHA256(secret, "{timestamp}.{id}.{body}"))."""
    signed_content = f"{timestamp}.{webhook_id}.".encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _v1_signatures(header_value: str) -> list[bytes]:
    """Decode every v1 entry of a webhook-signature header; skip malformed ones."""
    decoded: list[bytes] = []
    for part in header_value.split(" "):
        version, sep, value = part.partition(",")
        if not sep or version != "v1" or not value:
            continue
        try:
            decoded.append(base64.b64decode(value, validate=True))
        except (binascii.Error, ValueError):
            continue
    return decoded


class SignatureVerifier:
    """Authenticates one webhook delivery.

    Pure CPU work, no I/O, no retries. The clock is injectable for tests.
    """

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        if not secret:
            raise ValueError("webhook secret is required")
        self._secret = secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock or time.time

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """Verify a delivery or raise VerificationError.

        headers must expose webhook-id, webhook-timestamp, webhook-signature
        (case-insensitive mappings such as Starlette's Headers work as-is).
        """
        webhook_id = headers.get(HEADER_ID)
        timestamp = headers.get(HEADER_TIMESTAMP)
        signature_header = headers.get(HEADER_SIGNATURE)

        if not webhook_id or not timestamp or not signature_header:
            raise VerificationError("MISSING_HEADERS", "Required webhook headers are missing")

        try:
            ts = int(timestamp)
        except ValueError:
            raise VerificationError("INVALID_TIMESTAMP", "webhook-timestamp is not an integer") from None

        if abs(self._clock() - ts) > self.tolerance_seconds:
            raise VerificationError(
                "TIMESTAMP_OUT_OF_TOLERANCE", "webhook-timestamp outside the replay window"
            )

        candidates = _v1_signatures(signature_header)
        if not candidates:
            raise VerificationError("NO_V1_SIGNATURE", "No v1 signature in webhook-signature")

        expected = base64.b64decode(
            compute_signature(self._secret, webhook_id, timestamp, raw_body)
        )
        for candidate in candidates:
            if len(candidate) == len(expected) and hmac.compare_digest(candidate, expected):
                return

        raise VerificationError("SIGNATURE_MISMATCH", "Webhook signature does not match")

    def is_valid(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        try:
            self.verify(raw_body, headers)
        except VerificationError:
            return False
        return True

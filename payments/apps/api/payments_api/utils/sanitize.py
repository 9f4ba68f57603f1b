"""Secret / PII sanitizer for log output and error details.

Three-tier string processing:
 1. > MAX_STR_LOG        → truncate + sha256, never run regex
 2. > MAX_STR_FOR_REGEX  → prefix check only (Bearer/Basic)
 3. ≤ MAX_STR_FOR_REGEX  → full regex replacement

Patterns are anchored to non-whitespace (\\S+) and compiled once at import;
the size gate keeps regex work bounded on hostile input.
"""

import hashlib
import re
import traceback
from typing import Any

# ── Size thresholds ───────────────────────────────────────────────────────────
MAX_STR_LOG: int = 2048
MAX_STR_FOR_REGEX: int = 512
MAX_DEPTH: int = 6

# ── Sensitive dict keys (lower-cased for comparison) ─────────────────────────
_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "token", "access_token", "refresh_token",
    "api_key", "secret", "webhook_secret", "signature", "webhook-signature",
    "email", "phone", "card", "cvc", "billingkey", "billing_key",
    "customer", "rawpayload", "raw_payload",
})

# ── Pre-compiled regex patterns ──────────────────────────────────────────────
_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"Bearer \S+"),
    re.compile(r"Basic \S+"),
    # PortOne API secrets: in an Authorization header, or a bare long token
    re.compile(r"(?i)authorization['\"]?\s*[:=]\s*['\"]?PortOne \S+"),
    re.compile(r"PortOne [A-Za-z0-9_\-]{24,}"),
    re.compile(r"v1,[A-Za-z0-9+/=]{16,}"),
    re.compile(r"billingKey=\S+"),
    re.compile(r"api_secret=\S+"),
]

_REDACT_PREFIXES = ("Bearer ", "Basic ")


def payload_hash_bytes(raw: bytes) -> str:
    """Return sha256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def sanitize_str(s: str) -> str:
    """Sanitize a string value according to the three-tier size gate.

    Returns a redacted / truncated string; never the original sensitive value.
    """
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    n = len(s)

    if n > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={n} sha256={digest}]"

    if n > MAX_STR_FOR_REGEX:
        if s.startswith(_REDACT_PREFIXES):
            return "[REDACTED]"
        return s

    result = s
    for pattern in _PATTERNS:
        result = pattern.sub("[REDACTED]", result)
    return result


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log extra value.

    - dict: redact sensitive keys, recurse others
    - list/tuple: recurse each element
    - str: run sanitize_str()
    - other: return as-is
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        result: dict[str, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS:
                result[key] = "[REDACTED]"
            else:
                result[key] = sanitize_obj(value, depth + 1)
        return result

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Format an exc_info tuple into a sanitized traceback string.

    capture_locals=False keeps local variable values out of log output.
    """
    _type, value, _tb = exc_info
    if value is None:
        return ""
    try:
        te = traceback.TracebackException.from_exception(value, capture_locals=False)
        return sanitize_str("".join(te.format()))
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"

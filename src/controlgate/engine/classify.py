"""Failure classification for agent transport errors and run outcomes.

Marker tuples are matched case-insensitively as substrings; the regexes cover
the shapes that vary (HTTP codes, model names).
"""

import re
from typing import Optional

TRANSIENT_ERROR_MARKERS: tuple[str, ...] = (
    "session file locked",
    ".lock",
    "lane wait exceeded",
    "failovererror",
    "gateway timeout",
    "timeout 10000ms",
    "temporarily unavailable",
)

RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
    "resource_exhausted",
    "quota",
    "requests per minute",
    "requests per day",
)

EXECUTION_ERROR_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"resource_not_found_error"),
    re.compile(r"\bhttp\s*[45]\d\d\b"),
    re.compile(r"\b(unauthorized|forbidden|invalid api key|authentication)\b"),
    re.compile(r"\b(provider error|model .* not found)\b"),
)

FAILURE_STATUSES: frozenset[str] = frozenset(
    {"error", "failed", "failure", "cancelled", "canceled", "timeout"}
)

_HTTP_429 = re.compile(r"\b429\b")


def is_transient_error(text: Optional[str]) -> bool:
    """Session lock / gateway style errors that clear up on their own."""
    lowered = (text or "").lower()
    return any(marker in lowered for marker in TRANSIENT_ERROR_MARKERS)


def is_rate_limit_error(text: Optional[str]) -> bool:
    lowered = (text or "").lower()
    if _HTTP_429.search(lowered):
        return True
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def looks_like_execution_error(text: Optional[str]) -> bool:
    """Auth, not-found and 4xx/5xx failures reported inside an agent reply."""
    lowered = (text or "").lower()
    if is_rate_limit_error(lowered):
        return True
    return any(pattern.search(lowered) for pattern in EXECUTION_ERROR_PATTERNS)


def is_failure_status(status: Optional[str]) -> bool:
    return (status or "").strip().lower() in FAILURE_STATUSES


def model_provider(model: Optional[str]) -> Optional[str]:
    """Provider is the model id's first path segment: ``openai/gpt-4o`` -> ``openai``."""
    if not model or not model.strip():
        return None
    return model.strip().split("/", 1)[0].lower()

"""Text shaping helpers shared by prompts, previews and persisted errors."""

import re

_WHITESPACE = re.compile(r"\s+")


def truncate(value: str | None, limit: int) -> str:
    """Trim and cap text at `limit` characters, marking the cut with an ellipsis."""
    text = (value or "").strip()
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3].rstrip() + "..."


def compact(value: str | None) -> str:
    """Collapse all whitespace runs to single spaces."""
    return _WHITESPACE.sub(" ", value or "").strip()

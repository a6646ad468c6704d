"""Small helpers shared across the pipeline."""

import hashlib
from datetime import datetime, timezone

MAX_LOG_PREVIEW_LEN = 100


def calculate_hash(text: str) -> str:
    """Calculate SHA-256 hash of a text string."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def preview(text: str, max_len: int = MAX_LOG_PREVIEW_LEN) -> str:
    """
    First line of text, cut to max_len characters, for log messages.

    Examples:
        >>> preview("Hello world", 5)
        'Hello...'
        >>> preview("one\\ntwo")
        'one'
    """
    if not text:
        return ""
    first_line = text.splitlines()[0] if text.strip() else text
    if len(first_line) > max_len:
        return first_line[:max_len] + "..."
    return first_line


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc_iso(value: datetime = None) -> str:
    """ISO-8601 UTC timestamp as stored in the job store."""
    return (value or utcnow()).astimezone(timezone.utc).isoformat(timespec="microseconds")

from __future__ import annotations

from datetime import datetime, timedelta

from mealcal.models import _ensure_tz, utc_now


MAX_RETRIES = 10
MAX_ERROR_MESSAGE_LENGTH = 500


def calculate_backoff(retry_count: int) -> timedelta:
    """Exponential backoff of 2^retry_count minutes (~17 hours at the retry cap)."""
    return timedelta(minutes=2 ** max(0, int(retry_count)))


def should_retry(retry_count: int, last_sync_at: datetime | None, now: datetime | None = None) -> bool:
    if retry_count >= MAX_RETRIES:
        return False
    if last_sync_at is None:
        return True
    current = _ensure_tz(now) if now is not None else utc_now()
    return current >= _ensure_tz(last_sync_at) + calculate_backoff(retry_count)


def truncate_error_message(message: str) -> str:
    text = str(message)
    if len(text) <= MAX_ERROR_MESSAGE_LENGTH:
        return text
    return text[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."

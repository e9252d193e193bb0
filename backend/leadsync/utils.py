"""Small shared helpers."""

import re
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Naive UTC now; every timestamp in the database is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize aware datetimes to naive UTC, pass naive ones through."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse platform timestamps (ISO strings, epoch seconds/millis, datetimes).

    Returns None for anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_naive_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lowercase + strip; None for blanks or values without an @."""
    if not email or not isinstance(email, str):
        return None
    cleaned = email.strip().lower()
    if "@" not in cleaned:
        return None
    return cleaned


_NUMBER_RE = re.compile(r"(-?\d+(?:\.\d+)?)\s*([kmb])?", re.IGNORECASE)
_MULTIPLIERS = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


def parse_amount(text: str) -> Optional[float]:
    """
    Parse '$10M', '1.5k', '250', '1,000' into a float.

    Examples:
        "$10M" -> 10000000.0
        "51" -> 51.0
    """
    if text is None:
        return None
    match = _NUMBER_RE.search(str(text).replace(",", "").replace("$", ""))
    if not match:
        return None
    number = float(match.group(1))
    suffix = (match.group(2) or "").lower()
    return number * _MULTIPLIERS.get(suffix, 1)

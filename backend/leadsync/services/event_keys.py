"""
Deterministic event keys.

The key is the only dedup contract: same natural event -> same key,
however many times a batch is replayed.
"""

import hashlib
from datetime import datetime
from typing import Optional

from leadsync.config import settings
from leadsync.utils import to_naive_utc


def _norm(value) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split()).lower()


def _digest(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]


def make_event_key(
    platform: str,
    external_id: Optional[str] = None,
    email: Optional[str] = None,
    event_type: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    campaign_id: Optional[str] = None,
    bucket_seconds: Optional[int] = None,
) -> str:
    """
    Build the dedup key for an event.

    With a stable external id:   "{platform}:id:<hash(platform|campaign|id)>"
    Otherwise (fingerprint):     "{platform}:fp:<hash(platform|email|type|campaign|bucket)>"

    Examples:
        make_event_key("lemlist", external_id="act_123")
        make_event_key("smartlead", email="a@b.com", event_type="Email Opened",
                       occurred_at=datetime(2024, 1, 1, 9, 15))
    """
    platform_key = _norm(platform)
    if not platform_key:
        raise ValueError("platform is required for an event key")

    campaign = _norm(campaign_id)

    if external_id not in (None, ""):
        return f"{platform_key}:id:{_digest(platform_key, campaign, _norm(external_id))}"

    if not event_type:
        raise ValueError("event_type is required when no external id is available")

    bucket_seconds = bucket_seconds or settings.EVENT_KEY_BUCKET_SECONDS
    bucket = ""
    occurred_at = to_naive_utc(occurred_at)
    if occurred_at is not None:
        epoch = int((occurred_at - datetime(1970, 1, 1)).total_seconds())
        bucket = str(epoch - (epoch % bucket_seconds))

    return f"{platform_key}:fp:{_digest(platform_key, _norm(email), _norm(event_type), campaign, bucket)}"

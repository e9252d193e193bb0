"""
Base connector interface for outbound platforms.
All connectors must implement this interface.

Every request goes through ``_request``: rate limiter first, then httpx,
then one classification step. Raw httpx exceptions never leave here.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

import httpx

from leadsync.errors import FatalError, LeadSyncError, RetryableError

logger = logging.getLogger(__name__)


# ============================================================================
# NORMALIZED RECORDS
# ============================================================================

@dataclass
class SyncWindow:
    """Time window for a fetch; None bounds are open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, ts: Optional[datetime]) -> bool:
        if ts is None:
            return True
        if self.start is not None and ts < self.start:
            return False
        if self.end is not None and ts > self.end:
            return False
        return True

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


@dataclass
class InboundUser:
    platform: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    company: Optional[str] = None
    title: Optional[str] = None
    linkedin_profile: Optional[str] = None
    external_id: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    enrichment: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


@dataclass
class InboundEvent:
    platform: str
    event_type: str
    email: str
    external_id: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    occurred_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # identity carried along so a first sighting can create the user
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    linkedin_profile: Optional[str] = None


@dataclass
class Page:
    records: List[Any]
    next_cursor: Optional[Dict[str, Any]]
    has_more: bool
    # records this page's scope adds to the job total; reported once per scope
    total: Optional[int] = None


# ============================================================================
# ERROR CLASSIFICATION
# ============================================================================

def classify_http_status(
    platform: str,
    status_code: int,
    body: str = "",
    retry_after: Optional[str] = None,
) -> Optional[LeadSyncError]:
    """
    Map an HTTP status to the engine's error classes.

    Returns None for success codes.
    """
    if status_code < 400:
        return None

    snippet = (body or "")[:200]

    if status_code == 429:
        delay = None
        if retry_after:
            try:
                delay = float(retry_after)
            except ValueError:
                delay = None
        return RetryableError(
            f"{platform}: rate limited (429)", status_code=429, retry_after=delay
        )
    if status_code >= 500:
        return RetryableError(
            f"{platform}: server error {status_code}: {snippet}", status_code=status_code
        )
    if status_code in (401, 403):
        return FatalError(
            f"{platform}: authentication failed ({status_code})", status_code=status_code
        )
    if status_code == 402:
        return FatalError(
            f"{platform}: payment required / quota exhausted (402)", status_code=402
        )
    return FatalError(
        f"{platform}: request rejected ({status_code}): {snippet}", status_code=status_code
    )


def classify_transport_error(platform: str, exc: Exception) -> LeadSyncError:
    """Timeouts and connection failures are always worth another try."""
    if isinstance(exc, httpx.TimeoutException):
        return RetryableError(f"{platform}: request timed out: {exc}")
    return RetryableError(f"{platform}: transport error: {exc.__class__.__name__}: {exc}")


# ============================================================================
# CONNECTOR BASE
# ============================================================================

class PlatformConnector(ABC):
    """
    Abstract base class for all platform connectors.

    Args:
        api_key: Platform credential
        limiter: RateLimiter / CompositeLimiter for this platform
        batch_size: Requested page size (clamped to the limiter's max)
        campaign_filter: Optional predicate on campaign name; campaigns it
            rejects are never paged
        transport: Optional httpx transport (tests use MockTransport)
    """

    platform = "base"
    base_url = ""

    def __init__(
        self,
        api_key: Optional[str],
        limiter,
        batch_size: int = 100,
        campaign_filter: Optional[Callable[[Optional[str]], bool]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        request_timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.limiter = limiter
        self.batch_size = limiter.clamp_batch_size(batch_size)
        self.campaign_filter = campaign_filter
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=request_timeout,
            transport=transport,
        )
        self.requests_made = 0

    # -- auth hooks --------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _auth_params(self) -> Dict[str, Any]:
        return {}

    def _auth(self) -> Optional[httpx.Auth]:
        return None

    # -- transport ---------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
    ) -> Any:
        """
        Rate-limited request with classified failures.

        Returns:
            Decoded JSON body (None for empty bodies)

        Raises:
            RetryableError / FatalError
        """
        if not self.api_key:
            raise FatalError(f"{self.platform}: no API key configured")

        await self.limiter.acquire(1)

        query = dict(self._auth_params())
        if params:
            query.update({k: v for k, v in params.items() if v is not None})

        headers = {"Accept": "application/json", **self._auth_headers()}
        auth = self._auth()

        try:
            if auth is not None:
                response = await self.client.request(
                    method, path, params=query, json=json, headers=headers, auth=auth
                )
            else:
                response = await self.client.request(
                    method, path, params=query, json=json, headers=headers
                )
        except httpx.HTTPError as e:
            raise classify_transport_error(self.platform, e) from e
        finally:
            self.requests_made += 1

        error = classify_http_status(
            self.platform,
            response.status_code,
            response.text,
            response.headers.get("Retry-After"),
        )
        if error is not None:
            logger.warning(f"⚠️ {self.platform} {method} {path} -> {response.status_code}")
            raise error

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise FatalError(f"{self.platform}: malformed JSON response from {path}") from e

    def _include_campaign(self, campaign_name: Optional[str]) -> bool:
        if self.campaign_filter is None:
            return True
        return self.campaign_filter(campaign_name)

    @staticmethod
    def _expect_list(platform: str, payload: Any, key: Optional[str] = None) -> List[Any]:
        """Pull a list out of a response body or fail as a schema error."""
        if key is not None and isinstance(payload, dict):
            payload = payload.get(key)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise FatalError(f"{platform}: unexpected response schema (expected a list)")
        return payload

    # -- contract ----------------------------------------------------------

    @abstractmethod
    async def test_connection(self) -> bool:
        """True when credentials work and the API answers."""
        pass

    @abstractmethod
    async def fetch_users(self, window: SyncWindow, cursor: Optional[Dict[str, Any]]) -> Page:
        """One page of InboundUser records starting at ``cursor``."""
        pass

    @abstractmethod
    async def fetch_events(self, window: SyncWindow, cursor: Optional[Dict[str, Any]]) -> Page:
        """One page of InboundEvent records starting at ``cursor``."""
        pass

    async def upsert_user(self, user) -> Optional[str]:
        """Push a scored user to the platform; returns the remote record id."""
        raise FatalError(f"{self.platform}: upsert not supported")

    async def notify(self, event, record_id: Optional[str] = None) -> None:
        """Write an engagement event to the platform."""
        raise FatalError(f"{self.platform}: notify not supported")

    async def aclose(self) -> None:
        await self.client.aclose()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "requests_made": self.requests_made,
            "batch_size": self.batch_size,
        }

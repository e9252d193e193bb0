"""
Enrichment boundary.

The engine never extracts enrichment content itself; providers do. The
chain only decides which provider's answer to trust:
AI enrichment -> secondary API (Hunter) -> primary API (Apollo), first
successful result at or above the confidence threshold wins.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence
import logging

import httpx

from leadsync.config import settings
from leadsync.errors import LeadSyncError

logger = logging.getLogger(__name__)

# Cheapest / most specific first
PROVIDER_PRECEDENCE = ("ai", "hunter", "apollo")


class EnrichmentResult:
    """Result of one provider attempt"""

    def __init__(
        self,
        success: bool,
        data: Optional[Dict[str, Any]] = None,
        confidence: float = 0.0,
        source: Optional[str] = None,
        cost: float = 0.0,
        error: Optional[str] = None
    ):
        self.success = success
        self.data = data or {}
        self.confidence = confidence
        self.source = source
        self.cost = cost
        self.error = error

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "data": self.data,
            "confidence": self.confidence,
            "source": self.source,
            "cost": self.cost,
            "error": self.error,
        }


class EnrichmentProvider(ABC):
    """One external enrichment source."""

    name = "base"

    @abstractmethod
    async def enrich(self, user: Any) -> EnrichmentResult:
        """Look the user up; never mutates the user."""
        pass


class EnrichmentChain:
    """Try providers in precedence order until one is confident enough."""

    def __init__(self, providers: Sequence[EnrichmentProvider], min_confidence: Optional[float] = None):
        self.providers: List[EnrichmentProvider] = sorted(
            providers,
            key=lambda p: PROVIDER_PRECEDENCE.index(p.name)
            if p.name in PROVIDER_PRECEDENCE else len(PROVIDER_PRECEDENCE)
        )
        self.min_confidence = (
            settings.ENRICHMENT_MIN_CONFIDENCE if min_confidence is None else min_confidence
        )
        self.attempts = 0
        self.total_cost = 0.0

    async def enrich(self, user: Any) -> Optional[EnrichmentResult]:
        email = getattr(user, "email", "unknown")
        for provider in self.providers:
            self.attempts += 1
            try:
                result = await provider.enrich(user)
            except (LeadSyncError, httpx.HTTPError, ValueError) as e:
                logger.warning(f"⚠️ Enrichment provider {provider.name} failed for {email}: {e}")
                continue

            self.total_cost += result.cost or 0.0
            if result.success and result.confidence >= self.min_confidence:
                result.source = result.source or provider.name
                logger.info(
                    f"✅ Enriched {email} via {result.source} "
                    f"(confidence {result.confidence:.2f})"
                )
                return result

            logger.debug(
                f"Provider {provider.name} not accepted for {email}: "
                f"success={result.success}, confidence={result.confidence:.2f}"
            )

        logger.info(f"No enrichment provider qualified for {email}")
        return None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "providers": [p.name for p in self.providers],
            "attempts": self.attempts,
            "total_cost": round(self.total_cost, 4),
            "min_confidence": self.min_confidence,
        }

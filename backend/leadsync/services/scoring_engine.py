"""
Lead scoring engine.

ICP (fit) score from enrichment attributes, behavior (engagement) score
from stored events, lead score = ICP + behavior, letter grade from
descending thresholds.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Tuple
import logging

from leadsync.config import settings
from leadsync.services.scoring_config import (
    CategoryMatch, NumericRange, ScoringConfig, load_scoring_config, parse_legacy_range
)
from leadsync.utils import parse_amount, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ScoreResult:
    icp_score: int
    behavior_score: int
    lead_score: int
    grade: str
    breakdown: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# VALUE EXTRACTION
# ============================================================================

def extract_path(data: Dict[str, Any], path: str) -> Any:
    """
    Extract value from nested dict using dot notation.

    Examples:
        path="company_size" -> data["company_size"]
        path="organization.annual_revenue" -> data["organization"]["annual_revenue"]
    """
    value: Any = data
    for key in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
        if value is None:
            return None
    return value


def numeric_value(raw: Any) -> Optional[float]:
    """
    Numeric reading of an attribute value.

    Range strings are read as a representative point:
    "51-200" -> midpoint, "5000+" -> 5001, "<$1M" -> 999999.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    if not text:
        return None
    if "-" in text.lstrip("-") or text.endswith("+") or text.startswith("<"):
        try:
            bracket = parse_legacy_range(text, 0)
        except ValueError:
            return None
        if bracket.minimum is not None and bracket.maximum is not None:
            return (bracket.minimum + bracket.maximum) / 2
        if bracket.minimum is not None:
            return bracket.minimum + 1
        return bracket.maximum - 1
    return parse_amount(text)


def _event_fields(event: Any) -> Tuple[str, Dict[str, Any]]:
    """(event_type, metadata) from an EventRecord, InboundEvent or dict."""
    if isinstance(event, dict):
        return event.get("event_type") or "", event.get("metadata") or {}
    if hasattr(event, "event_metadata"):
        metadata = event.event_metadata
    else:
        metadata = getattr(event, "metadata", None)
    return getattr(event, "event_type", "") or "", metadata if isinstance(metadata, dict) else {}


# ============================================================================
# PURE SCORING FUNCTIONS
# ============================================================================

def compute_icp_score(
    enrichment: Optional[Dict[str, Any]],
    config: ScoringConfig
) -> Tuple[int, Dict[str, Any]]:
    """
    Sum of per-component points, each component capped, total capped.

    Within a component the first matching rule contributes.
    """
    if not enrichment or not isinstance(enrichment, dict):
        return 0, {}

    total = 0
    breakdown: Dict[str, Any] = {}

    for component in config.icp_components:
        raw = None
        for path in component.paths:
            raw = extract_path(enrichment, path)
            if raw not in (None, ""):
                break
        if raw in (None, ""):
            continue

        points = 0
        if component.kind == "category":
            for rule in component.rules:
                if isinstance(rule, CategoryMatch) and rule.matches(raw):
                    points = rule.points
                    break
        else:
            value = numeric_value(raw)
            if value is not None:
                for rule in component.rules:
                    if isinstance(rule, NumericRange) and rule.matches(value):
                        points = rule.points
                        break

        points = min(points, component.cap)
        total += points
        breakdown[component.name] = {"value": raw, "points": points}

        if points == 0:
            logger.debug(f"No {component.name} rule matched value {raw!r}")

    return min(total, config.icp_cap), breakdown


def compute_behavior_score(
    events: Iterable[Any],
    config: ScoringConfig
) -> Tuple[int, Dict[str, Any]]:
    """
    Sum of per-event-type points plus the positive-reply bonus.

    Uncapped; never decreases when events are added.
    """
    score = 0
    breakdown: Dict[str, Any] = {}
    positive_replies = 0
    reply_types = {t.lower() for t in config.reply_event_types}
    always_positive = {t.lower() for t in config.always_positive_event_types}

    for event in events:
        event_type, metadata = _event_fields(event)
        points = config.points_for(event_type)
        score += points
        if points > 0:
            entry = breakdown.setdefault(event_type, {"count": 0, "points_per": points, "total": 0})
            entry["count"] += 1
            entry["total"] += points

        lowered = event_type.lower()
        if lowered in always_positive or (
            lowered in reply_types and str(metadata.get("sentiment", "")).lower() == "positive"
        ):
            positive_replies += 1

    if positive_replies and config.positive_reply_bonus:
        bonus = positive_replies * config.positive_reply_bonus
        score += bonus
        breakdown["positive_sentiment_bonus"] = bonus

    return score, breakdown


def grade_for(score: float, config: ScoringConfig) -> str:
    """First threshold (descending) that the score reaches; fallback otherwise."""
    for threshold, grade in config.grade_thresholds:
        if score >= threshold:
            return grade
    return config.fallback_grade


def score_user(user: Any, events: Iterable[Any], config: ScoringConfig) -> ScoreResult:
    """Full scoring pass: ICP from attached enrichment + behavior from events."""
    icp, icp_breakdown = compute_icp_score(getattr(user, "enrichment", None), config)
    behavior, behavior_breakdown = compute_behavior_score(events, config)
    lead = icp + behavior
    return ScoreResult(
        icp_score=icp,
        behavior_score=behavior,
        lead_score=lead,
        grade=grade_for(lead, config),
        breakdown={"icp": icp_breakdown, "behavior": behavior_breakdown, "version": config.version},
    )


# ============================================================================
# ENGINE
# ============================================================================

class LeadScoringEngine:
    """
    Two operating modes:
    - behavior-only: database-only, cheap, run often
    - ICP: consumes the enrichment already attached to the user
    """

    def __init__(self, config: Optional[ScoringConfig] = None, icp_rescore_days: Optional[int] = None):
        self.config = config or load_scoring_config()
        self.icp_rescore_days = (
            settings.ICP_RESCORE_DAYS if icp_rescore_days is None else icp_rescore_days
        )

    def needs_icp(self, user: Any, now: Optional[datetime] = None) -> bool:
        if user.icp_score is None or user.icp_scored_at is None:
            return True
        now = now or utcnow()
        return now - user.icp_scored_at > timedelta(days=self.icp_rescore_days)

    def score_behavior_only(self, user: Any, events: Iterable[Any]) -> ScoreResult:
        behavior, breakdown = compute_behavior_score(events, self.config)
        icp = user.icp_score or 0
        lead = icp + behavior
        previous = dict(user.score_breakdown or {})
        previous.update({"behavior": breakdown, "version": self.config.version})
        return ScoreResult(
            icp_score=icp,
            behavior_score=behavior,
            lead_score=lead,
            grade=grade_for(lead, self.config),
            breakdown=previous,
        )

    def score_icp(self, user: Any) -> ScoreResult:
        icp, breakdown = compute_icp_score(user.enrichment, self.config)
        behavior = user.behavior_score or 0
        lead = icp + behavior
        previous = dict(user.score_breakdown or {})
        previous.update({"icp": breakdown, "version": self.config.version})
        return ScoreResult(
            icp_score=icp,
            behavior_score=behavior,
            lead_score=lead,
            grade=grade_for(lead, self.config),
            breakdown=previous,
        )

    def score_full(self, user: Any, events: Iterable[Any]) -> ScoreResult:
        return score_user(user, events, self.config)

    def apply(self, user: Any, result: ScoreResult, icp_scored: bool = False,
              now: Optional[datetime] = None) -> Any:
        """Write scores, grade and timestamps onto the user record."""
        now = now or utcnow()
        user.icp_score = result.icp_score
        user.behavior_score = result.behavior_score
        user.lead_score = result.lead_score
        user.lead_grade = result.grade
        user.score_breakdown = result.breakdown
        user.last_scored_at = now
        if icp_scored:
            user.icp_scored_at = now
        return user

"""
Scoring configuration: rule variants and load-time resolution.

Raw rules come in three shapes:
- NumericRange:       {"min": 51, "max": 200, "points": 40}
- LegacyStringRange:  {"range": "$10M-$25M", "points": 40}
- CategoryMatch:      {"values": ["seed"], "points": 14}

Legacy strings are parsed once in ``load_scoring_config`` into
NumericRange, so evaluation only ever sees numeric ranges and
category matches.
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from leadsync.utils import parse_amount


@dataclass(frozen=True)
class NumericRange:
    minimum: Optional[float]
    maximum: Optional[float]
    points: int
    max_inclusive: bool = True

    def matches(self, value: float) -> bool:
        if self.minimum is not None and value < self.minimum:
            return False
        if self.maximum is not None:
            if self.max_inclusive and value > self.maximum:
                return False
            if not self.max_inclusive and value >= self.maximum:
                return False
        return True


@dataclass(frozen=True)
class LegacyStringRange:
    range_text: str
    points: int


@dataclass(frozen=True)
class CategoryMatch:
    values: Tuple[str, ...]
    points: int

    def matches(self, value: str) -> bool:
        return normalize_category(value) in self.values


RawRule = Union[NumericRange, LegacyStringRange, CategoryMatch]
ResolvedRule = Union[NumericRange, CategoryMatch]


@dataclass(frozen=True)
class ICPComponent:
    name: str
    kind: str  # "numeric" | "category"
    paths: Tuple[str, ...]
    rules: Tuple[ResolvedRule, ...]
    cap: int


@dataclass(frozen=True)
class ScoringConfig:
    version: str
    icp_components: Tuple[ICPComponent, ...]
    behavior_points: Dict[str, int] = field(hash=False)
    positive_reply_bonus: int = 5
    reply_event_types: Tuple[str, ...] = ()
    always_positive_event_types: Tuple[str, ...] = ()
    grade_thresholds: Tuple[Tuple[float, str], ...] = ()
    fallback_grade: str = "F"
    icp_cap: int = 100

    def points_for(self, event_type: str) -> int:
        """Exact name first, then a case-insensitive match; unknown types score 0."""
        if event_type in self.behavior_points:
            return self.behavior_points[event_type]
        lowered = (event_type or "").lower()
        for name, points in self.behavior_points.items():
            if name.lower() == lowered:
                return points
        return 0


# ============================================================================
# PARSING
# ============================================================================

def normalize_category(value: Any) -> str:
    """'Series A' / 'series-a' / 'SERIES_A' -> 'series_a'"""
    text = str(value or "").strip().lower()
    return re.sub(r"[\s\-]+", "_", text)


_RANGE_SPLIT = re.compile(r"^\s*(.+?)\s*-\s*(.+?)\s*$")


def parse_legacy_range(range_text: str, points: int) -> NumericRange:
    """
    Resolve a legacy range string into a NumericRange.

    Examples:
        "51-200"    -> [51, 200]
        "5000+"     -> [5000, inf)
        "<$1M"      -> (-inf, 1000000)
        "$10M-$25M" -> [10000000, 25000000]
    """
    text = (range_text or "").strip()
    if not text:
        raise ValueError("Empty range string")

    if text.startswith("<"):
        upper = parse_amount(text[1:])
        if upper is None:
            raise ValueError(f"Unparseable range: {range_text!r}")
        return NumericRange(None, upper, points, max_inclusive=False)

    if text.endswith("+"):
        lower = parse_amount(text[:-1])
        if lower is None:
            raise ValueError(f"Unparseable range: {range_text!r}")
        return NumericRange(lower, None, points)

    match = _RANGE_SPLIT.match(text)
    if match:
        lower = parse_amount(match.group(1))
        upper = parse_amount(match.group(2))
        if lower is None or upper is None or lower > upper:
            raise ValueError(f"Unparseable range: {range_text!r}")
        return NumericRange(lower, upper, points)

    single = parse_amount(text)
    if single is None:
        raise ValueError(f"Unparseable range: {range_text!r}")
    return NumericRange(single, single, points)


def parse_raw_rule(raw: Union[Dict[str, Any], RawRule]) -> RawRule:
    """Turn a config dict into its tagged variant."""
    if isinstance(raw, (NumericRange, LegacyStringRange, CategoryMatch)):
        return raw
    if not isinstance(raw, dict):
        raise ValueError(f"Rule must be a mapping, got {type(raw).__name__}")
    if "points" not in raw:
        raise ValueError(f"Rule is missing 'points': {raw}")

    points = int(raw["points"])
    kind = raw.get("type")

    if kind == "legacy" or (kind is None and "range" in raw):
        return LegacyStringRange(str(raw["range"]), points)
    if kind == "numeric" or (kind is None and ("min" in raw or "max" in raw)):
        return NumericRange(
            raw.get("min"),
            raw.get("max"),
            points,
            max_inclusive=raw.get("max_inclusive", True),
        )
    if kind == "category" or (kind is None and ("values" in raw or "value" in raw)):
        values = raw.get("values")
        if values is None:
            values = [raw["value"]]
        return CategoryMatch(tuple(normalize_category(v) for v in values), points)

    raise ValueError(f"Cannot determine rule type: {raw}")


def resolve_rule(rule: RawRule) -> ResolvedRule:
    if rule.points < 0:
        raise ValueError(f"Rule points must be non-negative: {rule}")
    if isinstance(rule, LegacyStringRange):
        return parse_legacy_range(rule.range_text, rule.points)
    return rule


# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_SCORING_CONFIG: Dict[str, Any] = {
    "version": "1",
    "icp": {
        "headcount": {
            "kind": "numeric",
            "cap": 40,
            "paths": [
                "organization.estimated_num_employees",
                "company_size",
                "estimated_num_employees",
                "employee_count",
                "headcount",
            ],
            "rules": [
                {"range": "1-10", "points": 10},
                {"range": "11-50", "points": 30},
                {"range": "51-200", "points": 40},
                {"range": "201-500", "points": 40},
                {"range": "501-1000", "points": 35},
                {"range": "1001-5000", "points": 30},
                {"range": "5000+", "points": 25},
            ],
        },
        "revenue": {
            "kind": "numeric",
            "cap": 40,
            "paths": [
                "organization.annual_revenue",
                "company_revenue",
                "annual_revenue",
                "revenue",
            ],
            "rules": [
                {"range": "<$1M", "points": 10},
                {"range": "$1M-$5M", "points": 20},
                {"range": "$5M-$10M", "points": 20},
                {"range": "$10M-$25M", "points": 40},
                {"range": "$25M-$50M", "points": 40},
                {"range": "$50M-$100M", "points": 35},
                {"range": "$100M-$500M", "points": 30},
                {"range": "$500M+", "points": 25},
            ],
        },
        "funding_stage": {
            "kind": "category",
            "cap": 40,
            "paths": [
                "organization.latest_funding_stage",
                "company_funding_stage",
                "latest_funding_stage",
                "funding_stage",
            ],
            "rules": [
                {"values": ["bootstrapped"], "points": 10},
                {"values": ["unfunded"], "points": 8},
                {"values": ["pre-seed", "preseed"], "points": 12},
                {"values": ["seed"], "points": 14},
                {"values": ["angel"], "points": 13},
                {"values": ["series a"], "points": 15},
                {"values": ["series b"], "points": 20},
                {"values": ["series c"], "points": 25},
                {"values": ["series d"], "points": 30},
                {"values": ["series e", "series f"], "points": 35},
                {"values": ["ipo"], "points": 40},
                {"values": ["acquired"], "points": 30},
                {"values": ["private equity"], "points": 35},
                {"values": ["funded", "debt financing"], "points": 12},
                {"values": ["venture"], "points": 15},
                {"values": ["grant"], "points": 11},
                {"values": ["crowdfunding"], "points": 10},
                {"values": ["other"], "points": 5},
            ],
        },
    },
    "behavior": {
        "points": {
            "Email Sent": 0,
            "Email Opened": 5,
            "Email Clicked": 5,
            "Email Replied": 10,
            "LinkedIn Message Sent": 0,
            "LinkedIn Message Opened": 5,
            "LinkedIn Message Replied": 10,
            "LinkedIn Profile Viewed": 5,
            "LinkedIn Invite Sent": 3,
            "LinkedIn Invite Accepted": 8,
            "linkedinInterested": 15,
            "linkedin_done": 5,
            "linkedin_send_failed": 0,
            "Website Visit": 20,
            "Signed Up": 50,
        },
        "positive_reply_bonus": 5,
        "reply_event_types": [
            "Email Replied",
            "LinkedIn Message Replied",
            "LinkedIn Replied",
        ],
        "always_positive_event_types": ["linkedinInterested"],
    },
    "grades": [
        [120, "A+"],
        [100, "A"],
        [80, "B+"],
        [60, "B"],
        [40, "C+"],
        [20, "C"],
        [10, "D"],
    ],
    "fallback_grade": "F",
    "icp_cap": 100,
}


def _parse_grades(raw: Union[Dict[str, Any], Sequence[Sequence[Any]]]) -> Tuple[Tuple[float, str], ...]:
    """Accepts {"A+": 90, ...}, {90: "A+", ...} or [[90, "A+"], ...]."""
    pairs: List[Tuple[float, str]] = []
    if isinstance(raw, dict):
        for key, value in raw.items():
            if isinstance(value, str):
                pairs.append((float(key), value))
            else:
                pairs.append((float(value), str(key)))
    else:
        for threshold, grade in raw:
            pairs.append((float(threshold), str(grade)))
    return tuple(sorted(pairs, key=lambda pair: pair[0], reverse=True))


def load_scoring_config(raw: Optional[Dict[str, Any]] = None) -> ScoringConfig:
    """
    Resolve a raw config mapping into an immutable ScoringConfig.

    Raises:
        ValueError: unparseable range, unknown rule shape, negative points
    """
    raw = copy.deepcopy(raw if raw is not None else DEFAULT_SCORING_CONFIG)

    components = []
    for name, component in (raw.get("icp") or {}).items():
        rules = tuple(resolve_rule(parse_raw_rule(r)) for r in component.get("rules", []))
        kind = component.get("kind") or (
            "category" if rules and all(isinstance(r, CategoryMatch) for r in rules) else "numeric"
        )
        cap = int(component.get("cap", 100))
        if cap < 0:
            raise ValueError(f"Component cap must be non-negative: {name}")
        components.append(ICPComponent(
            name=name,
            kind=kind,
            paths=tuple(component.get("paths") or (name,)),
            rules=rules,
            cap=cap,
        ))

    behavior = raw.get("behavior") or {}
    points = {str(k): int(v) for k, v in (behavior.get("points") or {}).items()}
    negative = [k for k, v in points.items() if v < 0]
    if negative:
        raise ValueError(f"Behavior points must be non-negative: {negative}")
    bonus = int(behavior.get("positive_reply_bonus", 0))
    if bonus < 0:
        raise ValueError("positive_reply_bonus must be non-negative")

    return ScoringConfig(
        version=str(raw.get("version", "1")),
        icp_components=tuple(components),
        behavior_points=points,
        positive_reply_bonus=bonus,
        reply_event_types=tuple(behavior.get("reply_event_types") or ()),
        always_positive_event_types=tuple(behavior.get("always_positive_event_types") or ()),
        grade_thresholds=_parse_grades(raw.get("grades") or []),
        fallback_grade=raw.get("fallback_grade", "F"),
        icp_cap=int(raw.get("icp_cap", 100)),
    )

# tests/services/test_scoring.py
"""
Comprehensive tests for lead scoring

Coverage:
- Legacy range resolution at load time
- ICP components, caps and value extraction
- Behavior points, positive-reply bonus, monotonicity
- Grades and the ICP + behavior scenario
- Engine modes (behavior-only vs ICP refresh)

Run with: pytest tests/services/test_scoring.py -v
"""

from datetime import timedelta

import pytest

from leadsync.models import EventRecord, UserRecord
from leadsync.services.scoring_config import (
    CategoryMatch, DEFAULT_SCORING_CONFIG, LegacyStringRange, NumericRange,
    load_scoring_config, parse_legacy_range, parse_raw_rule, resolve_rule,
)
from leadsync.services.scoring_engine import (
    LeadScoringEngine, compute_behavior_score, compute_icp_score, grade_for, numeric_value,
)
from leadsync.utils import utcnow


def ev(event_type, **metadata):
    return {"event_type": event_type, "metadata": metadata}


@pytest.fixture
def config():
    return load_scoring_config()


@pytest.fixture
def scenario_config():
    raw = dict(DEFAULT_SCORING_CONFIG)
    raw["behavior"] = {
        "points": {"Email Opened": 5, "Email Clicked": 5, "Email Replied": 10},
        "positive_reply_bonus": 5,
        "reply_event_types": ["Email Replied"],
    }
    raw["grades"] = {90: "A+", 80: "A", 70: "B+", 60: "B", 50: "C+", 40: "C"}
    return load_scoring_config(raw)


# ============================================================================
# TEST: Rule resolution
# ============================================================================

class TestRuleResolution:

    @pytest.mark.parametrize("text,minimum,maximum,inclusive", [
        ("51-200", 51, 200, True),
        ("5000+", 5000, None, True),
        ("<$1M", None, 1_000_000, False),
        ("$10M-$25M", 10_000_000, 25_000_000, True),
        ("1,000-5,000", 1000, 5000, True),
    ])
    def test_legacy_strings(self, text, minimum, maximum, inclusive):
        rule = parse_legacy_range(text, 7)
        assert rule == NumericRange(minimum, maximum, 7, max_inclusive=inclusive)

    def test_unparseable_range(self):
        with pytest.raises(ValueError):
            parse_legacy_range("lots", 5)
        with pytest.raises(ValueError):
            parse_legacy_range("200-51", 5)

    def test_tagged_variants(self):
        assert isinstance(parse_raw_rule({"range": "1-10", "points": 1}), LegacyStringRange)
        assert isinstance(parse_raw_rule({"min": 1, "max": 10, "points": 1}), NumericRange)
        assert parse_raw_rule({"values": ["Series A"], "points": 15}) == CategoryMatch(("series_a",), 15)
        with pytest.raises(ValueError):
            parse_raw_rule({"points": 1})
        with pytest.raises(ValueError):
            parse_raw_rule({"range": "1-10"})

    def test_negative_points_rejected(self):
        with pytest.raises(ValueError):
            resolve_rule(NumericRange(1, 2, -5))

        raw = dict(DEFAULT_SCORING_CONFIG)
        raw["behavior"] = {"points": {"Email Opened": -1}}
        with pytest.raises(ValueError):
            load_scoring_config(raw)

    def test_loaded_config_has_only_canonical_rules(self, config):
        for component in config.icp_components:
            for rule in component.rules:
                assert isinstance(rule, (NumericRange, CategoryMatch))

    def test_grades_accept_either_mapping_direction(self):
        raw = dict(DEFAULT_SCORING_CONFIG)
        raw["grades"] = {"A": 90, "B": 60}
        cfg = load_scoring_config(raw)
        assert cfg.grade_thresholds == ((90.0, "A"), (60.0, "B"))


# ============================================================================
# TEST: ICP
# ============================================================================

class TestICPScore:

    def test_numeric_values(self):
        assert numeric_value(120) == 120.0
        assert numeric_value("51-200") == 125.5
        assert numeric_value("5000+") == 5001
        assert numeric_value("<$1M") == 999_999
        assert numeric_value("$15M") == 15_000_000
        assert numeric_value(None) is None
        assert numeric_value(True) is None

    def test_full_profile(self, config):
        enrichment = {"organization": {
            "estimated_num_employees": 120,
            "annual_revenue": 15_000_000,
            "latest_funding_stage": "Series B",
        }}
        score, breakdown = compute_icp_score(enrichment, config)
        assert breakdown["headcount"]["points"] == 40
        assert breakdown["revenue"]["points"] == 40
        assert breakdown["funding_stage"]["points"] == 20
        assert score == 100

    def test_flat_paths_and_range_strings(self, config):
        score, breakdown = compute_icp_score({"company_size": "51-200", "funding_stage": "seed"}, config)
        assert breakdown["headcount"]["points"] == 40
        assert breakdown["funding_stage"]["points"] == 14
        assert score == 54

    def test_total_is_capped(self):
        raw = dict(DEFAULT_SCORING_CONFIG)
        raw["icp_cap"] = 50
        cfg = load_scoring_config(raw)
        score, _ = compute_icp_score({"company_size": 100, "revenue": 20_000_000}, cfg)
        assert score == 50

    def test_missing_enrichment(self, config):
        assert compute_icp_score(None, config) == (0, {})
        assert compute_icp_score({}, config) == (0, {})


# ============================================================================
# TEST: Behavior
# ============================================================================

class TestBehaviorScore:

    def test_points_sum(self, config):
        score, breakdown = compute_behavior_score(
            [ev("Email Opened"), ev("Email Opened"), ev("Email Clicked"), ev("Email Sent")], config
        )
        assert score == 15
        assert breakdown["Email Opened"]["count"] == 2

    def test_positive_reply_bonus(self, config):
        score, breakdown = compute_behavior_score([ev("Email Replied", sentiment="positive")], config)
        assert score == 15
        assert breakdown["positive_sentiment_bonus"] == 5

        neutral, _ = compute_behavior_score([ev("Email Replied", sentiment="neutral")], config)
        assert neutral == 10

    def test_always_positive_types(self, config):
        score, _ = compute_behavior_score([ev("linkedinInterested")], config)
        assert score == 20

    def test_unknown_and_case_insensitive_types(self, config):
        assert compute_behavior_score([ev("email opened")], config)[0] == 5
        assert compute_behavior_score([ev("Carrier Pigeon")], config)[0] == 0

    def test_monotonic_as_events_grow(self, config):
        events = [
            ev("Email Sent"), ev("Email Opened"), ev("LinkedIn Invite Sent"),
            ev("Email Replied", sentiment="positive"), ev("Carrier Pigeon"), ev("linkedinInterested"),
        ]
        scores = [compute_behavior_score(events[:i], config)[0] for i in range(len(events) + 1)]
        assert scores == sorted(scores)

    def test_reads_event_records(self, config):
        records = [EventRecord(event_type="Email Replied", event_metadata={"sentiment": "positive"})]
        assert compute_behavior_score(records, config)[0] == 15


# ============================================================================
# TEST: Grades & scenario
# ============================================================================

class TestGrades:

    def test_descending_thresholds(self, config):
        assert grade_for(125, config) == "A+"
        assert grade_for(100, config) == "A"
        assert grade_for(61, config) == "B"
        assert grade_for(5, config) == "F"

    def test_icp_40_plus_behavior_20_is_grade_b(self, scenario_config):
        engine = LeadScoringEngine(scenario_config)
        user = UserRecord(email="a@x.com", icp_score=40, behavior_score=0, icp_scored_at=utcnow())

        result = engine.score_behavior_only(
            user, [ev("Email Opened"), ev("Email Clicked"), ev("Email Replied")]
        )

        assert result.behavior_score == 20
        assert result.lead_score == 60
        assert result.grade == "B"


# ============================================================================
# TEST: Engine
# ============================================================================

class TestEngine:

    def test_needs_icp(self, config):
        engine = LeadScoringEngine(config, icp_rescore_days=30)
        now = utcnow()
        assert engine.needs_icp(UserRecord(icp_score=None)) is True
        assert engine.needs_icp(UserRecord(icp_score=40, icp_scored_at=now - timedelta(days=1)), now) is False
        assert engine.needs_icp(UserRecord(icp_score=40, icp_scored_at=now - timedelta(days=31)), now) is True

    def test_apply_writes_scores_and_timestamps(self, config):
        engine = LeadScoringEngine(config)
        user = UserRecord(email="a@x.com", enrichment={"company_size": 120})
        result = engine.score_full(user, [ev("Email Opened")])
        engine.apply(user, result, icp_scored=True)

        assert user.icp_score == 40
        assert user.behavior_score == 5
        assert user.lead_score == 45
        assert user.lead_grade == "C+"
        assert user.icp_scored_at is not None
        assert user.last_scored_at is not None

    def test_behavior_only_keeps_icp(self, config):
        engine = LeadScoringEngine(config)
        user = UserRecord(email="a@x.com", icp_score=30, score_breakdown={"icp": {"headcount": 1}})
        result = engine.score_behavior_only(user, [ev("Email Replied")])
        assert result.icp_score == 30
        assert result.lead_score == 40
        assert result.breakdown["icp"] == {"headcount": 1}

    def test_score_icp_keeps_behavior(self, config):
        engine = LeadScoringEngine(config)
        user = UserRecord(email="a@x.com", behavior_score=12, enrichment={"funding_stage": "IPO"})
        result = engine.score_icp(user)
        assert result.icp_score == 40
        assert result.lead_score == 52

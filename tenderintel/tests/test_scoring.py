from __future__ import annotations

import pytest

from tenderintel.decoder import decode_list
from tenderintel.scoring import (
    TIER_HIGH,
    TIER_LOW,
    TIER_MEDIUM,
    ScoredIssue,
    clamp_factor,
    priority_tier,
    score_and_sort,
    score_issue,
    sort_issues,
)


def _issue(name: str, *factors: int) -> ScoredIssue:
    return ScoredIssue(name, name, f"{name}?", *factors)


@pytest.mark.parametrize("raw,expected", [
    (0, 0), (2, 2), (3, 3), (5, 3), (-1, 0), ("2", 2), (2.6, 3), (1.2, 1),
    ("abc", 0), (None, 0), ([], 0), (True, 1),
    (float("inf"), 3), (float("-inf"), 0), (float("nan"), 0), ("Infinity", 3), (1e999, 3),
])
def test_clamp_factor(raw, expected):
    assert clamp_factor(raw) == expected


@pytest.mark.parametrize("total,tier", [
    (0, TIER_LOW), (3, TIER_LOW), (4, TIER_MEDIUM), (5, TIER_MEDIUM), (6, TIER_HIGH), (15, TIER_HIGH),
])
def test_priority_tier_boundaries(total, tier):
    assert priority_tier(total) == tier


class TestScoreIssue:
    def test_camel_case_keys_and_total(self):
        issue = score_issue({
            "lens": "Evaluation Method", "issue": "Weighting unclear", "question": "What weights?",
            "koRisk": 3, "meatImpact": 2, "euroImpact": 1, "timeImpact": 0, "evidenceRisk": 1,
            "justification": "Affects scoring",
        })
        assert issue.factors == (3, 2, 1, 0, 1)
        assert issue.total == 7
        assert issue.tier == TIER_HIGH
        assert issue.justification == "Affects scoring"

    def test_snake_case_keys_and_clamping(self):
        issue = score_issue({"issue": "x", "ko_risk": 9, "meat_impact": "n/a", "euro_impact": -4})
        assert issue.factors == (3, 0, 0, 0, 0)
        assert issue.tier == TIER_LOW

    def test_lens_and_justification_fallbacks(self):
        issue = score_issue({"category": "Pricing", "question": "q", "suggestion": "ask early"})
        assert issue.lens == "Pricing"
        assert issue.justification == "ask early"
        assert score_issue({"question": "q"}).lens == "General"

    def test_total_always_in_range(self):
        issue = score_issue({"issue": "x", "koRisk": 99, "meatImpact": 99, "euroImpact": 99,
                             "timeImpact": 99, "evidenceRisk": 99})
        assert issue.total == 15

    def test_as_dict_includes_total_and_tier(self):
        data = _issue("a", 1, 1, 1, 1, 0).as_dict()
        assert data["total"] == 4
        assert data["tier"] == TIER_MEDIUM
        assert data["ko_risk"] == 1


class TestSorting:
    def test_descending_and_stable_on_ties(self):
        issues = [
            _issue("low", 1, 1, 0, 0, 0),
            _issue("first5", 1, 1, 1, 1, 1),
            _issue("second5", 2, 2, 1, 0, 0),
            _issue("one", 1, 0, 0, 0, 0),
        ]
        ordered = sort_issues(issues)
        assert [i.issue for i in ordered] == ["first5", "second5", "low", "one"]

    def test_deterministic(self):
        raw = [{"issue": f"i{n}", "koRisk": n % 4, "meatImpact": (n * 7) % 4} for n in range(10)]
        assert score_and_sort(raw) == score_and_sort(raw)

    def test_score_and_sort_skips_empty_items(self):
        out = score_and_sort([{"lens": "Legal"}, {"issue": "real", "koRisk": 1}])
        assert [i.issue for i in out] == ["real"]


def test_overflowing_ratings_from_decoded_output():
    items = decode_list('[{"issue": "x", "question": "q?", "koRisk": 1e999, "meatImpact": -1e999}]')
    (issue,) = score_and_sort(items)
    assert issue.factors == (3, 0, 0, 0, 0)
    assert issue.tier == TIER_LOW

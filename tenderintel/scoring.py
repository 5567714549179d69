"""Risk & priority scoring for clarification questions (NvI).

Each question carries five factor ratings in [0, 3]. The total is their sum
and the tier is a pure function of the total. The LLM also reports a
``priorityScore`` of its own; it is ignored in favour of the computed total.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Iterable

log = logging.getLogger(__name__)

FACTOR_MIN = 0
FACTOR_MAX = 3

# (attribute, accepted raw keys)
FACTORS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("ko_risk", ("ko_risk", "koRisk")),
    ("meat_impact", ("meat_impact", "meatImpact")),
    ("euro_impact", ("euro_impact", "euroImpact")),
    ("time_impact", ("time_impact", "timeImpact")),
    ("evidence_risk", ("evidence_risk", "evidenceRisk")),
)

TIER_HIGH = "HIGH"
TIER_MEDIUM = "MEDIUM"
TIER_LOW = "LOW"


def clamp_factor(value: Any) -> int:
    """Coerce a raw rating to an int in [0, 3]; unreadable values count as 0.

    ``inf`` saturates at 3; ``-inf`` and NaN count as 0.
    """
    if isinstance(value, bool):
        return int(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return FACTOR_MIN
    if math.isnan(number):
        return FACTOR_MIN
    if math.isinf(number):
        return FACTOR_MAX if number > 0 else FACTOR_MIN
    return max(FACTOR_MIN, min(FACTOR_MAX, int(round(number))))


def priority_tier(total: int) -> str:
    if total >= 6:
        return TIER_HIGH
    if total >= 4:
        return TIER_MEDIUM
    return TIER_LOW


@dataclass(frozen=True)
class ScoredIssue:
    lens: str
    issue: str
    question: str
    ko_risk: int
    meat_impact: int
    euro_impact: int
    time_impact: int
    evidence_risk: int
    justification: str = ""

    @property
    def factors(self) -> tuple[int, int, int, int, int]:
        return (self.ko_risk, self.meat_impact, self.euro_impact, self.time_impact, self.evidence_risk)

    @property
    def total(self) -> int:
        return sum(self.factors)

    @property
    def tier(self) -> str:
        return priority_tier(self.total)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["total"] = self.total
        data["tier"] = self.tier
        return data


def _first(raw: dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def score_issue(raw: dict[str, Any]) -> ScoredIssue:
    """Build a ScoredIssue from one decoded question object."""
    factors = {attr: clamp_factor(_first(raw, keys)) for attr, keys in FACTORS}
    return ScoredIssue(
        lens=str(raw.get("lens") or raw.get("category") or "General"),
        issue=str(raw.get("issue") or ""),
        question=str(raw.get("question") or ""),
        justification=str(raw.get("justification") or raw.get("suggestion") or ""),
        **factors,
    )


def sort_issues(issues: Iterable[ScoredIssue]) -> list[ScoredIssue]:
    """Stable sort by total, highest first; ties keep generation order."""
    return sorted(issues, key=lambda i: i.total, reverse=True)


def score_and_sort(raw_items: Iterable[dict[str, Any]]) -> list[ScoredIssue]:
    issues = [score_issue(item) for item in raw_items if item.get("issue") or item.get("question")]
    return sort_issues(issues)

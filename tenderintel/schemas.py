"""Pydantic request/response schemas for the tender intelligence API."""
from __future__ import annotations

from pydantic import BaseModel, JsonValue


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TenderRequest(BaseModel):
    tender_id: int | None = None


class AnalyzeRequest(TenderRequest):
    force_reanalyze: bool = False


class LegalAnalysisRequest(TenderRequest):
    force: bool = False


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class CapabilityMatchOut(BaseModel):
    id: int
    name: str
    score: float
    type: str


class AnalysisOut(BaseModel):
    tender_id: int
    overall_match: str = ""
    competitiveness: str = ""
    recommendation: str = ""
    strengths: list[str] = []
    gaps: list[str] = []
    opportunities: list[str] = []
    risks: list[str] = []
    action_items: list[str] = []
    budget_assessment: str = ""
    timeline_assessment: str = ""
    strategic_advice: str = ""
    matching_products: list[JsonValue] = []
    relevant_companies: list[CapabilityMatchOut] = []
    relevant_products: list[CapabilityMatchOut] = []
    degraded_sections: list[str] = []
    from_cache: bool
    computed_at: str | None = None


class _FactorsMixin(BaseModel):
    ko_risk: int
    meat_impact: int
    euro_impact: int
    time_impact: int
    evidence_risk: int
    total: int
    tier: str


class ScoredQuestionOut(_FactorsMixin):
    lens: str
    issue: str
    question: str
    justification: str = ""


class QuestionSetOut(BaseModel):
    tender_id: int
    questions: list[ScoredQuestionOut]
    count: int
    saved: bool
    degraded: bool


class StoredQuestionOut(ScoredQuestionOut):
    id: int
    position: int
    status: str


class ProposalGenerateOut(BaseModel):
    tender_id: int
    proposal: dict[str, JsonValue]
    saved: bool
    updated_at: str | None = None


class ProposalOut(BaseModel):
    id: int
    tender_id: int
    title: str
    status: str
    proposal: dict[str, JsonValue]
    updated_at: str | None = None


class LegalAnalysisOut(BaseModel):
    tender_id: int
    analysis: dict[str, JsonValue]
    applicable_rules_count: int
    from_cache: bool
    analyzed_at: str | None = None


class EmbeddingSyncOut(BaseModel):
    user_id: str
    counts: dict[str, int]

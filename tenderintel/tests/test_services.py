"""End-to-end pipeline tests with fake retrieval and generation backends.

Covers: cache round-trip and bypass, fault isolation, zero capability
matches, question-set replacement, proposals and legal analysis.
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from tenderintel import services
from tenderintel.config import Settings
from tenderintel.errors import PersistenceError, RetrievalUnavailable, SubjectNotFound, ValidationError
from tenderintel.llm import LLMCallError
from tenderintel.models import Base, Company, LegalRule, NviQuestion, Product, Tender, TenderAnalysis
from tenderintel.orchestrator import GENERATION_FAILED
from tenderintel.prompts import ANALYSIS_SYSTEM, LEGAL_SYSTEM, NVI_SYSTEM, PRODUCT_MATCH_SYSTEM, PROPOSAL_TASKS
from tenderintel.retrieval import RetrievalMatch

USER = "user-1"

ANALYSIS_JSON = json.dumps({
    "content": "Strong fit",
    "overallMatch": 82,
    "competitiveness": "High",
    "recommendation": "Should bid",
    "strengths": ["Certified LED range"],
    "gaps": ["No 24/7 service desk"],
    "opportunities": ["Smart city pilot"],
    "risks": ["Tight deadline"],
    "actionItems": ["Partner for service desk"],
    "budgetAssessment": "Within range",
    "timeline": "Feasible",
    "strategicAdvice": "Lead with lifetime cost",
})

PRODUCT_JSON = '```json\n{"matchingProducts": [{"name": "StreetLux 40W", "matchScore": 91}]}\n```'

NVI_V1 = json.dumps([
    {"lens": "Evaluation Method", "issue": "Weights", "question": "What weights apply?",
     "koRisk": 1, "meatImpact": 3, "euroImpact": 1, "timeImpact": 0, "evidenceRisk": 1},
    {"lens": "Legal & Process", "issue": "Deadline", "question": "Can the deadline move?",
     "koRisk": 0, "meatImpact": 0, "euroImpact": 1, "timeImpact": 2, "evidenceRisk": 0},
    {"lens": "Technical Requirements", "issue": "IP rating", "question": "IP65 or IP66?",
     "koRisk": 3, "meatImpact": 1, "euroImpact": 1, "timeImpact": 0, "evidenceRisk": 1},
])

NVI_V2 = json.dumps({"questions": [
    {"lens": "Contract Conditions", "issue": "Penalty cap", "question": "Is there a cap?",
     "koRisk": 2, "meatImpact": 0, "euroImpact": 3, "timeImpact": 0, "evidenceRisk": 0},
]})

LEGAL_JSON = json.dumps({
    "content": "Penalty clause above market",
    "total_risk_premium": "3-5%",
    "risk_matrix": [{"category": "Penalties", "risk": "Uncapped", "price_impact": "+2%", "priority": 1}],
    "dealbreakers": [],
    "compliance_status": "Requires Review",
    "compliance_score": 70,
})

PROPOSAL_SYSTEMS = {spec.system: spec.key for spec in PROPOSAL_TASKS}


def _proposal_output(key: str) -> str:
    extra = {
        "executive_summary": {"table": [{"requirement": "LED", "solution": "StreetLux", "benefit": "-60% energy"}]},
        "methodology": {"phases": [{"phase": "Mobilisation", "activities": "Survey", "deliverables": "Plan"}]},
        "organisation": {"team": [{"role": "Project manager", "profile": "PMP", "responsibility": "Delivery"}]},
        "risk_management": {"risks": [{"risk": "Supply delay", "impact": "High", "mitigation": "Buffer stock"}]},
    }.get(key, {})
    return json.dumps({"content": f"{key} text", **extra})


class FakeLLM:
    """Routes completions by system prompt; per-task overrides may be exceptions."""

    def __init__(self, overrides: dict | None = None):
        self.model = "fake-model"
        self.responses = {
            ANALYSIS_SYSTEM: ANALYSIS_JSON,
            PRODUCT_MATCH_SYSTEM: PRODUCT_JSON,
            NVI_SYSTEM: NVI_V1,
            LEGAL_SYSTEM: LEGAL_JSON,
            **{system: _proposal_output(key) for system, key in PROPOSAL_SYSTEMS.items()},
        }
        self.responses.update(overrides or {})
        self.complete = AsyncMock(side_effect=self._complete)

    async def _complete(self, system, user, *, temperature=0.2, max_tokens=None):
        value = self.responses[system]
        if isinstance(value, Exception):
            raise value
        return value


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def seeded(session: Session):
    tender = Tender(
        user_id=USER, title="Public lighting Utrecht", description="Replace 2,000 luminaires. Boete per day late.",
        requirements_json=json.dumps({"technical": ["LED", "IP66"], "social": ["SROI 5%"]}),
        deadlines_json=json.dumps({"submission": "2026-12-01"}),
        categories_json=json.dumps(["lighting"]),
    )
    company = Company(user_id=USER, name="Lumen BV", industry="Lighting",
                      capabilities_json=json.dumps(["LED retrofit"]), employee_count=40)
    session.add_all([tender, company])
    session.flush()
    product = Product(user_id=USER, company_id=company.id, name="StreetLux 40W",
                      features_json=json.dumps(["DALI", "IP66"]))
    session.add(product)
    session.add(LegalRule(article_number="UAV 2012 §44", title="Penalties", category="Penalty clauses",
                          trigger_keywords_json=json.dumps(["boete"]), risk_level="high"))
    session.commit()
    return tender, company, product


def _backend(seeded, empty: bool = False, fail: bool = False) -> AsyncMock:
    _, company, product = seeded

    async def query(text, partition, top_k, owner_id):
        if fail:
            raise ConnectionError("vector store unreachable")
        if empty or owner_id != USER:
            return []
        if partition == "companies":
            return [RetrievalMatch(company.id, "company", 0.81, "companies", {"title": company.name})]
        return [RetrievalMatch(product.id, "product", 0.77, "products", {"title": product.name})]

    backend = AsyncMock()
    backend.query.side_effect = query
    return backend


def _pipeline(seeded, llm: FakeLLM | None = None, **backend_kwargs) -> services.Pipeline:
    settings = Settings(task_timeout_seconds=5.0, retrieval_top_k=4)
    return services.Pipeline(settings=settings, client=llm or FakeLLM(), backend=_backend(seeded, **backend_kwargs))


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class TestAnalyzeTender:
    @pytest.mark.asyncio
    async def test_fresh_analysis(self, session, seeded):
        tender, company, product = seeded
        result = await services.analyze_tender(session, _pipeline(seeded), USER, tender.id)
        assert result["from_cache"] is False
        assert result["overall_match"] == "82"
        assert result["recommendation"] == "Should bid"
        assert result["action_items"] == ["Partner for service desk"]
        assert result["timeline_assessment"] == "Feasible"
        assert result["matching_products"] == [{"name": "StreetLux 40W", "matchScore": 91}]
        assert result["relevant_companies"] == [{"id": company.id, "name": "Lumen BV", "score": 0.81, "type": "company"}]
        assert result["relevant_products"][0]["id"] == product.id
        assert result["degraded_sections"] == []
        assert result["computed_at"]

    @pytest.mark.asyncio
    async def test_cache_round_trip_makes_no_backend_calls(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        first = await services.analyze_tender(session, pipeline, USER, tender.id)
        queries, completions = pipeline.backend.query.await_count, pipeline.client.complete.await_count

        second = await services.analyze_tender(session, pipeline, USER, tender.id)
        assert second["from_cache"] is True
        assert pipeline.backend.query.await_count == queries
        assert pipeline.client.complete.await_count == completions
        assert second == {**first, "from_cache": True}
        assert second["computed_at"].endswith("+00:00")

    @pytest.mark.asyncio
    async def test_force_bypasses_cache_and_overwrites(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        await services.analyze_tender(session, pipeline, USER, tender.id)
        pipeline.client.responses[ANALYSIS_SYSTEM] = ANALYSIS_JSON.replace("Should bid", "Consider bidding")

        result = await services.analyze_tender(session, pipeline, USER, tender.id, force=True)
        assert result["from_cache"] is False
        assert result["recommendation"] == "Consider bidding"
        count = session.execute(select(func.count()).select_from(TenderAnalysis)).scalar()
        assert count == 1

    @pytest.mark.asyncio
    async def test_failed_product_matching_is_isolated(self, session, seeded):
        tender, _, _ = seeded
        llm = FakeLLM({PRODUCT_MATCH_SYSTEM: LLMCallError("503 from provider", retryable=True)})
        result = await services.analyze_tender(session, _pipeline(seeded, llm), USER, tender.id)
        assert result["recommendation"] == "Should bid"
        assert result["matching_products"] == []
        assert result["degraded_sections"] == ["product_matching"]

    @pytest.mark.asyncio
    async def test_undecodable_analysis_still_returns(self, session, seeded):
        tender, _, _ = seeded
        llm = FakeLLM({ANALYSIS_SYSTEM: "I'm unable to analyse this tender."})
        result = await services.analyze_tender(session, _pipeline(seeded, llm), USER, tender.id)
        assert result["strengths"] == []
        assert result["matching_products"][0]["name"] == "StreetLux 40W"
        assert result["degraded_sections"] == ["analysis"]

    @pytest.mark.asyncio
    async def test_zero_capability_matches(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded, empty=True)
        result = await services.analyze_tender(session, pipeline, USER, tender.id)
        assert result["from_cache"] is False
        assert result["relevant_companies"] == []
        assert result["relevant_products"] == []
        assert result["matching_products"] == []
        # product matching is skipped when no products were resolved
        assert pipeline.client.complete.await_count == 1
        assert services.store.get_analysis(session, USER, tender.id) is not None

    @pytest.mark.asyncio
    async def test_retrieval_outage_propagates(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded, fail=True)
        with pytest.raises(RetrievalUnavailable):
            await services.analyze_tender(session, pipeline, USER, tender.id)
        pipeline.client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistence_failure_still_returns_result(self, session, seeded):
        tender, _, _ = seeded
        with patch.object(services.store, "upsert_analysis", side_effect=PersistenceError("locked")):
            result = await services.analyze_tender(session, _pipeline(seeded), USER, tender.id)
        assert result["from_cache"] is False
        assert result["recommendation"] == "Should bid"

    @pytest.mark.asyncio
    async def test_unreadable_cache_counts_as_miss(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        with patch.object(services.store, "get_analysis", side_effect=PersistenceError("locked")):
            result = await services.analyze_tender(session, pipeline, USER, tender.id)
        assert result["from_cache"] is False
        assert result["recommendation"] == "Should bid"
        assert pipeline.backend.query.await_count > 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id,tender_id", [("", 1), ("  ", 1), (USER, None), (USER, 0), (USER, True)])
    async def test_validation(self, session, seeded, user_id, tender_id):
        with pytest.raises(ValidationError):
            await services.analyze_tender(session, _pipeline(seeded), user_id, tender_id)

    @pytest.mark.asyncio
    async def test_unknown_or_foreign_tender(self, session, seeded):
        tender, _, _ = seeded
        with pytest.raises(SubjectNotFound):
            await services.analyze_tender(session, _pipeline(seeded), USER, 9999)
        with pytest.raises(SubjectNotFound):
            await services.analyze_tender(session, _pipeline(seeded), "someone-else", tender.id)


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------


class TestQuestions:
    @pytest.mark.asyncio
    async def test_requires_prior_analysis(self, session, seeded):
        tender, _, _ = seeded
        with pytest.raises(SubjectNotFound):
            await services.generate_questions(session, _pipeline(seeded), USER, tender.id)

    @pytest.mark.asyncio
    async def test_generate_scores_and_sorts(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        await services.analyze_tender(session, pipeline, USER, tender.id)
        result = await services.generate_questions(session, pipeline, USER, tender.id)
        assert result["saved"] is True
        assert [(q["issue"], q["total"], q["tier"]) for q in result["questions"]] == [
            ("Weights", 6, "HIGH"), ("IP rating", 6, "HIGH"), ("Deadline", 3, "LOW"),
        ]
        stored = services.list_questions(session, USER, tender.id)
        assert [q["issue"] for q in stored] == ["Weights", "IP rating", "Deadline"]
        assert stored[0]["status"] == "draft"

    @pytest.mark.asyncio
    async def test_regeneration_replaces_set(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        await services.analyze_tender(session, pipeline, USER, tender.id)
        await services.generate_questions(session, pipeline, USER, tender.id)
        pipeline.client.responses[NVI_SYSTEM] = NVI_V2
        await services.generate_questions(session, pipeline, USER, tender.id)

        stored = services.list_questions(session, USER, tender.id)
        assert [q["issue"] for q in stored] == ["Penalty cap"]
        count = session.execute(select(func.count()).select_from(NviQuestion)).scalar()
        assert count == 1

    @pytest.mark.asyncio
    async def test_non_finite_factors_are_clamped(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        await services.analyze_tender(session, pipeline, USER, tender.id)
        pipeline.client.responses[NVI_SYSTEM] = (
            '[{"issue": "Overflow", "question": "q?", "koRisk": Infinity, "meatImpact": 1e999,'
            ' "euroImpact": -Infinity, "timeImpact": NaN, "evidenceRisk": 1}]'
        )
        result = await services.generate_questions(session, pipeline, USER, tender.id)
        (question,) = result["questions"]
        assert (question["ko_risk"], question["meat_impact"], question["euro_impact"],
                question["time_impact"], question["evidence_risk"]) == (3, 3, 0, 0, 1)
        assert question["total"] == 7
        assert result["saved"] is True

    @pytest.mark.asyncio
    async def test_failed_generation_keeps_stored_set(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        await services.analyze_tender(session, pipeline, USER, tender.id)
        await services.generate_questions(session, pipeline, USER, tender.id)
        pipeline.client.responses[NVI_SYSTEM] = LLMCallError("timeout", retryable=True)

        result = await services.generate_questions(session, pipeline, USER, tender.id)
        assert result["questions"] == []
        assert result["degraded"] is True
        assert result["saved"] is False
        assert len(services.list_questions(session, USER, tender.id)) == 3


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


class TestProposals:
    @pytest.mark.asyncio
    async def test_generate_and_fetch(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        await services.analyze_tender(session, pipeline, USER, tender.id)
        assert services.get_proposal(session, USER, tender.id) is None

        result = await services.generate_proposal(session, pipeline, USER, tender.id)
        doc = result["proposal"]
        assert doc["title"] == "Proposal for Public lighting Utrecht"
        assert [s["type"] for s in doc["sections"]] == [s.key for s in PROPOSAL_TASKS]
        assert doc["sections"][0]["content"] == "company_intro text"
        assert doc["executive_summary_table"][0]["solution"] == "StreetLux"
        assert doc["team_structure"][0]["role"] == "Project manager"
        assert doc["degraded_sections"] == []

        stored = services.get_proposal(session, USER, tender.id)
        assert stored["proposal"] == doc
        assert stored["updated_at"] == result["updated_at"]
        assert result["updated_at"].endswith("+00:00")

    @pytest.mark.asyncio
    async def test_one_failed_agent(self, session, seeded):
        tender, _, _ = seeded
        methodology = next(s.system for s in PROPOSAL_TASKS if s.key == "methodology")
        pipeline = _pipeline(seeded, FakeLLM({methodology: RuntimeError("boom")}))
        await services.analyze_tender(session, pipeline, USER, tender.id)
        doc = (await services.generate_proposal(session, pipeline, USER, tender.id))["proposal"]
        section = next(s for s in doc["sections"] if s["type"] == "methodology")
        assert section["content"] == GENERATION_FAILED
        assert doc["methodology_phases"] == []
        assert doc["risk_matrix"][0]["risk"] == "Supply delay"
        assert doc["degraded_sections"] == ["methodology"]


# ---------------------------------------------------------------------------
# Legal analysis
# ---------------------------------------------------------------------------


class TestLegalAnalysis:
    @pytest.mark.asyncio
    async def test_cached_after_first_run(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        first = await services.analyze_legal(session, pipeline, USER, tender.id)
        assert first["from_cache"] is False
        assert first["applicable_rules_count"] == 1
        assert first["analysis"]["total_risk_premium"] == "3-5%"
        assert first["analysis"]["negotiation_points"] == []

        second = await services.analyze_legal(session, pipeline, USER, tender.id)
        assert second["from_cache"] is True
        assert second["analysis"] == first["analysis"]
        assert second["analyzed_at"] == first["analyzed_at"]
        assert pipeline.client.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_force_recomputes(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        await services.analyze_legal(session, pipeline, USER, tender.id)
        result = await services.analyze_legal(session, pipeline, USER, tender.id, force=True)
        assert result["from_cache"] is False
        assert pipeline.client.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_unreadable_cache_recomputes(self, session, seeded):
        tender, _, _ = seeded
        pipeline = _pipeline(seeded)
        await services.analyze_legal(session, pipeline, USER, tender.id)
        with patch.object(services.store, "get_legal_analysis", side_effect=PersistenceError("locked")):
            result = await services.analyze_legal(session, pipeline, USER, tender.id)
        assert result["from_cache"] is False
        assert pipeline.client.complete.await_count == 2

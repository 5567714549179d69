"""Pipeline operations shared by the API and the CLI.

Each operation validates identifiers, loads the tender, builds one frozen
``GenerationContext``, fans the relevant task catalogue out through the
orchestrator and persists the merged result. ``ValidationError``,
``SubjectNotFound`` and ``RetrievalUnavailable`` escape to callers, as does
``PersistenceError`` when the store cannot be read at all. Failed writes and
unreadable cache rows are logged and the result is computed anyway.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from tenderintel import store
from tenderintel.config import Settings, get_settings
from tenderintel.embedder import EmbeddingIndex, sync_embeddings
from tenderintel.errors import PersistenceError, SubjectNotFound, ValidationError
from tenderintel.llm import LLMClient
from tenderintel.models import Company, LegalRule, NviQuestion, Product, Tender, TenderAnalysis
from tenderintel.orchestrator import GenerationContext, results_by_key, run_tasks
from tenderintel.prompts import ANALYSIS_TASKS, LEGAL_TASKS, NVI_TASKS, PROPOSAL_SECTIONS, PROPOSAL_TASKS
from tenderintel.retrieval import (
    RetrievalBackend,
    build_query_text,
    find_relevant_capabilities,
    split_by_partition,
)
from tenderintel.scoring import FACTORS, priority_tier, score_and_sort
from tenderintel.utils import as_str_list, json_parse, to_json, utc_now

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pipeline wiring
# ---------------------------------------------------------------------------


@dataclass
class Pipeline:
    """Long-lived collaborators, built once per process and passed in."""
    settings: Settings
    client: LLMClient
    backend: RetrievalBackend

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> Pipeline:
        settings = settings or get_settings()
        client = LLMClient(
            provider=settings.llm_provider,
            model=settings.llm_model or None,
            max_tokens=settings.llm_max_tokens,
        )
        backend = EmbeddingIndex(settings.embeddings_dir, settings.embedding_model)
        return cls(settings=settings, client=client, backend=backend)

    @property
    def timeout(self) -> float | None:
        return self.settings.task_timeout_seconds


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _require_ids(user_id: Any, tender_id: Any) -> None:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("User ID is required")
    if tender_id is None or isinstance(tender_id, bool) or not isinstance(tender_id, int) or tender_id <= 0:
        raise ValidationError("Tender ID is required")


def _require_tender(session: Session, user_id: str, tender_id: int) -> Tender:
    _require_ids(user_id, tender_id)
    tender = store.get_tender(session, user_id, tender_id)
    if tender is None:
        raise SubjectNotFound(f"Tender {tender_id} not found")
    return tender


def _cached(lookup, session: Session, user_id: str, tender_id: int):
    """Cache lookup where an unreadable store counts as a miss."""
    try:
        return lookup(session, user_id, tender_id)
    except PersistenceError as exc:
        log.warning("Cache lookup failed, recomputing: %s", exc)
        return None


def _require_analysis(session: Session, user_id: str, tender_id: int) -> TenderAnalysis:
    row = store.get_analysis(session, user_id, tender_id)
    if row is None:
        raise SubjectNotFound("Tender analysis not found. Analyze the tender first.")
    return row


# ---------------------------------------------------------------------------
# Snapshots (read-only dicts handed to prompt builders)
# ---------------------------------------------------------------------------


def tender_snapshot(tender: Tender) -> dict[str, Any]:
    return {
        "id": tender.id,
        "title": tender.title,
        "reference_number": tender.reference_number,
        "tender_type": tender.tender_type,
        "description": tender.description,
        "requirements": json_parse(tender.requirements_json, {}),
        "specifications": json_parse(tender.specifications_json, {}),
        "evaluation_criteria": json_parse(tender.evaluation_criteria_json, {}),
        "budget_info": json_parse(tender.budget_info_json, {}),
        "deadlines": json_parse(tender.deadlines_json, {}),
        "contact_info": json_parse(tender.contact_info_json, {}),
        "categories": json_parse(tender.categories_json, []),
        "municipalities": json_parse(tender.municipalities_json, []),
        "cpv_code": tender.cpv_code,
    }


def company_snapshot(company: Company) -> dict[str, Any]:
    return {
        "id": company.id,
        "name": company.name,
        "industry": company.industry,
        "description": company.description,
        "capabilities": json_parse(company.capabilities_json, []),
        "certifications": json_parse(company.certifications_json, []),
        "achievements": json_parse(company.achievements_json, []),
        "employee_count": company.employee_count,
    }


def product_snapshot(product: Product) -> dict[str, Any]:
    return {
        "id": product.id,
        "company_id": product.company_id,
        "name": product.name,
        "category": product.category,
        "description": product.description,
        "features": json_parse(product.features_json, []),
        "compliance_standards": json_parse(product.compliance_standards_json, []),
        "specifications": json_parse(product.specifications_json, {}),
    }


def legal_rule_snapshot(rule: LegalRule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "article_number": rule.article_number,
        "title": rule.title,
        "category": rule.category,
        "compliance_requirements": json_parse(rule.compliance_requirements_json, []),
        "risk_level": rule.risk_level,
    }


def legal_text(tender: Tender) -> str:
    """Tender content that legal rule keywords are matched against."""
    snap = tender_snapshot(tender)
    parts = [
        snap["title"] or "",
        snap["description"] or "",
        *(json.dumps(snap[k], ensure_ascii=False) for k in
          ("requirements", "specifications", "evaluation_criteria", "deadlines")),
    ]
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Analysis payloads
# ---------------------------------------------------------------------------

_ANALYSIS_LISTS = (
    ("strengths", "strengths_json", "strengths"),
    ("gaps", "gaps_json", "gaps"),
    ("opportunities", "opportunities_json", "opportunities"),
    ("risks", "risks_json", "risks"),
    ("action_items", "action_items_json", "actionItems"),
)

_ANALYSIS_TEXTS = (
    ("overall_match", "overall_match", "overallMatch"),
    ("competitiveness", "competitiveness", "competitiveness"),
    ("recommendation", "recommendation", "recommendation"),
    ("budget_assessment", "budget_assessment", "budgetAssessment"),
    ("timeline_assessment", "timeline_assessment", "timeline"),
    ("strategic_advice", "strategic_advice", "strategicAdvice"),
)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return to_json(value)
    return str(value)


def _iso(value: datetime | None) -> str | None:
    """ISO timestamp in UTC. SQLite hands back naive datetimes for values stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def analysis_values(
    analysis: dict[str, Any],
    product_match: dict[str, Any],
    matches_by_partition: dict[str, list[dict[str, Any]]],
    degraded: list[str],
    model: str,
) -> dict[str, Any]:
    """Map decoded fragments to ``TenderAnalysis`` column values."""
    values: dict[str, Any] = {column: _text(analysis.get(key)) for _, column, key in _ANALYSIS_TEXTS}
    values.update({column: to_json(as_str_list(analysis.get(key))) for _, column, key in _ANALYSIS_LISTS})
    values["matching_products_json"] = to_json(product_match.get("matchingProducts") or [])
    values["relevant_companies_json"] = to_json(matches_by_partition.get("companies", []))
    values["relevant_products_json"] = to_json(matches_by_partition.get("products", []))
    values["degraded_sections_json"] = to_json(degraded)
    values["llm_model"] = model
    return values


def analysis_payload(
    tender_id: int, values: dict[str, Any], *, from_cache: bool, computed_at: datetime | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"tender_id": tender_id}
    payload.update({name: values.get(column) or "" for name, column, _ in _ANALYSIS_TEXTS})
    payload.update({name: json_parse(values.get(column), []) for name, column, _ in _ANALYSIS_LISTS})
    payload["matching_products"] = json_parse(values.get("matching_products_json"), [])
    payload["relevant_companies"] = json_parse(values.get("relevant_companies_json"), [])
    payload["relevant_products"] = json_parse(values.get("relevant_products_json"), [])
    payload["degraded_sections"] = json_parse(values.get("degraded_sections_json"), [])
    payload["from_cache"] = from_cache
    payload["computed_at"] = _iso(computed_at)
    return payload


def _row_values(row: TenderAnalysis) -> dict[str, Any]:
    columns = [c for _, c, _ in _ANALYSIS_TEXTS] + [c for _, c, _ in _ANALYSIS_LISTS] + [
        "matching_products_json", "relevant_companies_json", "relevant_products_json",
        "degraded_sections_json", "llm_model",
    ]
    return {c: getattr(row, c) for c in columns}


def cached_analysis_payload(row: TenderAnalysis) -> dict[str, Any]:
    return analysis_payload(
        row.tender_id, _row_values(row), from_cache=True, computed_at=row.updated_at or row.created_at,
    )


def analysis_snapshot(row: TenderAnalysis) -> dict[str, Any]:
    """Prior analysis as consumed by question, proposal and legal prompts."""
    return {
        name: json_parse(getattr(row, column), []) for name, column, _ in _ANALYSIS_LISTS
    } | {
        "recommendation": row.recommendation,
        "relevant_companies": json_parse(row.relevant_companies_json, []),
    }


# ---------------------------------------------------------------------------
# Operations: tender analysis
# ---------------------------------------------------------------------------


async def analyze_tender(
    session: Session, pipeline: Pipeline, user_id: str, tender_id: int, force: bool = False,
) -> dict[str, Any]:
    """Return the cached analysis for (user, tender) or compute and store a new one.

    A cache hit makes no retrieval or generation calls. ``force`` skips the
    cache lookup and overwrites the stored row.
    """
    tender = _require_tender(session, user_id, tender_id)

    if not force:
        cached = _cached(store.get_analysis, session, user_id, tender_id)
        if cached is not None:
            log.info("Analysis cache hit for user=%s tender=%s", user_id, tender_id)
            return cached_analysis_payload(cached)

    settings = pipeline.settings
    matches = await find_relevant_capabilities(
        pipeline.backend, build_query_text(tender), user_id,
        top_k=settings.retrieval_top_k, partitions=settings.retrieval_partitions,
    )
    grouped = split_by_partition(matches)
    companies = store.get_companies(session, user_id, [m.profile_id for m in grouped.get("companies", [])])
    products = store.get_products(session, user_id, [m.profile_id for m in grouped.get("products", [])])
    log.info(
        "Tender %s: %d matches -> %d companies, %d products",
        tender_id, len(matches), len(companies), len(products),
    )

    context = GenerationContext(
        tender=tender_snapshot(tender),
        companies=tuple(company_snapshot(c) for c in companies),
        products=tuple(product_snapshot(p) for p in products),
        matches=tuple(matches),
    )
    results = results_by_key(await run_tasks(pipeline.client, context, ANALYSIS_TASKS, pipeline.timeout))

    values = analysis_values(
        results["analysis"].fragment,
        results["product_matching"].fragment,
        {p: [m.as_dict() for m in ms] for p, ms in grouped.items()},
        [key for key, r in results.items() if r.degraded],
        pipeline.client.model,
    )
    computed_at = utc_now()
    try:
        row = store.upsert_analysis(session, user_id, tender_id, values)
        computed_at = row.updated_at or computed_at
    except PersistenceError as exc:
        log.warning("Returning unsaved analysis: %s", exc)
    return analysis_payload(tender_id, values, from_cache=False, computed_at=computed_at)


# ---------------------------------------------------------------------------
# Operations: clarification questions
# ---------------------------------------------------------------------------


def question_payload(row: NviQuestion) -> dict[str, Any]:
    total = sum(getattr(row, attr) for attr, _ in FACTORS)
    return {
        "id": row.id,
        "position": row.position,
        "lens": row.lens,
        "issue": row.issue,
        "question": row.question,
        "justification": row.justification,
        **{attr: getattr(row, attr) for attr, _ in FACTORS},
        "total": total,
        "tier": priority_tier(total),
        "status": row.status,
    }


async def generate_questions(
    session: Session, pipeline: Pipeline, user_id: str, tender_id: int,
) -> dict[str, Any]:
    """Generate, score and store a fresh question set for an analysed tender.

    The stored set is only replaced when generation produced usable output.
    """
    tender = _require_tender(session, user_id, tender_id)
    analysis = _require_analysis(session, user_id, tender_id)

    context = GenerationContext(tender=tender_snapshot(tender), analysis=analysis_snapshot(analysis))
    (result,) = await run_tasks(pipeline.client, context, NVI_TASKS, pipeline.timeout)
    issues = score_and_sort(result.fragment.get("items") or [])

    saved = False
    if result.degraded or not issues:
        log.warning("No usable questions for tender %s; stored set left untouched", tender_id)
    else:
        try:
            store.replace_questions(session, user_id, tender_id, issues)
            saved = True
        except PersistenceError as exc:
            log.warning("Returning unsaved questions: %s", exc)

    return {
        "tender_id": tender_id,
        "questions": [issue.as_dict() for issue in issues],
        "count": len(issues),
        "saved": saved,
        "degraded": result.degraded,
    }


def list_questions(session: Session, user_id: str, tender_id: int) -> list[dict[str, Any]]:
    _require_ids(user_id, tender_id)
    return [question_payload(q) for q in store.list_questions(session, user_id, tender_id)]


# ---------------------------------------------------------------------------
# Operations: proposals
# ---------------------------------------------------------------------------


def assemble_proposal(tender_title: str, fragments: dict[str, dict[str, Any]]) -> dict[str, Any]:
    return {
        "title": f"Proposal for {tender_title}",
        "sections": [
            {"title": title, "content": _text(fragments[key].get("content")), "type": key}
            for key, title in PROPOSAL_SECTIONS
        ],
        "executive_summary_table": fragments["executive_summary"].get("table") or [],
        "methodology_phases": fragments["methodology"].get("phases") or [],
        "team_structure": fragments["organisation"].get("team") or [],
        "risk_matrix": fragments["risk_management"].get("risks") or [],
    }


async def generate_proposal(
    session: Session, pipeline: Pipeline, user_id: str, tender_id: int,
) -> dict[str, Any]:
    tender = _require_tender(session, user_id, tender_id)
    analysis = _require_analysis(session, user_id, tender_id)

    context = GenerationContext(
        tender=tender_snapshot(tender),
        companies=tuple(company_snapshot(c) for c in store.get_companies(session, user_id)),
        products=tuple(product_snapshot(p) for p in store.get_products(session, user_id)),
        analysis=analysis_snapshot(analysis),
    )
    results = results_by_key(await run_tasks(pipeline.client, context, PROPOSAL_TASKS, pipeline.timeout))
    document = assemble_proposal(tender.title, {k: r.fragment for k, r in results.items()})
    document["degraded_sections"] = [k for k, r in results.items() if r.degraded]

    saved_at = None
    try:
        row = store.upsert_proposal(session, user_id, tender_id, document["title"], document)
        saved_at = row.updated_at
    except PersistenceError as exc:
        log.warning("Returning unsaved proposal: %s", exc)
    return {"tender_id": tender_id, "proposal": document, "saved": saved_at is not None, "updated_at": _iso(saved_at)}


def get_proposal(session: Session, user_id: str, tender_id: int) -> dict[str, Any] | None:
    _require_ids(user_id, tender_id)
    row = store.get_proposal(session, user_id, tender_id)
    if row is None:
        return None
    return {
        "id": row.id,
        "tender_id": row.tender_id,
        "title": row.title,
        "status": row.status,
        "proposal": json_parse(row.content_json, {}),
        "updated_at": _iso(row.updated_at),
    }


# ---------------------------------------------------------------------------
# Operations: legal analysis
# ---------------------------------------------------------------------------


async def analyze_legal(
    session: Session, pipeline: Pipeline, user_id: str, tender_id: int, force: bool = False,
) -> dict[str, Any]:
    tender = _require_tender(session, user_id, tender_id)

    if not force:
        cached = _cached(store.get_legal_analysis, session, user_id, tender_id)
        if cached is not None:
            return {
                "tender_id": tender_id,
                "analysis": json_parse(cached.result_json, {}),
                "applicable_rules_count": len(json_parse(cached.applicable_rules_json, [])),
                "from_cache": True,
                "analyzed_at": _iso(cached.updated_at or cached.created_at),
            }

    rules = store.matching_legal_rules(session, legal_text(tender))
    prior = store.get_analysis(session, user_id, tender_id)
    context = GenerationContext(
        tender=tender_snapshot(tender),
        analysis=analysis_snapshot(prior) if prior is not None else {},
        legal_rules=tuple(legal_rule_snapshot(r) for r in rules),
    )
    (result,) = await run_tasks(pipeline.client, context, LEGAL_TASKS, pipeline.timeout)
    report = dict(result.fragment)
    report["degraded"] = result.degraded

    analyzed_at = utc_now()
    try:
        row = store.upsert_legal_analysis(session, user_id, tender_id, report, [r.id for r in rules])
        analyzed_at = row.updated_at or analyzed_at
    except PersistenceError as exc:
        log.warning("Returning unsaved legal analysis: %s", exc)
    return {
        "tender_id": tender_id,
        "analysis": report,
        "applicable_rules_count": len(rules),
        "from_cache": False,
        "analyzed_at": _iso(analyzed_at),
    }


# ---------------------------------------------------------------------------
# Operations: embeddings
# ---------------------------------------------------------------------------


async def sync_user_embeddings(session: Session, pipeline: Pipeline, user_id: str) -> dict[str, int]:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("User ID is required")
    if not isinstance(pipeline.backend, EmbeddingIndex):
        raise ValidationError("Configured retrieval backend does not support syncing")
    counts = await asyncio.to_thread(sync_embeddings, session, pipeline.backend, user_id)
    log.info("Synced embeddings for user %s: %s", user_id, counts)
    return counts

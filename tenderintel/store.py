"""Persistence for cached analyses, question sets, proposals and legal reports.

Every query goes through small helpers that roll the session back and
translate ``SQLAlchemyError`` into ``PersistenceError``. A missing row is not
an error: reads return ``None`` or an empty list. The single-row tables
(analysis, proposal, legal report) are written with an SQLite
``INSERT .. ON CONFLICT DO UPDATE`` keyed on (user, tender), so two writers
racing on the same key both succeed and the last one wins.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Sequence, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tenderintel.errors import PersistenceError
from tenderintel.models import (
    Company,
    LegalAnalysis,
    LegalRule,
    NviQuestion,
    Product,
    Proposal,
    Tender,
    TenderAnalysis,
)
from tenderintel.scoring import FACTORS, ScoredIssue
from tenderintel.utils import json_parse, to_json, utc_now

log = logging.getLogger(__name__)

_Row = TypeVar("_Row", TenderAnalysis, Proposal, LegalAnalysis)


@contextmanager
def _guard(session: Session, action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Failed to {action}: {exc}") from exc


def _commit(session: Session, what: str) -> None:
    with _guard(session, f"save {what}"):
        session.commit()


def _upsert(session: Session, model: type[_Row], user_id: str, tender_id: int,
            values: dict[str, Any], what: str) -> _Row:
    """Insert or overwrite the (user, tender) row of *model* and return it freshly loaded."""
    values = {**values, "updated_at": utc_now()}
    stmt = sqlite_insert(model).values(user_id=user_id, tender_id=tender_id, **values)
    stmt = stmt.on_conflict_do_update(index_elements=["user_id", "tender_id"], set_=values)
    with _guard(session, f"save {what}"):
        session.execute(stmt)
    _commit(session, what)
    with _guard(session, f"reload {what}"):
        return session.execute(
            select(model)
            .where(model.user_id == user_id, model.tender_id == tender_id)
            .execution_options(populate_existing=True)
        ).scalars().one()


# ---------------------------------------------------------------------------
# Subjects and capability profiles (read-only)
# ---------------------------------------------------------------------------


def get_tender(session: Session, user_id: str, tender_id: int) -> Tender | None:
    with _guard(session, f"load tender {tender_id}"):
        return session.execute(
            select(Tender).where(Tender.id == tender_id, Tender.user_id == user_id)
        ).scalars().first()


def get_companies(session: Session, user_id: str, ids: Sequence[int] | None = None) -> list[Company]:
    """Companies owned by *user_id*, optionally restricted to *ids* (in id order)."""
    stmt = select(Company).where(Company.user_id == user_id)
    if ids is not None:
        if not ids:
            return []
        stmt = stmt.where(Company.id.in_(ids))
    with _guard(session, "load companies"):
        return list(session.execute(stmt.order_by(Company.id)).scalars().all())


def get_products(session: Session, user_id: str, ids: Sequence[int] | None = None) -> list[Product]:
    stmt = select(Product).where(Product.user_id == user_id)
    if ids is not None:
        if not ids:
            return []
        stmt = stmt.where(Product.id.in_(ids))
    with _guard(session, "load products"):
        return list(session.execute(stmt.order_by(Product.id)).scalars().all())


def matching_legal_rules(session: Session, text: str) -> list[LegalRule]:
    """Rules with at least one trigger keyword occurring in *text* (case-insensitive)."""
    haystack = text.lower()
    with _guard(session, "load legal rules"):
        rules = session.execute(select(LegalRule).order_by(LegalRule.id)).scalars().all()
    return [
        r for r in rules
        if any(str(k).lower() in haystack for k in json_parse(r.trigger_keywords_json, []) if k)
    ]


# ---------------------------------------------------------------------------
# Analysis cache
# ---------------------------------------------------------------------------


def get_analysis(session: Session, user_id: str, tender_id: int) -> TenderAnalysis | None:
    with _guard(session, f"load analysis for tender {tender_id}"):
        return session.execute(
            select(TenderAnalysis).where(
                TenderAnalysis.user_id == user_id, TenderAnalysis.tender_id == tender_id,
            )
        ).scalars().first()


def upsert_analysis(session: Session, user_id: str, tender_id: int, values: dict[str, Any]) -> TenderAnalysis:
    """Insert or overwrite the single analysis row for (user, tender).

    *values* maps column names to already-serialised values.
    """
    return _upsert(session, TenderAnalysis, user_id, tender_id, values, f"analysis for tender {tender_id}")


# ---------------------------------------------------------------------------
# Question sets
# ---------------------------------------------------------------------------


def replace_questions(
    session: Session, user_id: str, tender_id: int, issues: Sequence[ScoredIssue],
) -> list[NviQuestion]:
    """Replace the whole question set for (user, tender).

    Two steps: delete then insert, each committed on its own. A failure in
    the insert step leaves the set empty rather than half-replaced.
    """
    with _guard(session, f"clear questions for tender {tender_id}"):
        session.execute(
            delete(NviQuestion).where(NviQuestion.user_id == user_id, NviQuestion.tender_id == tender_id)
        )
    _commit(session, f"question deletion for tender {tender_id}")

    rows = []
    for position, issue in enumerate(issues):
        row = NviQuestion(
            user_id=user_id,
            tender_id=tender_id,
            position=position,
            lens=issue.lens,
            issue=issue.issue,
            question=issue.question,
            justification=issue.justification,
            priority_score=issue.total,
            status="draft",
            **{attr: getattr(issue, attr) for attr, _ in FACTORS},
        )
        rows.append(row)
    session.add_all(rows)
    _commit(session, f"{len(rows)} questions for tender {tender_id}")
    return rows


def list_questions(session: Session, user_id: str, tender_id: int) -> list[NviQuestion]:
    """Stored question set, highest priority first, generation order on ties."""
    with _guard(session, f"load questions for tender {tender_id}"):
        return list(session.execute(
            select(NviQuestion)
            .where(NviQuestion.user_id == user_id, NviQuestion.tender_id == tender_id)
            .order_by(NviQuestion.priority_score.desc(), NviQuestion.position)
        ).scalars().all())


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


def get_proposal(session: Session, user_id: str, tender_id: int) -> Proposal | None:
    with _guard(session, f"load proposal for tender {tender_id}"):
        return session.execute(
            select(Proposal).where(Proposal.user_id == user_id, Proposal.tender_id == tender_id)
        ).scalars().first()


def upsert_proposal(
    session: Session, user_id: str, tender_id: int, title: str, document: dict[str, Any],
) -> Proposal:
    values = {"title": title, "content_json": to_json(document), "status": "draft"}
    return _upsert(session, Proposal, user_id, tender_id, values, f"proposal for tender {tender_id}")


# ---------------------------------------------------------------------------
# Legal analyses
# ---------------------------------------------------------------------------


def get_legal_analysis(session: Session, user_id: str, tender_id: int) -> LegalAnalysis | None:
    with _guard(session, f"load legal analysis for tender {tender_id}"):
        return session.execute(
            select(LegalAnalysis).where(LegalAnalysis.user_id == user_id, LegalAnalysis.tender_id == tender_id)
        ).scalars().first()


def upsert_legal_analysis(
    session: Session, user_id: str, tender_id: int, result: dict[str, Any], rule_ids: Sequence[int],
) -> LegalAnalysis:
    values = {"result_json": to_json(result), "applicable_rules_json": to_json(list(rule_ids))}
    return _upsert(session, LegalAnalysis, user_id, tender_id, values, f"legal analysis for tender {tender_id}")

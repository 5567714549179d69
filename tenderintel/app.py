from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from sqlalchemy.orm import Session

from tenderintel import services
from tenderintel.db import init_db, session_generator
from tenderintel.errors import (
    PersistenceError,
    PipelineError,
    RetrievalUnavailable,
    SubjectNotFound,
    ValidationError,
)
from tenderintel.schemas import (
    AnalysisOut,
    AnalyzeRequest,
    EmbeddingSyncOut,
    LegalAnalysisOut,
    LegalAnalysisRequest,
    ProposalGenerateOut,
    ProposalOut,
    QuestionSetOut,
    StoredQuestionOut,
    TenderRequest,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Tender Intelligence",
    version="0.1.0",
    description=(
        "Analyse public tenders against a company's capability profiles, generate "
        "prioritised clarification questions, draft proposals and review legal risk. "
        "The caller is identified by the X-User-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Analysis", "description": "Cached tender analysis and legal review."},
        {"name": "Questions", "description": "Scored NvI clarification questions."},
        {"name": "Proposals", "description": "Multi-section proposal drafts."},
        {"name": "Embeddings", "description": "Capability similarity index maintenance."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


@lru_cache(maxsize=1)
def get_pipeline() -> services.Pipeline:
    return services.Pipeline.from_settings()


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(400, "X-User-Id header is required")
    return x_user_id.strip()


def _http_error(exc: PipelineError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(400, str(exc))
    if isinstance(exc, SubjectNotFound):
        return HTTPException(404, str(exc))
    if isinstance(exc, RetrievalUnavailable):
        return HTTPException(503, str(exc))
    if isinstance(exc, PersistenceError):
        log.error("Store unavailable: %s", exc)
        return HTTPException(503, "Store unavailable")
    log.error("Unhandled pipeline error: %s", exc)
    return HTTPException(500, str(exc))


# ---------------------------------------------------------------------------
# Routes: Analysis
# ---------------------------------------------------------------------------


@app.post("/api/tenders/analyze", response_model=AnalysisOut,
          tags=["Analysis"], summary="Analyse a tender against the caller's capabilities")
async def analyze_tender(
    body: AnalyzeRequest,
    user_id: str = Depends(current_user),
    session: Session = Depends(db_session),
    pipeline: services.Pipeline = Depends(get_pipeline),
):
    try:
        return await services.analyze_tender(session, pipeline, user_id, body.tender_id, body.force_reanalyze)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@app.post("/api/tenders/legal-analysis", response_model=LegalAnalysisOut,
          tags=["Analysis"], summary="Legal and commercial risk review")
async def legal_analysis(
    body: LegalAnalysisRequest,
    user_id: str = Depends(current_user),
    session: Session = Depends(db_session),
    pipeline: services.Pipeline = Depends(get_pipeline),
):
    try:
        return await services.analyze_legal(session, pipeline, user_id, body.tender_id, body.force)
    except PipelineError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Routes: Questions
# ---------------------------------------------------------------------------


@app.post("/api/nvi/generate", response_model=QuestionSetOut,
          tags=["Questions"], summary="Generate and store a scored question set")
async def generate_questions(
    body: TenderRequest,
    user_id: str = Depends(current_user),
    session: Session = Depends(db_session),
    pipeline: services.Pipeline = Depends(get_pipeline),
):
    try:
        return await services.generate_questions(session, pipeline, user_id, body.tender_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@app.get("/api/nvi", response_model=list[StoredQuestionOut],
         tags=["Questions"], summary="Stored questions, highest priority first")
async def list_questions(
    tender_id: int | None = Query(None),
    user_id: str = Depends(current_user),
    session: Session = Depends(db_session),
):
    try:
        return services.list_questions(session, user_id, tender_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Routes: Proposals
# ---------------------------------------------------------------------------


@app.post("/api/proposals/generate", response_model=ProposalGenerateOut,
          tags=["Proposals"], summary="Draft a proposal with one agent per section")
async def generate_proposal(
    body: TenderRequest,
    user_id: str = Depends(current_user),
    session: Session = Depends(db_session),
    pipeline: services.Pipeline = Depends(get_pipeline),
):
    try:
        return await services.generate_proposal(session, pipeline, user_id, body.tender_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@app.get("/api/proposals", response_model=ProposalOut | None,
         tags=["Proposals"], summary="Stored proposal for a tender, or null")
async def get_proposal(
    tender_id: int | None = Query(None),
    user_id: str = Depends(current_user),
    session: Session = Depends(db_session),
):
    try:
        return services.get_proposal(session, user_id, tender_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Routes: Embeddings
# ---------------------------------------------------------------------------


@app.post("/api/embeddings/sync", response_model=EmbeddingSyncOut,
          tags=["Embeddings"], summary="Rebuild the caller's capability vectors")
async def sync_embeddings(
    user_id: str = Depends(current_user),
    session: Session = Depends(db_session),
    pipeline: services.Pipeline = Depends(get_pipeline),
):
    try:
        counts = await services.sync_user_embeddings(session, pipeline, user_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return {"user_id": user_id, "counts": counts}


def main() -> None:
    import uvicorn

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    uvicorn.run(
        "tenderintel.app:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Tender(Base):
    """An ingested tender document. Read-only to the pipeline."""
    __tablename__ = "tenders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    reference_number: Mapped[str] = mapped_column(String(200), default="")
    tender_type: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    requirements_json: Mapped[str] = mapped_column(Text, default="{}")
    specifications_json: Mapped[str] = mapped_column(Text, default="{}")
    evaluation_criteria_json: Mapped[str] = mapped_column(Text, default="{}")
    budget_info_json: Mapped[str] = mapped_column(Text, default="{}")
    deadlines_json: Mapped[str] = mapped_column(Text, default="{}")
    contact_info_json: Mapped[str] = mapped_column(Text, default="{}")
    categories_json: Mapped[str] = mapped_column(Text, default="[]")
    municipalities_json: Mapped[str] = mapped_column(Text, default="[]")
    cpv_code: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    industry: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    capabilities_json: Mapped[str] = mapped_column(Text, default="[]")
    certifications_json: Mapped[str] = mapped_column(Text, default="[]")
    achievements_json: Mapped[str] = mapped_column(Text, default="[]")
    employee_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    products: Mapped[list[Product]] = relationship("Product", back_populates="company", cascade="all, delete-orphan")


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    features_json: Mapped[str] = mapped_column(Text, default="[]")
    compliance_standards_json: Mapped[str] = mapped_column(Text, default="[]")
    specifications_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    company: Mapped[Company] = relationship("Company", back_populates="products")


class TenderAnalysis(Base):
    """Cached composite analysis. Exactly one row per (user, tender)."""
    __tablename__ = "tender_analyses"
    __table_args__ = (UniqueConstraint("user_id", "tender_id", name="uq_tender_analyses_user_tender"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tender_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenders.id"), nullable=False)
    overall_match: Mapped[str] = mapped_column(String(50), default="")
    competitiveness: Mapped[str] = mapped_column(String(50), default="")
    recommendation: Mapped[str] = mapped_column(Text, default="")
    strengths_json: Mapped[str] = mapped_column(Text, default="[]")
    gaps_json: Mapped[str] = mapped_column(Text, default="[]")
    opportunities_json: Mapped[str] = mapped_column(Text, default="[]")
    risks_json: Mapped[str] = mapped_column(Text, default="[]")
    action_items_json: Mapped[str] = mapped_column(Text, default="[]")
    budget_assessment: Mapped[str] = mapped_column(Text, default="")
    timeline_assessment: Mapped[str] = mapped_column(Text, default="")
    strategic_advice: Mapped[str] = mapped_column(Text, default="")
    matching_products_json: Mapped[str] = mapped_column(Text, default="[]")
    relevant_companies_json: Mapped[str] = mapped_column(Text, default="[]")
    relevant_products_json: Mapped[str] = mapped_column(Text, default="[]")
    degraded_sections_json: Mapped[str] = mapped_column(Text, default="[]")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class NviQuestion(Base):
    """One scored clarification question. A set is replaced whole on regeneration."""
    __tablename__ = "nvi_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tender_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenders.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    lens: Mapped[str] = mapped_column(String(200), default="")
    issue: Mapped[str] = mapped_column(Text, default="")
    question: Mapped[str] = mapped_column(Text, default="")
    justification: Mapped[str] = mapped_column(Text, default="")
    ko_risk: Mapped[int] = mapped_column(Integer, default=0)
    meat_impact: Mapped[int] = mapped_column(Integer, default=0)
    euro_impact: Mapped[int] = mapped_column(Integer, default=0)
    time_impact: Mapped[int] = mapped_column(Integer, default=0)
    evidence_risk: Mapped[int] = mapped_column(Integer, default=0)
    priority_score: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | submitted | answered
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Proposal(Base):
    __tablename__ = "proposals"
    __table_args__ = (UniqueConstraint("user_id", "tender_id", name="uq_proposals_user_tender"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tender_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenders.id"), nullable=False)
    title: Mapped[str] = mapped_column(Text, default="")
    content_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[str] = mapped_column(String(20), default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class LegalRule(Base):
    __tablename__ = "legal_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_number: Mapped[str] = mapped_column(String(100), default="")
    title: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(200), default="")
    trigger_keywords_json: Mapped[str] = mapped_column(Text, default="[]")
    compliance_requirements_json: Mapped[str] = mapped_column(Text, default="[]")
    risk_level: Mapped[str] = mapped_column(String(50), default="")


class LegalAnalysis(Base):
    __tablename__ = "legal_analyses"
    __table_args__ = (UniqueConstraint("user_id", "tender_id", name="uq_legal_analyses_user_tender"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tender_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenders.id"), nullable=False)
    result_json: Mapped[str] = mapped_column(Text, default="{}")
    applicable_rules_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

"""Prompt templates and task catalogues for each generation workflow.

Every workflow is a tuple of ``TaskSpec``s whose prompts are built from the
shared ``GenerationContext``. Prompts ask for JSON, but nothing downstream
relies on getting it: the decoder handles whatever comes back.
"""
from __future__ import annotations

import json
from typing import Any, Iterable

from tenderintel.decoder import FragmentShape
from tenderintel.orchestrator import GenerationContext, TaskSpec

_JSON_ONLY = (
    "IMPORTANT: Return ONLY valid JSON in this exact format. Do not include any "
    "markdown, explanations, or other text. Escape quotes inside strings."
)


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _block(value: Any) -> str:
    return json.dumps(value if value is not None else {}, indent=2, ensure_ascii=False, default=str)


def _inline(value: Any) -> str:
    return json.dumps(value if value is not None else {}, ensure_ascii=False, default=str)


def _join(values: Iterable[Any] | None, default: str = "Not specified") -> str:
    items = [str(v) for v in (values or []) if v]
    return ", ".join(items) if items else default


def format_companies(companies: Iterable[dict[str, Any]]) -> str:
    lines = [
        f"Company: {c.get('name', '')}\n"
        f"Industry: {c.get('industry') or 'Not specified'}\n"
        f"Description: {c.get('description') or ''}\n"
        f"Capabilities: {_join(c.get('capabilities'))}\n"
        f"Certifications: {_join(c.get('certifications'))}"
        for c in companies
    ]
    return "\n\n".join(lines) or "No companies found"


def format_products(products: Iterable[dict[str, Any]]) -> str:
    lines = [
        f"Product: {p.get('name', '')}\n"
        f"Category: {p.get('category') or 'Not specified'}\n"
        f"Description: {p.get('description') or ''}\n"
        f"Features: {_join(p.get('features'))}\n"
        f"Compliance: {_join(p.get('compliance_standards'))}\n"
        f"Specifications: {_inline(p.get('specifications'))}"
        for p in products
    ]
    return "\n\n".join(lines) or "No products found"


def format_match_scores(ctx: GenerationContext) -> str:
    by_kind: dict[str, list[str]] = {}
    for m in ctx.matches:
        by_kind.setdefault(m.kind, []).append(f"{m.title}: {m.score:.3f}")
    if not by_kind:
        return "No relevant capabilities found"
    return "\n".join(f"{kind.title()}s: {', '.join(items)}" for kind, items in by_kind.items())


# ---------------------------------------------------------------------------
# Tender analysis
# ---------------------------------------------------------------------------

ANALYSIS_SHAPE = FragmentShape(
    "analysis",
    text_fields=(
        "content", "overallMatch", "competitiveness", "recommendation",
        "budgetAssessment", "timeline", "strategicAdvice",
    ),
    list_fields=("strengths", "gaps", "opportunities", "risks", "actionItems"),
)

PRODUCT_MATCH_SHAPE = FragmentShape("product_matching", list_fields=("matchingProducts",))

ANALYSIS_SYSTEM = (
    "You are an expert procurement analyst. Provide detailed, practical analysis comparing "
    "tender requirements with company capabilities. Always return valid JSON."
)

PRODUCT_MATCH_SYSTEM = (
    "You are a technical product matching expert. Analyze product specifications against "
    "tender requirements and return matching products with precise technical justifications. "
    "Always return valid JSON."
)


def build_analysis_prompt(ctx: GenerationContext) -> str:
    t = ctx.tender
    return f"""\
Analyze this tender and compare it with the user's capabilities to provide actionable insights.

TENDER INFORMATION:
Title: {t.get('title', '')}
Description: {t.get('description', '')}
Requirements: {_block(t.get('requirements'))}
Specifications: {_block(t.get('specifications'))}
Evaluation Criteria: {_block(t.get('evaluation_criteria'))}
Budget: {_block(t.get('budget_info'))}
Deadlines: {_block(t.get('deadlines'))}

USER'S COMPANIES:
{format_companies(ctx.companies)}

USER'S PRODUCTS:
{format_products(ctx.products)}

VECTOR SEARCH RELEVANCE SCORES:
{format_match_scores(ctx)}

Respond with JSON:
{{
  "content": "<one paragraph summary of the fit>",
  "overallMatch": "<percentage match 0-100>",
  "competitiveness": "<High|Medium|Low>",
  "recommendation": "<Should bid|Consider bidding|Don't bid>",
  "strengths": ["<strengths for this tender, naming specific products>"],
  "gaps": ["<requirements the user cannot meet>"],
  "opportunities": ["<areas of competitive advantage>"],
  "risks": ["<potential challenges>"],
  "actionItems": ["<specific steps to improve bid chances>"],
  "budgetAssessment": "<budget vs capacity>",
  "timeline": "<deadline feasibility>",
  "strategicAdvice": "<high-level recommendation>"
}}

{_JSON_ONLY}
"""


def build_product_match_prompt(ctx: GenerationContext) -> str:
    t = ctx.tender
    return f"""\
Analyze the tender requirements and match them with specific products from the user's catalog.

TENDER REQUIREMENTS:
{_block(t.get('requirements'))}
{_block(t.get('specifications'))}

AVAILABLE PRODUCTS:
{format_products(ctx.products)}

Return JSON with the top 3-5 matching products:
{{
  "content": "<one sentence overview>",
  "matchingProducts": [
    {{
      "name": "<product name>",
      "matchScore": <0-100>,
      "keySpecifications": "<specs relevant to the tender>",
      "certifications": "<relevant certifications>",
      "whyMatch": "<specific technical reason this product matches>"
    }}
  ]
}}

{_JSON_ONLY}
"""


def _has_products(ctx: GenerationContext) -> bool:
    return bool(ctx.products)


ANALYSIS_TASKS: tuple[TaskSpec, ...] = (
    TaskSpec("analysis", ANALYSIS_SYSTEM, build_analysis_prompt, ANALYSIS_SHAPE,
             temperature=0.1, max_tokens=2000),
    TaskSpec("product_matching", PRODUCT_MATCH_SYSTEM, build_product_match_prompt, PRODUCT_MATCH_SHAPE,
             temperature=0.1, max_tokens=1500, enabled=_has_products),
)


# ---------------------------------------------------------------------------
# NvI clarification questions
# ---------------------------------------------------------------------------

NVI_SHAPE = FragmentShape("nvi_questions", list_fields=("items",))

NVI_LENSES = (
    "Legal & Process",
    "Scope & Lots",
    "Knock-outs & Suitability",
    "Evaluation Method",
    "Pricing Mechanism & Quantities",
    "Technical Requirements",
    "Calculation Models & Tools",
    "Delivery, SLA & Penalties",
    "Sustainability, SROI & RBC",
    "Contract Conditions",
    "Privacy/IP & Data",
    "Version Control & Communication",
)

NVI_SYSTEM = (
    "You are a Dutch procurement expert specializing in strategic tender analysis and "
    "Nota van Inlichtingen (NvI) question formulation. Generate practical, high-impact "
    "clarification questions."
)


def build_nvi_prompt(ctx: GenerationContext) -> str:
    t = ctx.tender
    a = ctx.analysis
    lenses = "\n".join(f"{i}. {lens}" for i, lens in enumerate(NVI_LENSES, 1))
    return f"""\
Analyze this tender and generate strategic clarification questions based on the 12-lens framework.

TENDER INFORMATION:
Title: {t.get('title', '')}
Requirements: {_inline(t.get('requirements'))}
Specifications: {_inline(t.get('specifications'))}
Evaluation Criteria: {_inline(t.get('evaluation_criteria'))}
Budget: {_inline(t.get('budget_info'))}
Deadlines: {_inline(t.get('deadlines'))}

ANALYSIS RESULTS:
Gaps: {_join(a.get('gaps'), 'None identified')}
Risks: {_join(a.get('risks'), 'None identified')}
Open actions: {_join(a.get('action_items'), 'None identified')}

Generate 8-12 strategic NvI questions covering these lenses:
{lenses}

For each question, score 0-3 for:
- koRisk: risk of disqualification if unclear
- meatImpact: impact on quality scoring
- euroImpact: financial impact on bid
- timeImpact: impact on project timeline
- evidenceRisk: difficulty proving compliance

Return a JSON array:
[
  {{
    "lens": "<one of the lenses>",
    "issue": "<the ambiguity or risk>",
    "question": "<question to the contracting authority>",
    "koRisk": 0, "meatImpact": 0, "euroImpact": 0, "timeImpact": 0, "evidenceRisk": 0,
    "justification": "<why this question matters>"
  }}
]

{_JSON_ONLY}
"""


NVI_TASKS: tuple[TaskSpec, ...] = (
    TaskSpec("nvi_questions", NVI_SYSTEM, build_nvi_prompt, NVI_SHAPE,
             list_key="questions", temperature=0.2, max_tokens=4000),
)


# ---------------------------------------------------------------------------
# Proposal (seven section agents)
# ---------------------------------------------------------------------------

PROPOSAL_SECTIONS: tuple[tuple[str, str], ...] = (
    ("company_intro", "Company Introduction"),
    ("executive_summary", "Executive Summary"),
    ("methodology", "Methodology & Execution"),
    ("organisation", "Organisation & Governance"),
    ("risk_management", "Risk Management"),
    ("sustainability", "Sustainability & Innovation"),
    ("why_choose_us", "Why Choose Us"),
)


def _company_intro(ctx: GenerationContext) -> str:
    companies = "\n".join(
        f"{c.get('name', '')}: {c.get('description', '')}, Capabilities: {_join(c.get('capabilities'))}"
        for c in ctx.companies
    )
    return f"""\
Generate a compelling company introduction in storytelling style for a tender proposal.

TENDER: {ctx.tender.get('title', '')}
REQUIREMENTS: {_inline(ctx.tender.get('requirements'))}
COMPANIES: {companies or 'Not specified'}

Structure: who we are, what we do, our mission aligned with the tender.

{_JSON_ONLY}
{{ "content": "<introduction text>" }}
"""


def _executive_summary(ctx: GenerationContext) -> str:
    products = "\n".join(f"{p.get('name', '')}: {p.get('description', '')}" for p in ctx.products)
    return f"""\
Generate an executive summary table for a tender proposal.

TENDER REQUIREMENTS: {_inline(ctx.tender.get('requirements'))}
EVALUATION CRITERIA: {_inline(ctx.tender.get('evaluation_criteria'))}
ANALYSIS STRENGTHS: {_join(ctx.analysis.get('strengths'))}
PRODUCTS: {products or 'Not specified'}

Map 5-7 key requirements to solutions and client benefits. Include sustainability,
compliance, delivery, innovation and cost efficiency.

{_JSON_ONLY}
{{
  "content": "<executive summary introduction>",
  "table": [{{"requirement": "...", "solution": "...", "benefit": "..."}}]
}}
"""


def _methodology(ctx: GenerationContext) -> str:
    return f"""\
Generate a methodology and execution plan for this tender.

TENDER SCOPE: {ctx.tender.get('description', '')}
DEADLINES: {_inline(ctx.tender.get('deadlines'))}
TECHNICAL REQUIREMENTS: {_inline(ctx.tender.get('specifications'))}

Create 4-5 phases: Mobilisation, Design, Implementation, Handover, (optional) Operations.

{_JSON_ONLY}
{{
  "content": "<methodology introduction>",
  "phases": [{{"phase": "...", "activities": "...", "deliverables": "..."}}]
}}
"""


def _organisation(ctx: GenerationContext) -> str:
    size = next((c.get("employee_count") for c in ctx.companies if c.get("employee_count")), None)
    capabilities = "; ".join(_join(c.get("capabilities")) for c in ctx.companies)
    return f"""\
Generate the organisation and governance structure for a tender proposal.

COMPANY SIZE: {size or 'Not specified'}
CAPABILITIES: {capabilities or 'Not specified'}

Define 4-6 key roles (project manager, compliance officer, technical lead, service desk lead,
plus roles the requirements call for).

{_JSON_ONLY}
{{
  "content": "<organisation introduction>",
  "team": [{{"role": "...", "profile": "...", "responsibility": "..."}}]
}}
"""


def _risk_management(ctx: GenerationContext) -> str:
    return f"""\
Generate the risk management section for a tender proposal.

IDENTIFIED RISKS: {_join(ctx.analysis.get('risks'))}
GAPS: {_join(ctx.analysis.get('gaps'))}

List 4-6 key risks with mitigation strategies (supply delays, missing certificates,
installation delays, compliance and technical risks).

{_JSON_ONLY}
{{
  "content": "<risk management introduction>",
  "risks": [{{"risk": "...", "impact": "High|Medium|Low", "mitigation": "..."}}]
}}
"""


def _sustainability(ctx: GenerationContext) -> str:
    requirements = ctx.tender.get("requirements") or {}
    social = requirements.get("social") if isinstance(requirements, dict) else None
    return f"""\
Generate the sustainability and innovation section for a tender proposal.

SUSTAINABILITY REQUIREMENTS: {_inline(social)}
FOCUS AREAS: {_join(ctx.tender.get('categories'))}
INNOVATION OPPORTUNITIES: {_join(ctx.analysis.get('opportunities'))}

Cover EU Green Deal compliance, circular economy, CO2 reduction and innovation beyond requirements.

{_JSON_ONLY}
{{ "content": "<sustainability and innovation text>" }}
"""


def _why_choose_us(ctx: GenerationContext) -> str:
    achievements = "; ".join(_join(c.get("achievements"), "") for c in ctx.companies).strip("; ")
    return f"""\
Generate the "Why Choose Us" section for a tender proposal.

STRENGTHS: {_join(ctx.analysis.get('strengths'))}
COMPANY ACHIEVEMENTS: {achievements or 'Not specified'}
COMPETITIVE ADVANTAGES: {_join(ctx.analysis.get('opportunities'))}

Give 4-5 compelling differentiators.

{_JSON_ONLY}
{{ "content": "<why choose us text>" }}
"""


PROPOSAL_TASKS: tuple[TaskSpec, ...] = (
    TaskSpec("company_intro",
             "You are a proposal writing expert specializing in public procurement.",
             _company_intro, FragmentShape("company_intro"), temperature=0.3, max_tokens=1000),
    TaskSpec("executive_summary",
             "You are an expert in creating executive summaries for public procurement proposals.",
             _executive_summary, FragmentShape("executive_summary", list_fields=("table",)),
             max_tokens=1500),
    TaskSpec("methodology",
             "You are a project methodology expert for public sector implementations.",
             _methodology, FragmentShape("methodology", list_fields=("phases",)), max_tokens=1200),
    TaskSpec("organisation",
             "You are an organizational design expert for public sector projects.",
             _organisation, FragmentShape("organisation", list_fields=("team",)), max_tokens=1000),
    TaskSpec("risk_management",
             "You are a risk management expert for public procurement projects.",
             _risk_management, FragmentShape("risk_management", list_fields=("risks",)), max_tokens=1000),
    TaskSpec("sustainability",
             "You are a sustainability and innovation expert for public procurement.",
             _sustainability, FragmentShape("sustainability"), temperature=0.3, max_tokens=800),
    TaskSpec("why_choose_us",
             "You are a competitive positioning expert for public sector proposals.",
             _why_choose_us, FragmentShape("why_choose_us"), temperature=0.3, max_tokens=800),
)


# ---------------------------------------------------------------------------
# Legal & commercial risk analysis
# ---------------------------------------------------------------------------

LEGAL_SHAPE = FragmentShape(
    "legal_analysis",
    text_fields=("content", "total_risk_premium", "compliance_status", "compliance_score", "pricing_structure"),
    list_fields=(
        "risk_matrix", "detailed_findings", "nvi_questions", "negotiation_points",
        "dealbreakers", "key_risks", "action_items",
    ),
)

LEGAL_CATEGORIES = (
    "Warranty provisions",
    "Liability & indemnification",
    "Penalty clauses & deductions",
    "Delivery terms",
    "Payment terms",
    "Contract duration & termination",
    "Intellectual property",
    "Compliance & certifications",
    "Service level agreements",
    "Special provisions",
)

LEGAL_SYSTEM = (
    "You are a legal analyst specializing in Dutch public procurement. Identify legal and "
    "commercial risks that affect pricing, comparing against UAV 2012, UAV-GC 2005 and ARVODI."
)


def build_legal_prompt(ctx: GenerationContext) -> str:
    t = ctx.tender
    rules = "\n".join(
        f"Article: {r.get('article_number', '')}\nTitle: {r.get('title', '')}\n"
        f"Category: {r.get('category', '')}\nRequirements: {_join(r.get('compliance_requirements'))}\n"
        f"Risk Level: {r.get('risk_level', '')}"
        for r in ctx.legal_rules
    )
    categories = "\n".join(f"{i}. {c}" for i, c in enumerate(LEGAL_CATEGORIES, 1))
    return f"""\
Analyze this tender document and deliver a structured report of all legal and commercial
risks that impact pricing.

TENDER INFORMATION:
Title: {t.get('title', '')}
Description: {t.get('description', '')}
Requirements: {_block(t.get('requirements'))}
Specifications: {_block(t.get('specifications'))}
Evaluation Criteria: {_block(t.get('evaluation_criteria'))}
Deadlines: {_block(t.get('deadlines'))}

APPLICABLE LEGAL ARTICLES:
{rules or 'None matched'}

Analyze these categories:
{categories}

Respond with JSON:
{{
  "content": "<executive summary of the legal position>",
  "risk_matrix": [{{"category": "...", "risk": "...", "price_impact": "+X% to +Y%", "priority": 1}}],
  "total_risk_premium": "X-Y%",
  "detailed_findings": [{{"category": "...", "provisions_found": ["..."], "market_standard": "...",
                          "deviation": "...", "financial_impact": "...",
                          "recommendation": "Accept|Negotiate|Dealbreaker"}}],
  "nvi_questions": ["..."],
  "negotiation_points": ["..."],
  "pricing_structure": {{"base_price_note": "...", "risk_premium_warranties": "...",
                         "risk_premium_penalties": "...", "risk_premium_other": "...",
                         "total_recommended_margin": "..."}},
  "dealbreakers": ["..."],
  "compliance_status": "Compliant|Partially Compliant|Non-Compliant|Requires Review",
  "compliance_score": 0,
  "key_risks": ["..."],
  "action_items": ["..."]
}}

{_JSON_ONLY}
"""


LEGAL_TASKS: tuple[TaskSpec, ...] = (
    TaskSpec("legal_analysis", LEGAL_SYSTEM, build_legal_prompt, LEGAL_SHAPE,
             temperature=0.1, max_tokens=4000),
)

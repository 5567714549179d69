"""Retrieval coordinator: fan a similarity query out over capability partitions.

Each partition (companies, products) is queried independently for
``ceil(K / M)`` matches restricted to the requesting user's own profiles.
A failing partition contributes nothing and is logged; only a total outage
raises ``RetrievalUnavailable``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from tenderintel.errors import RetrievalUnavailable
from tenderintel.models import Tender
from tenderintel.utils import json_parse

log = logging.getLogger(__name__)

DEFAULT_PARTITIONS: tuple[str, ...] = ("companies", "products")

PARTITION_KINDS = {"companies": "company", "products": "product"}


@dataclass(frozen=True)
class RetrievalMatch:
    profile_id: int
    kind: str
    score: float
    partition: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return str(self.metadata.get("title", ""))

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.profile_id, "name": self.title, "score": self.score, "type": self.kind}


class RetrievalBackend(Protocol):
    async def query(
        self, text: str, partition: str, top_k: int, owner_id: str,
    ) -> list[RetrievalMatch]: ...


def build_query_text(tender: Tender) -> str:
    """Concatenate the tender's descriptive fields into one search query."""
    requirements = json_parse(tender.requirements_json, {})
    specifications = json_parse(tender.specifications_json, {})
    categories = json_parse(tender.categories_json, [])
    parts = [
        tender.title or "",
        tender.description or "",
        json.dumps(requirements, ensure_ascii=False) if requirements else "",
        json.dumps(specifications, ensure_ascii=False) if specifications else "",
        *(str(c) for c in categories if c),
    ]
    return " ".join(p for p in parts if p)


async def find_relevant_capabilities(
    backend: RetrievalBackend,
    query_text: str,
    owner_id: str,
    top_k: int = 20,
    partitions: Sequence[str] = DEFAULT_PARTITIONS,
) -> list[RetrievalMatch]:
    """Query every partition concurrently and merge, best score first.

    Ties are broken by partition declaration order, then by the order the
    backend returned them in.
    """
    if not partitions or top_k <= 0:
        return []
    per_partition = math.ceil(top_k / len(partitions))

    results = await asyncio.gather(
        *(backend.query(query_text, p, per_partition, owner_id) for p in partitions),
        return_exceptions=True,
    )

    failures: dict[str, Exception] = {}
    ranked: list[tuple[float, int, int, RetrievalMatch]] = []
    for p_idx, (partition, result) in enumerate(zip(partitions, results)):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            log.warning("Retrieval partition %s failed: %s", partition, result)
            failures[partition] = result
            continue
        for pos, match in enumerate(result[:per_partition]):
            ranked.append((-match.score, p_idx, pos, match))

    if len(failures) == len(partitions):
        raise RetrievalUnavailable(
            f"All {len(partitions)} retrieval partitions failed", failures=failures,
        )

    ranked.sort(key=lambda r: r[:3])
    return [r[3] for r in ranked]


def split_by_partition(matches: Sequence[RetrievalMatch]) -> dict[str, list[RetrievalMatch]]:
    """Group merged matches back by partition, keeping merged order."""
    grouped: dict[str, list[RetrievalMatch]] = {}
    for m in matches:
        grouped.setdefault(m.partition, []).append(m)
    return grouped

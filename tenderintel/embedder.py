"""Dense embedding index over capability profiles using model2vec.

Lightweight (numpy-only) semantic embeddings. Each retrieval partition
(companies, products) is stored as a pair of sidecar files in the
embeddings directory: ``<partition>_embeddings.npy`` with L2-normalised
vectors and ``<partition>_meta.json`` with one ``{id, owner, title}`` entry
per row.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any

import numpy as np
from sqlalchemy import select
from sqlalchemy.orm import Session

from tenderintel.models import Company, Product
from tenderintel.retrieval import PARTITION_KINDS, RetrievalMatch
from tenderintel.utils import json_parse

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Text builders
# ---------------------------------------------------------------------------


def company_text(company: Company) -> str:
    parts = [
        company.name or "",
        company.industry or "",
        company.description or "",
        *json_parse(company.capabilities_json, []),
    ]
    return " ".join(str(p) for p in parts if p)


def product_text(product: Product) -> str:
    parts = [
        product.name or "",
        product.category or "",
        product.description or "",
        *json_parse(product.features_json, []),
    ]
    return " ".join(str(p) for p in parts if p)


def _normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1  # avoid division by zero
    return vectors / norms


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------


class EmbeddingIndex:
    """File-backed similarity index implementing ``RetrievalBackend``."""

    def __init__(self, directory: str | Path, model_name: str = "minishlab/potion-base-32M", model: Any = None):
        self.directory = Path(directory)
        self.model_name = model_name
        self._model = model
        self._lock = threading.Lock()

    def _get_model(self):
        if self._model is None:
            from model2vec import StaticModel
            self._model = StaticModel.from_pretrained(self.model_name)
        return self._model

    def _paths(self, partition: str) -> tuple[Path, Path]:
        return (
            self.directory / f"{partition}_embeddings.npy",
            self.directory / f"{partition}_meta.json",
        )

    def _load(self, partition: str) -> tuple[np.ndarray | None, list[dict[str, Any]]]:
        emb_path, meta_path = self._paths(partition)
        if not emb_path.exists() or not meta_path.exists():
            return None, []
        vectors = np.load(emb_path)
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        return vectors, meta

    def _save(self, partition: str, vectors: np.ndarray, meta: list[dict[str, Any]]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        emb_path, meta_path = self._paths(partition)
        np.save(emb_path, vectors)
        meta_path.write_text(json.dumps(meta), encoding="utf-8")

    def encode(self, texts: list[str]) -> np.ndarray:
        vectors = np.asarray(self._get_model().encode(texts, show_progress_bar=False), dtype=np.float32)
        return _normalize(vectors)

    # -- writes ------------------------------------------------------------

    def replace_owner_rows(
        self, partition: str, owner_id: str, rows: list[tuple[int, str, str]],
    ) -> int:
        """Replace every vector *owner_id* has in *partition*.

        ``rows`` is a list of ``(profile_id, title, text)``. Returns row count.
        """
        with self._lock:
            vectors, meta = self._load(partition)
            keep = [i for i, m in enumerate(meta) if m.get("owner") != owner_id]
            kept_meta = [meta[i] for i in keep]
            kept_vectors = vectors[keep] if vectors is not None and keep else None

            if rows:
                new_vectors = self.encode([text for _, _, text in rows])
                new_meta = [{"id": pid, "owner": owner_id, "title": title} for pid, title, _ in rows]
                if kept_vectors is not None:
                    new_vectors = np.vstack([kept_vectors, new_vectors])
                kept_meta.extend(new_meta)
            else:
                new_vectors = kept_vectors if kept_vectors is not None else np.zeros((0, 0), dtype=np.float32)

            self._save(partition, new_vectors, kept_meta)
        log.info("Embedded %d %s rows for owner %s", len(rows), partition, owner_id)
        return len(rows)

    # -- reads -------------------------------------------------------------

    def search(self, text: str, partition: str, top_k: int, owner_id: str) -> list[RetrievalMatch]:
        """Cosine similarity search restricted to *owner_id*'s rows."""
        vectors, meta = self._load(partition)
        if vectors is None or len(meta) == 0 or vectors.size == 0:
            return []

        owners = np.array([m.get("owner") == owner_id for m in meta], dtype=bool)
        if not owners.any():
            return []

        query_vec = self.encode([text])[0]
        scores = vectors @ query_vec
        masked = np.where(owners, scores, -np.inf)
        # Stable sort keeps index order among equal scores.
        order = np.argsort(-masked, kind="stable")[:top_k]

        kind = PARTITION_KINDS.get(partition, partition.rstrip("s"))
        results: list[RetrievalMatch] = []
        for i in order:
            if not np.isfinite(masked[i]):
                break
            entry = meta[int(i)]
            results.append(RetrievalMatch(
                profile_id=int(entry["id"]),
                kind=kind,
                score=round(float(np.clip(scores[i], 0.0, 1.0)), 4),
                partition=partition,
                metadata={"title": entry.get("title", ""), "owner": owner_id},
            ))
        return results

    async def query(self, text: str, partition: str, top_k: int, owner_id: str) -> list[RetrievalMatch]:
        return await asyncio.to_thread(self.search, text, partition, top_k, owner_id)


# ---------------------------------------------------------------------------
# Sync from the database
# ---------------------------------------------------------------------------


def sync_embeddings(session: Session, index: EmbeddingIndex, owner_id: str) -> dict[str, int]:
    """Re-embed every company and product *owner_id* owns. Returns counts per partition."""
    companies = session.execute(
        select(Company).where(Company.user_id == owner_id).order_by(Company.id)
    ).scalars().all()
    products = session.execute(
        select(Product).where(Product.user_id == owner_id).order_by(Product.id)
    ).scalars().all()
    return {
        "companies": index.replace_owner_rows(
            "companies", owner_id, [(c.id, c.name, company_text(c)) for c in companies],
        ),
        "products": index.replace_owner_rows(
            "products", owner_id, [(p.id, p.name, product_text(p)) for p in products],
        ),
    }

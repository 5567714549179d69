from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _resolve_home() -> Path:
    override = os.getenv("TENDERINTEL_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    if raw.lower() in ("none", "off", "0"):
        return None
    return float(raw)


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=lambda: _resolve_home() / "data")
    database_path: Path = Field(
        default_factory=lambda: Path(os.getenv("TENDERINTEL_DB", "")).expanduser()
        if os.getenv("TENDERINTEL_DB") else _resolve_home() / "data" / "tenderintel.db"
    )

    llm_provider: str = Field(default_factory=lambda: os.getenv("LLM_PROVIDER", "openai"))
    llm_model: str = Field(default_factory=lambda: os.getenv("LLM_MODEL", ""))
    llm_max_tokens: int = 2048
    # Seconds per generation task; None means unbounded.
    task_timeout_seconds: float | None = Field(
        default_factory=lambda: _env_float("LLM_TASK_TIMEOUT", 120.0)
    )

    retrieval_top_k: int = Field(default_factory=lambda: int(os.getenv("RETRIEVAL_TOP_K", "20")))
    retrieval_partitions: tuple[str, ...] = ("companies", "products")
    embedding_model: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_MODEL", "minishlab/potion-base-32M")
    )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"

    @property
    def embeddings_dir(self) -> Path:
        return self.data_dir / "embeddings"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings

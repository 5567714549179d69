"""Generation orchestrator: concurrent fan-out of independent LLM tasks.

Every task receives the same frozen ``GenerationContext`` and is awaited
together with its siblings via ``asyncio.gather``. A task that raises, times
out or returns undecodable text is replaced by its deterministic fallback
fragment; the others are unaffected. Results come back in task-slot order,
whatever order they completed in.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from tenderintel.decoder import FALLBACK_CONTENT, Fragment, FragmentShape, decode, decode_list
from tenderintel.errors import GenerationTaskFailure
from tenderintel.llm import LLMClient
from tenderintel.retrieval import RetrievalMatch

log = logging.getLogger(__name__)

GENERATION_FAILED = "<generation failed>"

STATUS_OK = "ok"
STATUS_DECODE_FALLBACK = "decode_fallback"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass(frozen=True)
class GenerationContext:
    """Read-only inputs shared by all tasks of one request."""
    tender: dict[str, Any]
    companies: tuple[dict[str, Any], ...] = ()
    products: tuple[dict[str, Any], ...] = ()
    matches: tuple[RetrievalMatch, ...] = ()
    analysis: dict[str, Any] = field(default_factory=dict)
    legal_rules: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class TaskSpec:
    """One prompt template plus the shape its output is decoded into.

    When ``list_key`` is set the output is a JSON array; decoded items are
    placed under ``items`` in the fragment.
    """
    key: str
    system: str
    build_prompt: Callable[[GenerationContext], str]
    shape: FragmentShape
    list_key: str | None = None
    temperature: float = 0.2
    max_tokens: int = 1500
    enabled: Callable[[GenerationContext], bool] | None = None

    def decode(self, raw: str) -> Fragment:
        if self.list_key is None:
            return decode(raw, self.shape)
        items = decode_list(raw, key_hint=self.list_key)
        if not items:
            return self.shape.minimal()
        fragment = self.shape.minimal("")
        fragment["items"] = items
        return fragment


@dataclass
class TaskResult:
    key: str
    fragment: Fragment
    status: str = STATUS_OK
    error: str = ""

    @property
    def degraded(self) -> bool:
        return self.status in (STATUS_DECODE_FALLBACK, STATUS_FAILED)


async def _run_one(
    client: LLMClient, context: GenerationContext, spec: TaskSpec, timeout: float | None,
) -> TaskResult:
    if spec.enabled is not None and not spec.enabled(context):
        return TaskResult(spec.key, spec.shape.minimal(""), STATUS_SKIPPED)

    try:
        prompt = spec.build_prompt(context)
        call = client.complete(
            spec.system, prompt, temperature=spec.temperature, max_tokens=spec.max_tokens,
        )
        raw = await (asyncio.wait_for(call, timeout) if timeout else call)
    except asyncio.TimeoutError:
        failure = GenerationTaskFailure(spec.key, f"timed out after {timeout}s")
    except Exception as exc:
        failure = GenerationTaskFailure(spec.key, str(exc))
    else:
        fragment = spec.decode(raw)
        if fragment.get("content") == FALLBACK_CONTENT:
            log.warning("Task %s output could not be decoded", spec.key)
            return TaskResult(spec.key, fragment, STATUS_DECODE_FALLBACK, "undecodable output")
        return TaskResult(spec.key, fragment)

    log.warning("Generation task failed, using fallback: %s", failure)
    return TaskResult(spec.key, spec.shape.minimal(GENERATION_FAILED), STATUS_FAILED, str(failure))


async def run_tasks(
    client: LLMClient,
    context: GenerationContext,
    specs: Sequence[TaskSpec],
    timeout: float | None = None,
) -> list[TaskResult]:
    """Dispatch all *specs* concurrently and return one result per spec, in order."""
    keys = [s.key for s in specs]
    if len(set(keys)) != len(keys):
        raise ValueError(f"Duplicate task keys: {keys}")
    results = await asyncio.gather(*(_run_one(client, context, s, timeout) for s in specs))
    degraded = [r.key for r in results if r.degraded]
    if degraded:
        log.info("%d/%d tasks degraded: %s", len(degraded), len(results), ", ".join(degraded))
    return list(results)


def results_by_key(results: Sequence[TaskResult]) -> dict[str, TaskResult]:
    return {r.key: r for r in results}

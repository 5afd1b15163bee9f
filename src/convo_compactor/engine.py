from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from loguru import logger

from convo_compactor import prompts
from convo_compactor.artifact_builders import ArtifactBuilder
from convo_compactor.chunking import Chunk, plan
from convo_compactor.errors import MalformedResponse, ModelError, ModelErrorReason
from convo_compactor.models import ArtifactKind, SessionStep, Strategy
from convo_compactor.provider import Completion, LLMProvider
from convo_compactor.truncation import truncate_contents, truncate_with_report
from convo_compactor.turns import Turn, analyze, estimate_tokens, format_turns, referenced_files

_MAPPING_START = 10
_MAPPING_SPAN = 70


@dataclass(frozen=True)
class EngineSettings:
    model: str
    max_tokens_per_chunk: int = 4000
    max_turn_chars: int = 16_000
    anchor_head: int = 3
    anchor_tail: int = 5
    map_max_tokens: int = 4096
    reduce_max_tokens: int = 8192
    temperature: float = 0.2


@dataclass(frozen=True)
class StepUpdate:
    step: SessionStep
    progress: int
    message: str
    level: str = "info"
    chunks_total: int | None = None
    chunks_processed: int | None = None


@dataclass(frozen=True)
class EngineOutput:
    content: str
    structured: Any
    title: str | None
    strategy: Strategy
    chunk_count: int
    budget: int
    original_tokens: int
    compacted_tokens: int
    kept_turns: int
    dropped_turns: int
    over_budget: bool
    model_used: str
    elapsed_ms: int
    file_refs: tuple[str, ...] = ()


@dataclass(frozen=True)
class AttemptSucceeded:
    output: EngineOutput


@dataclass(frozen=True)
class AttemptFailed:
    error: str
    retryable: bool
    reason: str


@dataclass(frozen=True)
class AttemptCancelled:
    pass


AttemptResult = AttemptSucceeded | AttemptFailed | AttemptCancelled
ProgressCallback = Callable[[StepUpdate], None]


class _Cancelled(Exception):
    pass


class CompactionEngine:
    """Runs one analyze/truncate/summarize attempt under a single token budget.

    The engine never retries across budgets and never persists anything; it
    reports steps through ``on_progress`` and returns a typed attempt result.
    """

    def __init__(self, provider: LLMProvider, builder: ArtifactBuilder, settings: EngineSettings):
        self._provider = provider
        self._builder = builder
        self._settings = settings

    @property
    def kind(self) -> ArtifactKind:
        return self._builder.kind

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    async def run(
        self,
        messages: Iterable[Mapping[str, Any]],
        *,
        budget: int,
        title: str = "",
        strategy_hint: Strategy | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AttemptResult:
        emit = on_progress or (lambda update: None)
        cancel = cancel_event or asyncio.Event()
        try:
            output = await self._run(list(messages), budget, title, strategy_hint, emit, cancel)
        except _Cancelled:
            return AttemptCancelled()
        except ModelError as ex:
            return AttemptFailed(error=str(ex), retryable=ex.budget_related, reason=ex.reason.value)
        except MalformedResponse as ex:
            return AttemptFailed(error=str(ex), retryable=False, reason="malformed_response")
        return AttemptSucceeded(output)

    async def _run(
        self,
        messages: list[Mapping[str, Any]],
        budget: int,
        title: str,
        strategy_hint: Strategy | None,
        emit: ProgressCallback,
        cancel: asyncio.Event,
    ) -> EngineOutput:
        started = time.monotonic()
        settings = self._settings

        emit(StepUpdate(SessionStep.ANALYZING, 5, f"Analyzing {len(messages)} messages (budget {budget:,} tokens)"))
        analysis = analyze(messages)
        bounded = truncate_contents(analysis.turns, settings.max_turn_chars)
        report = truncate_with_report(bounded, budget, head=settings.anchor_head, tail=settings.anchor_tail)
        emit(StepUpdate(
            SessionStep.ANALYZING,
            8,
            f"Kept {len(report.turns)}/{analysis.stats.total_turns} turns, "
            f"~{report.kept_tokens:,} of ~{report.original_tokens:,} tokens",
        ))
        if report.over_budget:
            emit(StepUpdate(
                SessionStep.ANALYZING,
                8,
                f"Anchor turns alone exceed the {budget:,} token budget; keeping them anyway",
                level="warning",
            ))

        chunks = plan(report.turns, settings.max_tokens_per_chunk)
        if strategy_hint is None:
            strategy = Strategy.SINGLE_PASS if len(chunks) <= 1 else Strategy.MAP_REDUCE
        else:
            strategy = strategy_hint
        emit(StepUpdate(
            SessionStep.CHUNKING,
            10,
            f"Planned {len(chunks)} chunk(s); strategy {strategy.value}",
            chunks_total=len(chunks),
            chunks_processed=0,
        ))

        if strategy is Strategy.SINGLE_PASS:
            completion = await self._single_pass(report.turns, title, emit, cancel)
            chunk_count = 1
        else:
            completion = await self._map_reduce(chunks, title, emit, cancel)
            chunk_count = len(chunks)

        self._check_cancel(cancel)
        emit(StepUpdate(SessionStep.FINALIZING, 95, "Shaping final artifact"))
        shaped = self._builder.shape(completion.text)

        return EngineOutput(
            content=shaped.content,
            structured=shaped.structured,
            title=shaped.title,
            strategy=strategy,
            chunk_count=chunk_count,
            budget=budget,
            original_tokens=analysis.stats.total_tokens,
            compacted_tokens=estimate_tokens(shaped.content),
            kept_turns=len(report.turns),
            dropped_turns=len(report.dropped),
            over_budget=report.over_budget,
            model_used=completion.model,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            file_refs=referenced_files(analysis.turns),
        )

    async def _single_pass(
        self,
        turns: list[Turn],
        title: str,
        emit: ProgressCallback,
        cancel: asyncio.Event,
    ) -> Completion:
        self._check_cancel(cancel)
        emit(StepUpdate(SessionStep.REDUCING, 50, "Summarizing the transcript in a single pass", chunks_total=1))
        prompt = prompts.build_full_prompt(self._builder.full_instructions, title, format_turns(turns))
        completion = await self._complete(prompt, self._settings.reduce_max_tokens)
        emit(StepUpdate(SessionStep.REDUCING, 80, "Single pass complete", chunks_total=1, chunks_processed=1))
        return completion

    async def _map_reduce(
        self,
        chunks: list[Chunk],
        title: str,
        emit: ProgressCallback,
        cancel: asyncio.Event,
    ) -> Completion:
        total = len(chunks)
        summaries: list[str] = []
        for chunk in chunks:
            self._check_cancel(cancel)
            emit(StepUpdate(
                SessionStep.MAPPING,
                _mapping_progress(chunk.index, total),
                f"Summarizing chunk {chunk.index + 1}/{total} "
                f"(turns {chunk.first_turn}-{chunk.last_turn}, ~{chunk.token_count:,} tokens)",
                level="debug",
                chunks_total=total,
                chunks_processed=chunk.index,
            ))
            prompt = prompts.build_map_prompt(
                self._builder.map_instructions,
                title,
                chunk.index + 1,
                total,
                format_turns(chunk.turns),
            )
            completion = await self._complete(prompt, self._settings.map_max_tokens)
            summaries.append(completion.text.strip())
            emit(StepUpdate(
                SessionStep.MAPPING,
                _mapping_progress(chunk.index + 1, total),
                f"Chunk {chunk.index + 1}/{total} summarized",
                chunks_total=total,
                chunks_processed=chunk.index + 1,
            ))

        self._check_cancel(cancel)
        emit(StepUpdate(SessionStep.REDUCING, 80, f"Combining {total} chunk summaries"))
        prompt = prompts.build_reduce_prompt(self._builder.reduce_instructions, title, summaries)
        return await self._complete(prompt, self._settings.reduce_max_tokens)

    async def _complete(self, prompt: str, max_tokens: int) -> Completion:
        completion = await self._provider.complete(
            self._settings.model,
            max_tokens,
            self._settings.temperature,
            prompt,
        )
        if completion.truncated:
            raise ModelError(
                ModelErrorReason.TRUNCATED,
                f"Response from {completion.model} was cut off at {completion.output_tokens} output tokens",
            )
        return completion

    @staticmethod
    def _check_cancel(cancel: asyncio.Event) -> None:
        if cancel.is_set():
            logger.debug("Cancellation requested; stopping before the next model call")
            raise _Cancelled()


def _mapping_progress(done: int, total: int) -> int:
    return _MAPPING_START + round(_MAPPING_SPAN * done / max(1, total))

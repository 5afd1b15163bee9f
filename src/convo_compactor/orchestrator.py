from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from loguru import logger

from convo_compactor.engine import (
    AttemptCancelled,
    AttemptSucceeded,
    CompactionEngine,
    EngineOutput,
    StepUpdate,
)
from convo_compactor.errors import AlreadyInProgress, InvalidInput
from convo_compactor.models import (
    Artifact,
    ArtifactKind,
    CompactionSession,
    ConversationKey,
    LogEntry,
    SessionStatus,
    utc_now,
)
from convo_compactor.progress import EventType, ProgressBus, ProgressCallback, ProgressEvent
from convo_compactor.storage.cache import ArtifactCache
from convo_compactor.storage.sessions import SessionRepository
from convo_compactor.transcripts import TranscriptSource
from convo_compactor.turns import analyze

DEFAULT_TOKEN_BUDGET = 8000
DEFAULT_BUDGET_LADDER = (8000, 6000, 4000, 2000)

_LOG_LEVELS = {"debug": "DEBUG", "info": "INFO", "warning": "WARNING", "error": "ERROR"}


def build_budget_ladder(base: int = DEFAULT_TOKEN_BUDGET) -> tuple[int, ...]:
    """Budgets tried in order: the base, then 3/4, 1/2 and 1/4 of it."""
    if base < 1:
        raise ValueError(f"Token budget must be positive, got {base}")
    ladder: list[int] = []
    for rung in (base, base * 3 // 4, base // 2, base // 4):
        if rung >= 1 and rung not in ladder:
            ladder.append(rung)
    return tuple(ladder)


@dataclass(frozen=True)
class StartResult:
    """Either a new session, or the cached artifact when nothing had to run."""

    session: CompactionSession | None = None
    artifact: Artifact | None = None
    cached: bool = False


class SessionOrchestrator:
    """Owns the session lifecycle for one artifact kind.

    At most one non-terminal session exists per conversation key. Sessions run
    as asyncio tasks and walk the budget ladder until an attempt succeeds, a
    fatal error occurs, or the session is cancelled.
    """

    def __init__(
        self,
        engine: CompactionEngine,
        cache: ArtifactCache,
        bus: ProgressBus,
        sessions: SessionRepository,
        *,
        source: TranscriptSource | None = None,
        ladder: Sequence[int] = DEFAULT_BUDGET_LADDER,
    ):
        if engine.kind != cache.kind:
            raise ValueError(f"Engine kind {engine.kind} does not match cache kind {cache.kind}")
        if not ladder or any(budget < 1 for budget in ladder):
            raise ValueError(f"Budget ladder must be a non-empty list of positive budgets, got {list(ladder)}")
        self._engine = engine
        self._cache = cache
        self._bus = bus
        self._repo = sessions
        self._source = source
        self._ladder = tuple(ladder)
        self._lock = threading.RLock()
        self._active: dict[ConversationKey, CompactionSession] = {}
        self._live: dict[str, CompactionSession] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def kind(self) -> ArtifactKind:
        return self._engine.kind

    @property
    def ladder(self) -> tuple[int, ...]:
        return self._ladder

    # -- public API ---------------------------------------------------------

    def start(
        self,
        key: ConversationKey,
        transcript: Iterable[Mapping[str, Any]] | None = None,
        title: str = "",
        *,
        force: bool = False,
    ) -> StartResult:
        """Start a session for ``key`` unless one is running or a cached artifact exists.

        Must be called from a running event loop. Raises ``InvalidInput`` or
        ``AlreadyInProgress``; every later failure is reported on the session.
        """
        loop = asyncio.get_running_loop()
        _validate_key(key)

        with self._lock:
            active = self._active.get(key)
            if active is not None:
                raise AlreadyInProgress(active.snapshot())

            if not force:
                cached = self._cache.get(key)
                if cached is not None:
                    logger.info(f"Cache hit for {self.kind} of {key} (artifact {cached.id})")
                    return StartResult(artifact=cached, cached=True)

            messages, title = self._resolve_transcript(key, transcript, title)

            session = CompactionSession(
                id=str(uuid4()),
                kind=self.kind,
                workspace_id=key.workspace_id,
                conversation_id=key.conversation_id,
            )
            self._repo.insert(session)
            self._active[key] = session
            self._live[session.id] = session
            self._cancel_events[session.id] = asyncio.Event()
            self._log(session, "info", f"Session created for {len(messages)} messages", publish=False)
            self._publish(session, EventType.PROGRESS, message="Queued")

            task = loop.create_task(self._run_session(session, messages, title))
            self._tasks[session.id] = task
            task.add_done_callback(lambda _: self._tasks.pop(session.id, None))
            return StartResult(session=session.snapshot())

    def cancel(self, session_id: str) -> CompactionSession | None:
        """Cancel a pending or processing session. Idempotent."""
        with self._lock:
            session = self._live.get(session_id)
            if session is None:
                return self._repo.get(session_id)
            if session.is_terminal:
                return session.snapshot()

            session.status = SessionStatus.CANCELLED
            session.completed_at = utc_now()
            self._cancel_events[session.id].set()
            self._release_key(session)
            self._log(session, "warning", "Cancelled by request", publish=False)
            self._repo.update(session)
            self._publish(session, EventType.CANCELLED, message="Cancelled by request")
            return session.snapshot()

    def get(self, key: ConversationKey) -> Artifact | None:
        return self._cache.get(key)

    def get_session_status(self, session_id: str) -> CompactionSession | None:
        session = self._live.get(session_id)
        if session is not None:
            return session.snapshot()
        return self._repo.get(session_id)

    def get_active_session(self, key: ConversationKey) -> CompactionSession | None:
        session = self._active.get(key)
        return session.snapshot() if session is not None else None

    def on_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """Subscribe to this kind's events; returns the unsubscribe function."""

        def forward(event: ProgressEvent) -> None:
            if event.kind == self.kind.value:
                callback(event)

        return self._bus.subscribe(forward)

    async def wait(self, session_id: str) -> CompactionSession | None:
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait({task})
        return self.get_session_status(session_id)

    async def run(
        self,
        key: ConversationKey,
        transcript: Iterable[Mapping[str, Any]] | None = None,
        title: str = "",
        *,
        force: bool = False,
    ) -> StartResult:
        started = self.start(key, transcript, title, force=force)
        if started.session is None:
            return started
        final = await self.wait(started.session.id)
        artifact = None
        if final is not None and final.status is SessionStatus.COMPLETED:
            artifact = self._cache.get(key)
        return StartResult(session=final, artifact=artifact)

    def list_history(self, key: ConversationKey, *, limit: int = 20) -> list[CompactionSession]:
        return self._repo.history(self.kind, key, limit=limit)

    async def close(self) -> None:
        for session_id in list(self._live):
            self.cancel(session_id)
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- session task -------------------------------------------------------

    async def _run_session(self, session: CompactionSession, messages: list[Mapping[str, Any]], title: str) -> None:
        try:
            if session.is_terminal:
                return
            session.status = SessionStatus.PROCESSING
            self._repo.update(session)
            await self._walk_ladder(session, messages, title)
        except asyncio.CancelledError:
            if not session.is_terminal:
                self._finish(session, SessionStatus.CANCELLED, EventType.CANCELLED, "Session task was cancelled")
            raise
        except Exception as ex:
            logger.bind(session_id=session.id).error(f"Session {session.id} crashed: {ex}")
            if not session.is_terminal:
                self._finish(session, SessionStatus.FAILED, EventType.FAILED, f"Unexpected error: {ex}")
        finally:
            with self._lock:
                self._release_key(session)
                self._live.pop(session.id, None)
                self._cancel_events.pop(session.id, None)

    async def _walk_ladder(self, session: CompactionSession, messages: list[Mapping[str, Any]], title: str) -> None:
        cancel = self._cancel_events[session.id]
        failures: list[str] = []
        total = len(self._ladder)

        for attempt, budget in enumerate(self._ladder, start=1):
            if session.is_terminal:
                return
            session.budget = budget
            session.attempts.append(budget)
            session.chunks_total = 0
            session.chunks_processed = 0
            self._log(session, "info", f"Attempt {attempt}/{total} with a {budget:,} token budget")
            self._repo.update(session)

            result = await self._engine.run(
                messages,
                budget=budget,
                title=title,
                on_progress=lambda update: self._on_step(session, update),
                cancel_event=cancel,
            )

            # Cancelled while the attempt was in flight; cancel() already finished the session.
            if session.is_terminal:
                return
            if isinstance(result, AttemptCancelled):
                self._finish(session, SessionStatus.CANCELLED, EventType.CANCELLED, "Cancelled by request")
                return
            if isinstance(result, AttemptSucceeded):
                self._complete(session, result.output, title)
                return

            failures.append(f"{budget:,} ({result.reason})")
            if not result.retryable:
                self._finish(
                    session,
                    SessionStatus.FAILED,
                    EventType.FAILED,
                    f"Compaction failed at a {budget:,} token budget ({result.reason}): {result.error}",
                )
                return
            if attempt < total:
                self._log(
                    session,
                    "warning",
                    f"Budget {budget:,} failed ({result.reason}: {result.error}); retrying with {self._ladder[attempt]:,}",
                )

        self._finish(
            session,
            SessionStatus.FAILED,
            EventType.FAILED,
            f"All {total} token budgets failed: {', '.join(failures)}. "
            "The conversation is too large to compact with this model",
        )

    def _on_step(self, session: CompactionSession, update: StepUpdate) -> None:
        if session.is_terminal:
            return
        session.current_step = update.step
        session.progress = max(0, min(100, update.progress))
        if update.chunks_total is not None:
            session.chunks_total = update.chunks_total
        if update.chunks_processed is not None:
            session.chunks_processed = update.chunks_processed
        self._log(session, update.level, update.message, publish=False)
        self._repo.update(session)
        self._publish(session, EventType.PROGRESS, message=update.message)

    def _complete(self, session: CompactionSession, output: EngineOutput, title: str) -> None:
        now = utc_now()
        ratio = output.compacted_tokens / output.original_tokens if output.original_tokens else 1.0
        artifact = Artifact(
            id=str(uuid4()),
            kind=self.kind,
            workspace_id=session.workspace_id,
            conversation_id=session.conversation_id,
            title=output.title or title or session.conversation_id,
            content=output.content,
            structured=output.structured,
            original_token_count=output.original_tokens,
            compacted_token_count=output.compacted_tokens,
            compression_ratio=round(ratio, 4),
            model_used=output.model_used,
            strategy_used=output.strategy,
            chunk_count=output.chunk_count,
            budget_used=output.budget,
            metadata={
                "kept_turns": output.kept_turns,
                "dropped_turns": output.dropped_turns,
                "over_budget": output.over_budget,
                "elapsed_ms": output.elapsed_ms,
                "attempts": list(session.attempts),
                "files": list(output.file_refs),
            },
            created_at=now,
            updated_at=now,
        )
        self._cache.save(artifact)
        session.artifact_id = artifact.id
        session.progress = 100
        self._finish(
            session,
            SessionStatus.COMPLETED,
            EventType.COMPLETED,
            f"Completed: {output.original_tokens:,} -> {output.compacted_tokens:,} tokens "
            f"({artifact.compression_ratio:.1%}) via {output.strategy.value} in {output.chunk_count} chunk(s)",
        )

    def _finish(self, session: CompactionSession, status: SessionStatus, event: EventType, message: str) -> None:
        with self._lock:
            if session.is_terminal:
                return
            session.status = status
            session.completed_at = utc_now()
            if status is SessionStatus.FAILED:
                session.error = message
            self._release_key(session)
        level = "error" if status is SessionStatus.FAILED else "info"
        self._log(session, level, message, publish=False)
        self._repo.update(session)
        self._publish(session, event, message=message)

    # -- helpers ------------------------------------------------------------

    def _resolve_transcript(
        self,
        key: ConversationKey,
        transcript: Iterable[Mapping[str, Any]] | None,
        title: str,
    ) -> tuple[list[Mapping[str, Any]], str]:
        if transcript is None:
            if self._source is None:
                raise InvalidInput(f"No transcript supplied for {key} and no transcript source is configured")
            try:
                conversation = self._source.get_conversation(key.workspace_id, key.conversation_id)
            except (LookupError, OSError, ValueError) as ex:
                raise InvalidInput(f"Could not load conversation {key}: {ex}") from ex
            transcript = conversation.messages
            title = title or conversation.title

        messages = list(transcript)
        if not messages:
            raise InvalidInput(f"Transcript for {key} is empty")
        if not all(isinstance(message, Mapping) for message in messages):
            raise InvalidInput(f"Transcript for {key} must be a list of message objects")
        try:
            analyze(messages)
        except ValueError as ex:
            raise InvalidInput(f"Transcript for {key} is invalid: {ex}") from ex
        return messages, title

    def _release_key(self, session: CompactionSession) -> None:
        if self._active.get(session.key) is session:
            del self._active[session.key]

    def _log(self, session: CompactionSession, level: str, message: str, *, publish: bool = True) -> None:
        entry = LogEntry(timestamp=utc_now(), level=level, message=message)
        session.logs.append(entry)
        self._repo.append_log(session.id, entry)
        logger.bind(session_id=session.id).log(_LOG_LEVELS.get(level, "INFO"), f"[{self.kind}] {message}")
        if publish:
            self._publish(session, EventType.LOG, message=message)

    def _publish(self, session: CompactionSession, event_type: EventType, *, message: str | None = None) -> None:
        self._bus.publish(ProgressEvent(
            type=event_type,
            workspace_id=session.workspace_id,
            conversation_id=session.conversation_id,
            session_id=session.id,
            kind=session.kind.value,
            status=session.status.value,
            step=session.current_step.value if session.current_step else None,
            progress=session.progress,
            chunks_processed=session.chunks_processed,
            chunks_total=session.chunks_total,
            message=message,
            error=session.error,
            artifact_id=session.artifact_id,
        ))


def _validate_key(key: ConversationKey) -> None:
    if not isinstance(key, ConversationKey):
        raise InvalidInput(f"Expected a ConversationKey, got {type(key).__name__}")
    if not str(key.workspace_id or "").strip() or not str(key.conversation_id or "").strip():
        raise InvalidInput("Both workspace_id and conversation_id are required")

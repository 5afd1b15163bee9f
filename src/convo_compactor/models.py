from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class ArtifactKind(StrEnum):
    COMPACT = "compact"
    OVERVIEW = "overview"
    EXERCISES = "exercises"


class Strategy(StrEnum):
    SINGLE_PASS = "single_pass"
    MAP_REDUCE = "map_reduce"


class SessionStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (SessionStatus.PENDING, SessionStatus.PROCESSING)


class SessionStep(StrEnum):
    ANALYZING = "analyzing"
    CHUNKING = "chunking"
    MAPPING = "mapping"
    REDUCING = "reducing"
    FINALIZING = "finalizing"


@dataclass(frozen=True)
class ConversationKey:
    workspace_id: str
    conversation_id: str

    def __str__(self) -> str:
        return f"{self.workspace_id}/{self.conversation_id}"


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    level: str
    message: str


@dataclass
class CompactionSession:
    """Mutable while pending/processing; the orchestrator never touches it once terminal."""

    id: str
    kind: ArtifactKind
    workspace_id: str
    conversation_id: str
    status: SessionStatus = SessionStatus.PENDING
    progress: int = 0
    current_step: SessionStep | None = None
    chunks_total: int = 0
    chunks_processed: int = 0
    logs: list[LogEntry] = field(default_factory=list)
    error: str | None = None
    budget: int | None = None
    attempts: list[int] = field(default_factory=list)
    artifact_id: str | None = None
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(self.workspace_id, self.conversation_id)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> CompactionSession:
        return CompactionSession(
            id=self.id,
            kind=self.kind,
            workspace_id=self.workspace_id,
            conversation_id=self.conversation_id,
            status=self.status,
            progress=self.progress,
            current_step=self.current_step,
            chunks_total=self.chunks_total,
            chunks_processed=self.chunks_processed,
            logs=list(self.logs),
            error=self.error,
            budget=self.budget,
            attempts=list(self.attempts),
            artifact_id=self.artifact_id,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


@dataclass(frozen=True)
class Artifact:
    id: str
    kind: ArtifactKind
    workspace_id: str
    conversation_id: str
    title: str
    content: str
    structured: Any
    original_token_count: int
    compacted_token_count: int
    compression_ratio: float
    model_used: str
    strategy_used: Strategy
    chunk_count: int
    budget_used: int
    metadata: dict[str, Any]
    created_at: str
    updated_at: str

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(self.workspace_id, self.conversation_id)

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from convo_compactor.models import CompactionSession


class CompactionError(Exception):
    """Base class for every error raised by the compaction core."""


class InvalidInput(CompactionError):
    """Rejected at start(): empty transcript, missing key, bad settings."""


class AlreadyInProgress(CompactionError):
    def __init__(self, session: CompactionSession):
        self.session = session
        super().__init__(
            f"A {session.kind} session is already in progress for "
            f"{session.workspace_id}/{session.conversation_id} (session {session.id})"
        )


class ModelErrorReason(StrEnum):
    PROMPT_TOO_LARGE = "prompt_too_large"
    TRUNCATED = "truncated"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    PROVIDER = "provider"


_BUDGET_REASONS = frozenset({ModelErrorReason.PROMPT_TOO_LARGE, ModelErrorReason.TRUNCATED})


class ModelError(CompactionError):
    """A classified failure from the model collaborator."""

    def __init__(self, reason: ModelErrorReason, message: str):
        self.reason = reason
        super().__init__(message)

    @property
    def budget_related(self) -> bool:
        return self.reason in _BUDGET_REASONS


class MalformedResponse(CompactionError):
    """The model answered, but not in the shape the artifact kind needs."""

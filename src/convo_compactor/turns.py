from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class Importance(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        return _IMPORTANCE_WEIGHTS[self]


_IMPORTANCE_WEIGHTS = {Importance.HIGH: 3, Importance.MEDIUM: 2, Importance.LOW: 1}

_ROLE_ALIASES = {
    "user": Role.USER,
    "human": Role.USER,
    "assistant": Role.ASSISTANT,
    "ai": Role.ASSISTANT,
}

CHARS_PER_TOKEN = 4

_CODE_BLOCK = re.compile(r"```[\w+-]*\n[\s\S]*?```")
_FILE_PATH = re.compile(r"(?:^|\s)([/\w.-]+\.[a-z]{2,6})(?=\s|$|:|\))", re.IGNORECASE)
_ERROR_PATTERNS = [
    re.compile(r"error:\s*\S", re.IGNORECASE),
    re.compile(r"exception:\s*\S", re.IGNORECASE),
    re.compile(r"failed:\s*\S", re.IGNORECASE),
    re.compile(r"typeerror:\s*\S", re.IGNORECASE),
    re.compile(r"referenceerror:\s*\S", re.IGNORECASE),
]
DECISION_KEYWORDS = ("decided to", "chose to", "went with", "instead of", "because", "the reason")
HIGH_IMPORTANCE_KEYWORDS = ("important", "critical", "key", "finally", "solved", "fixed", "works now")
LOW_IMPORTANCE_KEYWORDS = ("thanks", "thank you", "got it", "ok", "okay", "sure")

BASE_SCORE = 5
SHORT_CONTENT_CHARS = 50


def contains_keyword(text: str, keywords: Iterable[str]) -> bool:
    """Case-insensitive substring match, so "ok" also matches "token"."""
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


@dataclass(frozen=True)
class Turn:
    index: int
    role: Role
    content: str
    token_count: int
    importance_score: int
    importance: Importance
    has_code: bool
    has_error: bool
    has_decision: bool
    timestamp: Any = None
    file_refs: tuple[str, ...] = ()
    truncated: bool = False


@dataclass(frozen=True)
class TranscriptStats:
    total_turns: int
    total_tokens: int
    high_importance_turns: int
    user_turns: int
    assistant_turns: int
    code_turns: int
    error_turns: int
    decision_turns: int
    file_count: int


@dataclass(frozen=True)
class AnalysisResult:
    turns: list[Turn]
    stats: TranscriptStats


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def total_tokens(turns: Iterable[Turn]) -> int:
    return sum(t.token_count for t in turns)


def has_code(text: str) -> bool:
    return _CODE_BLOCK.search(text) is not None


def has_error(text: str) -> bool:
    return any(p.search(text) for p in _ERROR_PATTERNS)


def has_decision(text: str) -> bool:
    return contains_keyword(text, DECISION_KEYWORDS)


def extract_file_refs(text: str) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for match in _FILE_PATH.finditer(text):
        path = match.group(1)
        if "/" in path and "://" not in path and len(path) >= 3:
            seen.setdefault(path, None)
    return tuple(seen)


def score_importance(content: str, *, code: bool, decision: bool, error: bool) -> tuple[int, Importance]:
    score = BASE_SCORE
    if code:
        score += 2
    if decision:
        score += 2
    if error:
        score += 1
    if contains_keyword(content, HIGH_IMPORTANCE_KEYWORDS):
        score += 1
    if contains_keyword(content, LOW_IMPORTANCE_KEYWORDS):
        score -= 2
    if len(content) < SHORT_CONTENT_CHARS:
        score -= 1

    clamped = max(1, min(10, score))
    if clamped >= 8:
        return clamped, Importance.HIGH
    if clamped >= 5:
        return clamped, Importance.MEDIUM
    return clamped, Importance.LOW


def build_turn(
    index: int,
    role: Role,
    content: str,
    *,
    timestamp: Any = None,
    truncated: bool = False,
) -> Turn:
    code = has_code(content)
    error = has_error(content)
    decision = has_decision(content)
    score, importance = score_importance(content, code=code, decision=decision, error=error)
    return Turn(
        index=index,
        role=role,
        content=content,
        token_count=estimate_tokens(content),
        importance_score=score,
        importance=importance,
        has_code=code,
        has_error=error,
        has_decision=decision,
        timestamp=timestamp,
        file_refs=extract_file_refs(content),
        truncated=truncated,
    )


def _parse_role(raw: object) -> Role:
    role = _ROLE_ALIASES.get(str(raw or "").strip().lower())
    if role is None:
        raise ValueError(f"Unsupported message role: {raw!r}")
    return role


def _message_text(message: Mapping[str, Any]) -> str:
    text = message.get("text")
    if text is None:
        text = message.get("content", "")
    return text if isinstance(text, str) else str(text)


def analyze(messages: Iterable[Mapping[str, Any]]) -> AnalysisResult:
    """Parse raw ``{role, text}`` messages into scored turns.

    Pure and deterministic: the same messages always yield the same turns
    and stats.
    """
    turns = [
        build_turn(
            index,
            _parse_role(message.get("role", message.get("type"))),
            _message_text(message),
            timestamp=message.get("timestamp"),
        )
        for index, message in enumerate(messages)
    ]
    return AnalysisResult(turns=turns, stats=compute_stats(turns))


def compute_stats(turns: list[Turn]) -> TranscriptStats:
    return TranscriptStats(
        total_turns=len(turns),
        total_tokens=total_tokens(turns),
        high_importance_turns=sum(1 for t in turns if t.importance is Importance.HIGH),
        user_turns=sum(1 for t in turns if t.role is Role.USER),
        assistant_turns=sum(1 for t in turns if t.role is Role.ASSISTANT),
        code_turns=sum(1 for t in turns if t.has_code),
        error_turns=sum(1 for t in turns if t.has_error),
        decision_turns=sum(1 for t in turns if t.has_decision),
        file_count=len(referenced_files(turns)),
    )


def referenced_files(turns: Iterable[Turn]) -> tuple[str, ...]:
    """Distinct file paths mentioned across ``turns``, in first-mention order."""
    seen: dict[str, None] = {}
    for turn in turns:
        for path in turn.file_refs:
            seen.setdefault(path, None)
    return tuple(seen)


def format_turns(turns: Iterable[Turn]) -> str:
    return "\n\n".join(f"[Turn {t.index}] [{t.role.upper()}]: {t.content}" for t in turns)

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger


@dataclass(frozen=True)
class Conversation:
    title: str
    messages: list[dict[str, Any]] = field(default_factory=list)


@runtime_checkable
class TranscriptSource(Protocol):
    def get_conversation(self, workspace_id: str, conversation_id: str) -> Conversation:
        """Return the stored conversation. Raises ``LookupError`` when it does not exist."""
        ...


class JsonTranscriptSource:
    """Reads ``<root>/<workspace_id>/<conversation_id>.json``.

    The file holds either a bare list of messages or an object with
    ``title`` and ``messages`` (``turns`` is accepted as an alias).
    """

    def __init__(self, root: str | Path):
        self._root = Path(root)

    def path_for(self, workspace_id: str, conversation_id: str) -> Path:
        for part in (workspace_id, conversation_id):
            if not part or part in (".", "..") or "/" in part or "\\" in part:
                raise LookupError(f"Invalid conversation path component: {part!r}")
        return self._root / workspace_id / f"{conversation_id}.json"

    def get_conversation(self, workspace_id: str, conversation_id: str) -> Conversation:
        path = self.path_for(workspace_id, conversation_id)
        if not path.is_file():
            raise LookupError(f"Conversation not found: {path}")
        return load_conversation_file(path, default_title=conversation_id)


def load_conversation_file(path: str | Path, *, default_title: str = "") -> Conversation:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as ex:
        raise ValueError(f"Conversation file {path} is not valid JSON: {ex}") from ex

    if isinstance(data, list):
        messages, title = data, default_title
    elif isinstance(data, dict):
        messages = data.get("messages", data.get("turns", []))
        title = str(data.get("title") or default_title)
    else:
        raise ValueError(f"Conversation file {path} must hold a list or an object")

    if not isinstance(messages, list):
        raise ValueError(f"Conversation file {path} has a non-list 'messages' field")
    logger.debug(f"Loaded {len(messages)} messages from {path}")
    return Conversation(title=title, messages=messages)

from __future__ import annotations

import json
import sqlite3

from convo_compactor.models import Artifact, ArtifactKind, ConversationKey, Strategy
from convo_compactor.storage.store import CompactionStore

_COLUMNS = (
    "kind, workspace_id, conversation_id, id, title, content, structured_json, "
    "original_token_count, compacted_token_count, compression_ratio, model_used, "
    "strategy_used, chunk_count, budget_used, metadata_json, created_at, updated_at"
)


class ArtifactCache:
    """Latest completed artifact per conversation for one artifact kind.

    ``save`` replaces whatever was stored for the same key; nothing is merged
    and the previous artifact is gone afterwards.
    """

    def __init__(self, store: CompactionStore, kind: ArtifactKind):
        self._store = store
        self._kind = ArtifactKind(kind)

    @property
    def kind(self) -> ArtifactKind:
        return self._kind

    def get(self, key: ConversationKey) -> Artifact | None:
        row = self._store.execute(
            f"SELECT {_COLUMNS} FROM artifacts WHERE kind = ? AND workspace_id = ? AND conversation_id = ? LIMIT 1",
            (self._kind.value, key.workspace_id, key.conversation_id),
        ).fetchone()
        return _row_to_artifact(row) if row is not None else None

    def save(self, artifact: Artifact) -> None:
        if artifact.kind != self._kind:
            raise ValueError(f"Cannot store a {artifact.kind} artifact in the {self._kind} cache")
        self._store.execute(
            f"""
            INSERT INTO artifacts ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(kind, workspace_id, conversation_id) DO UPDATE SET
                id = excluded.id,
                title = excluded.title,
                content = excluded.content,
                structured_json = excluded.structured_json,
                original_token_count = excluded.original_token_count,
                compacted_token_count = excluded.compacted_token_count,
                compression_ratio = excluded.compression_ratio,
                model_used = excluded.model_used,
                strategy_used = excluded.strategy_used,
                chunk_count = excluded.chunk_count,
                budget_used = excluded.budget_used,
                metadata_json = excluded.metadata_json,
                created_at = excluded.created_at,
                updated_at = excluded.updated_at
            """,
            (
                artifact.kind.value,
                artifact.workspace_id,
                artifact.conversation_id,
                artifact.id,
                artifact.title,
                artifact.content,
                json.dumps(artifact.structured, ensure_ascii=True),
                artifact.original_token_count,
                artifact.compacted_token_count,
                artifact.compression_ratio,
                artifact.model_used,
                artifact.strategy_used.value,
                artifact.chunk_count,
                artifact.budget_used,
                json.dumps(artifact.metadata, ensure_ascii=True),
                artifact.created_at,
                artifact.updated_at,
            ),
        )
        self._store.commit()

    def delete(self, key: ConversationKey) -> bool:
        cursor = self._store.execute(
            "DELETE FROM artifacts WHERE kind = ? AND workspace_id = ? AND conversation_id = ?",
            (self._kind.value, key.workspace_id, key.conversation_id),
        )
        self._store.commit()
        return cursor.rowcount > 0

    def list_workspace(self, workspace_id: str) -> list[Artifact]:
        rows = self._store.execute(
            f"SELECT {_COLUMNS} FROM artifacts WHERE kind = ? AND workspace_id = ? ORDER BY updated_at DESC",
            (self._kind.value, workspace_id),
        ).fetchall()
        return [_row_to_artifact(row) for row in rows]


def _row_to_artifact(row: sqlite3.Row) -> Artifact:
    return Artifact(
        id=row["id"],
        kind=ArtifactKind(row["kind"]),
        workspace_id=row["workspace_id"],
        conversation_id=row["conversation_id"],
        title=row["title"],
        content=row["content"],
        structured=json.loads(row["structured_json"]),
        original_token_count=int(row["original_token_count"]),
        compacted_token_count=int(row["compacted_token_count"]),
        compression_ratio=float(row["compression_ratio"]),
        model_used=row["model_used"],
        strategy_used=Strategy(row["strategy_used"]),
        chunk_count=int(row["chunk_count"]),
        budget_used=int(row["budget_used"]),
        metadata=json.loads(row["metadata_json"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )

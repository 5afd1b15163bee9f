from __future__ import annotations

import json
import sqlite3

from convo_compactor.models import (
    ArtifactKind,
    CompactionSession,
    ConversationKey,
    LogEntry,
    SessionStatus,
    SessionStep,
    utc_now,
)
from convo_compactor.storage.store import CompactionStore


class SessionRepository:
    def __init__(self, store: CompactionStore):
        self._store = store

    def insert(self, session: CompactionSession) -> None:
        self._store.execute(
            """
            INSERT INTO sessions (
                id, kind, workspace_id, conversation_id, status, progress, current_step,
                chunks_total, chunks_processed, budget, attempts_json, error, artifact_id,
                started_at, completed_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.kind.value,
                session.workspace_id,
                session.conversation_id,
                session.status.value,
                session.progress,
                session.current_step.value if session.current_step else None,
                session.chunks_total,
                session.chunks_processed,
                session.budget,
                json.dumps(session.attempts),
                session.error,
                session.artifact_id,
                session.started_at,
                session.completed_at,
                utc_now(),
            ),
        )
        self._store.commit()

    def update(self, session: CompactionSession) -> None:
        self._store.execute(
            """
            UPDATE sessions SET
                status = ?, progress = ?, current_step = ?, chunks_total = ?, chunks_processed = ?,
                budget = ?, attempts_json = ?, error = ?, artifact_id = ?, completed_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                session.status.value,
                session.progress,
                session.current_step.value if session.current_step else None,
                session.chunks_total,
                session.chunks_processed,
                session.budget,
                json.dumps(session.attempts),
                session.error,
                session.artifact_id,
                session.completed_at,
                utc_now(),
                session.id,
            ),
        )
        self._store.commit()

    def append_log(self, session_id: str, entry: LogEntry) -> None:
        self._store.execute(
            "INSERT INTO session_logs (session_id, timestamp, level, message) VALUES (?, ?, ?, ?)",
            (session_id, entry.timestamp, entry.level, entry.message),
        )
        self._store.commit()

    def get(self, session_id: str) -> CompactionSession | None:
        row = self._store.execute("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_session(row, self.load_logs(session_id))

    def load_logs(self, session_id: str) -> list[LogEntry]:
        rows = self._store.execute(
            "SELECT timestamp, level, message FROM session_logs WHERE session_id = ? ORDER BY id ASC",
            (session_id,),
        ).fetchall()
        return [LogEntry(row["timestamp"], row["level"], row["message"]) for row in rows]

    def history(self, kind: ArtifactKind, key: ConversationKey, *, limit: int = 20) -> list[CompactionSession]:
        rows = self._store.execute(
            """
            SELECT * FROM sessions
            WHERE kind = ? AND workspace_id = ? AND conversation_id = ?
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (kind.value, key.workspace_id, key.conversation_id, max(1, limit)),
        ).fetchall()
        return [self._row_to_session(row, self.load_logs(row["id"])) for row in rows]

    def mark_interrupted(self, message: str = "Interrupted: the process stopped before the session finished") -> int:
        now = utc_now()
        rows = self._store.execute(
            "SELECT id FROM sessions WHERE status IN ('pending', 'processing')"
        ).fetchall()
        with self._store.transaction():
            for row in rows:
                self._store.execute(
                    """
                    UPDATE sessions SET status = 'failed', error = ?, completed_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (message, now, now, row["id"]),
                )
                self._store.execute(
                    "INSERT INTO session_logs (session_id, timestamp, level, message) VALUES (?, ?, 'error', ?)",
                    (row["id"], now, message),
                )
        return len(rows)

    def _row_to_session(self, row: sqlite3.Row, logs: list[LogEntry]) -> CompactionSession:
        return CompactionSession(
            id=row["id"],
            kind=ArtifactKind(row["kind"]),
            workspace_id=row["workspace_id"],
            conversation_id=row["conversation_id"],
            status=SessionStatus(row["status"]),
            progress=int(row["progress"]),
            current_step=SessionStep(row["current_step"]) if row["current_step"] else None,
            chunks_total=int(row["chunks_total"]),
            chunks_processed=int(row["chunks_processed"]),
            logs=logs,
            error=row["error"],
            budget=row["budget"],
            attempts=json.loads(row["attempts_json"]),
            artifact_id=row["artifact_id"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any


class CompactionStore:
    """SQLite persistence for sessions, their logs, and the latest artifact per conversation."""

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                workspace_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
                progress INTEGER NOT NULL DEFAULT 0,
                current_step TEXT NULL,
                chunks_total INTEGER NOT NULL DEFAULT 0,
                chunks_processed INTEGER NOT NULL DEFAULT 0,
                budget INTEGER NULL,
                attempts_json TEXT NOT NULL DEFAULT '[]',
                error TEXT NULL,
                artifact_id TEXT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS session_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                timestamp TEXT NOT NULL,
                level TEXT NOT NULL,
                message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS artifacts (
                kind TEXT NOT NULL,
                workspace_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                id TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                structured_json TEXT NOT NULL DEFAULT 'null',
                original_token_count INTEGER NOT NULL,
                compacted_token_count INTEGER NOT NULL,
                compression_ratio REAL NOT NULL,
                model_used TEXT NOT NULL,
                strategy_used TEXT NOT NULL CHECK (strategy_used IN ('single_pass', 'map_reduce')),
                chunk_count INTEGER NOT NULL,
                budget_used INTEGER NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (kind, workspace_id, conversation_id)
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_key_started
                ON sessions(kind, workspace_id, conversation_id, started_at);
            CREATE INDEX IF NOT EXISTS idx_sessions_status
                ON sessions(status);
            CREATE INDEX IF NOT EXISTS idx_session_logs_session
                ON session_logs(session_id, id);
            """
        )
        self._conn.commit()

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from loguru import logger

from convo_compactor.storage.sessions import SessionRepository
from convo_compactor.storage.store import CompactionStore


def prune_history(
    store: CompactionStore,
    *,
    max_sessions_per_key: int,
    retention_days: int,
) -> int:
    """Delete finished session history beyond retention or the per-conversation cap.

    Non-terminal sessions and stored artifacts are never touched. Returns the
    number of sessions removed.
    """
    now = datetime.now(UTC)
    cutoff = (now - timedelta(days=max(1, retention_days))).isoformat(timespec="milliseconds")

    removed = store.execute(
        """
        DELETE FROM sessions
        WHERE status IN ('completed', 'failed', 'cancelled') AND started_at < ?
        """,
        (cutoff,),
    ).rowcount

    if max_sessions_per_key > 0:
        keys = store.execute(
            "SELECT DISTINCT kind, workspace_id, conversation_id FROM sessions"
        ).fetchall()
        for key_row in keys:
            overflow = store.execute(
                """
                SELECT id
                FROM sessions
                WHERE kind = ? AND workspace_id = ? AND conversation_id = ?
                  AND status IN ('completed', 'failed', 'cancelled')
                ORDER BY started_at DESC
                LIMIT -1 OFFSET ?
                """,
                (key_row["kind"], key_row["workspace_id"], key_row["conversation_id"], max_sessions_per_key),
            ).fetchall()
            if overflow:
                store.executemany(
                    "DELETE FROM sessions WHERE id = ?",
                    [(str(row["id"]),) for row in overflow],
                )
                removed += len(overflow)

    store.commit()
    return removed


def recover_interrupted(store: CompactionStore) -> int:
    """Mark sessions left pending/processing by a previous process as failed."""
    recovered = SessionRepository(store).mark_interrupted()
    if recovered:
        logger.warning(f"Marked {recovered} interrupted session(s) as failed")
    return recovered

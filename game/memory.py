"""Completion ledger and task event history.

The vault notes are the system of record for task state; this database is an
append-only audit trail next to them. ``completions`` is keyed by
``(task_uuid, completion_count)``; a completion is claimed there as pending
before any reward is paid, so a retry always finds the claim and never pays
twice.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from vault.models import COMPLETION_SETTLED, CompletionRecord, format_timestamp

logger = logging.getLogger(__name__)


def _now_text() -> str:
    return format_timestamp(datetime.now())


_SCHEMA = """
CREATE TABLE IF NOT EXISTS completions (
    task_uuid TEXT NOT NULL,
    completion_count INTEGER NOT NULL,
    completed_at TEXT,
    rewards TEXT,             -- JSON list of applied rewards
    status TEXT NOT NULL DEFAULT 'settled',  -- "pending" until rewards are paid out
    PRIMARY KEY (task_uuid, completion_count)
);

CREATE TABLE IF NOT EXISTS task_events (
    id TEXT PRIMARY KEY,
    task_uuid TEXT,
    event_type TEXT,          -- "completed" | "refreshed" | "next_due_set" | "error"
    description TEXT,
    metadata TEXT,            -- JSON blob
    created_at TEXT
);
"""


class HistoryDB:
    """Append-only history of completions and lifecycle events."""

    def __init__(self, db_path: str | Path):
        self._path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.debug("History DB ready at %s", self._path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> HistoryDB:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── Completions ─────────────────────────────────────────────

    async def record_completion(self, record: CompletionRecord) -> bool:
        """Insert a completion record. Returns False if one already existed.

        Inserting a ``pending`` record is how a completion is claimed before
        its rewards are paid.
        """
        cursor = await self._db.execute(
            "INSERT OR IGNORE INTO completions "
            "(task_uuid, completion_count, completed_at, rewards, status) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                record.task_uuid,
                record.completion_count,
                format_timestamp(record.completed_at),
                json.dumps(record.rewards, ensure_ascii=False),
                record.status,
            ),
        )
        await self._db.commit()
        inserted = cursor.rowcount == 1
        if not inserted:
            logger.info(
                "Completion %s#%d already recorded", record.task_uuid, record.completion_count
            )
        return inserted

    async def settle_completion(
        self, task_uuid: str, completion_count: int, rewards: list[dict[str, Any]]
    ) -> None:
        await self._db.execute(
            "UPDATE completions SET rewards = ?, status = ? "
            "WHERE task_uuid = ? AND completion_count = ?",
            (
                json.dumps(rewards, ensure_ascii=False),
                COMPLETION_SETTLED,
                task_uuid,
                completion_count,
            ),
        )
        await self._db.commit()

    async def get_completion(self, task_uuid: str, completion_count: int) -> CompletionRecord | None:
        cursor = await self._db.execute(
            "SELECT * FROM completions WHERE task_uuid = ? AND completion_count = ? LIMIT 1",
            (task_uuid, completion_count),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        cols = [d[0] for d in cursor.description]
        return CompletionRecord.from_row(dict(zip(cols, row)))

    async def has_completion(self, task_uuid: str, completion_count: int) -> bool:
        return await self.get_completion(task_uuid, completion_count) is not None

    async def get_completions(self, task_uuid: str) -> list[CompletionRecord]:
        cursor = await self._db.execute(
            "SELECT * FROM completions WHERE task_uuid = ? ORDER BY completion_count ASC",
            (task_uuid,),
        )
        cols = [d[0] for d in cursor.description]
        rows = await cursor.fetchall()
        return [CompletionRecord.from_row(dict(zip(cols, row))) for row in rows]

    async def get_completion_count(self) -> int:
        cursor = await self._db.execute("SELECT COUNT(*) FROM completions")
        row = await cursor.fetchone()
        return row[0] if row else 0

    # ── Events ──────────────────────────────────────────────────

    async def log_task_event(
        self,
        task_uuid: str,
        event_type: str,
        description: str = "",
        metadata: dict | None = None,
    ) -> str:
        row_id = str(uuid.uuid4())
        await self._db.execute(
            "INSERT INTO task_events (id, task_uuid, event_type, description, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                row_id,
                task_uuid,
                event_type,
                description,
                json.dumps(metadata or {}, ensure_ascii=False, default=str),
                _now_text(),
            ),
        )
        await self._db.commit()
        return row_id

    async def get_recent_task_events(
        self,
        limit: int = 20,
        task_uuid: str = "",
        event_type: str = "",
    ) -> list[dict]:
        query = "SELECT * FROM task_events"
        where: list[str] = []
        params: list[Any] = []

        if task_uuid:
            where.append("task_uuid = ?")
            params.append(task_uuid)
        if event_type:
            where.append("event_type = ?")
            params.append(event_type)

        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        cursor = await self._db.execute(query, tuple(params))
        cols = [d[0] for d in cursor.description]
        rows = await cursor.fetchall()
        return [dict(zip(cols, row)) for row in rows]

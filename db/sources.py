"""Persistence helpers for source script records."""

from __future__ import annotations

import os
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from config.settings import DB_PATH_ENV_KEY
from db.migrations import ensure_sources_table

_UPDATABLE_FIELDS = ("name", "category", "script", "enabled", "priority")


def _resolve_db_path() -> str:
    return os.environ.get(DB_PATH_ENV_KEY, os.path.join(os.getcwd(), "music_sources.sqlite3"))


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class SourceRecord:
    """One persisted source script."""

    id: str
    name: str
    script: str
    priority: int = 0
    enabled: bool = True
    category: str = "music"
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SourceRecord":
        return cls(
            id=str(row["id"]),
            name=str(row["name"]),
            script=str(row["script"]),
            priority=int(row["priority"]),
            enabled=bool(row["enabled"]),
            category=str(row["category"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self, *, include_script: bool = True) -> dict[str, Any]:
        payload = {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "enabled": self.enabled,
            "priority": self.priority,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_script:
            payload["script"] = self.script
        return payload


class SourceRegistry:
    """SQLite-backed store of source scripts, ordered by priority."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or _resolve_db_path()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        ensure_sources_table(conn)
        return conn

    def list_sources(self) -> list[SourceRecord]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM sources ORDER BY priority DESC, name ASC")
            return [SourceRecord.from_row(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def list_enabled_by_priority(self) -> list[SourceRecord]:
        """Enabled sources, highest priority first, ties by name."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT *
                FROM sources
                WHERE enabled=1
                ORDER BY priority DESC, name ASC
                """
            )
            return [SourceRecord.from_row(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def get(self, source_id: str) -> SourceRecord | None:
        sid = (source_id or "").strip()
        if not sid:
            return None
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM sources WHERE id=?", (sid,))
            row = cur.fetchone()
            return SourceRecord.from_row(row) if row else None
        finally:
            conn.close()

    def create(
        self,
        name: str,
        script: str,
        *,
        category: str = "music",
        enabled: bool = True,
        priority: int = 0,
    ) -> SourceRecord:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValueError("name is required")
        if not (script or "").strip():
            raise ValueError("script is required")

        source_id = uuid.uuid4().hex
        now = _utc_now()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO sources (id, name, category, script, enabled, priority, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source_id,
                    clean_name,
                    (category or "music").strip() or "music",
                    script,
                    1 if enabled else 0,
                    int(priority),
                    now,
                    now,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        record = self.get(source_id)
        assert record is not None
        return record

    def update(self, source_id: str, **changes: Any) -> SourceRecord | None:
        """Apply field changes; returns ``None`` when the source does not exist."""
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"unknown source fields: {', '.join(sorted(unknown))}")
        current = self.get(source_id)
        if current is None:
            return None

        assignments: list[str] = []
        params: list[Any] = []
        for field_name in _UPDATABLE_FIELDS:
            if field_name not in changes or changes[field_name] is None:
                continue
            value = changes[field_name]
            if field_name == "enabled":
                value = 1 if value else 0
            elif field_name == "priority":
                value = int(value)
            elif field_name == "name":
                value = str(value).strip()
                if not value:
                    raise ValueError("name is required")
            assignments.append(f"{field_name}=?")
            params.append(value)
        if not assignments:
            return current

        assignments.append("updated_at=?")
        params.extend([_utc_now(), current.id])
        conn = self._connect()
        try:
            conn.execute(f"UPDATE sources SET {', '.join(assignments)} WHERE id=?", params)
            conn.commit()
        finally:
            conn.close()
        return self.get(current.id)

    def toggle(self, source_id: str) -> SourceRecord | None:
        current = self.get(source_id)
        if current is None:
            return None
        return self.update(current.id, enabled=not current.enabled)

    def delete(self, source_id: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM sources WHERE id=?", ((source_id or "").strip(),))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

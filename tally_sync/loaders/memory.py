"""
In-process store used for dry runs and tests.
"""
from __future__ import annotations
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..models import SyncMetadata
from .base import UPSERT_KEY


class MemoryStore:
    """
    SyncStore keeping rows in dictionaries.

    Mirrors the PostgreSQL semantics the sync relies on: rows keyed by
    (company_id, division_id, guid), upserts overwrite provided columns and
    bump ``updated_at``. Timestamps strictly increase even within one clock
    tick.
    """

    def __init__(self):
        self.tables: dict[str, dict[tuple, dict[str, Any]]] = defaultdict(dict)
        self.metadata: dict[tuple[str, str, str], SyncMetadata] = {}
        self.batches: list[tuple[str, int]] = []
        self._lock = threading.Lock()
        self._last_tick: Optional[datetime] = None

    def _tick(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_tick is not None and now <= self._last_tick:
            now = self._last_tick + timedelta(microseconds=1)
        self._last_tick = now
        return now

    def upsert_batch(self, table: str, rows: list[dict[str, Any]]) -> int:
        with self._lock:
            self.batches.append((table, len(rows)))
            now = self._tick()
            stored = self.tables[table]
            for row in rows:
                key = tuple(row.get(c) for c in UPSERT_KEY)
                existing = stored.get(key)
                merged = {**(existing or {}), **row, "updated_at": now}
                if existing is None:
                    merged["created_at"] = now
                stored[key] = merged
        return len(rows)

    def get_sync_metadata(
        self, company_id: str, division_id: str, table_name: str
    ) -> Optional[SyncMetadata]:
        return self.metadata.get((company_id, division_id, table_name))

    def list_sync_metadata(self, company_id: str, division_id: str) -> list[SyncMetadata]:
        return [
            m for key, m in sorted(self.metadata.items())
            if key[:2] == (company_id, division_id)
        ]

    def update_sync_metadata(self, metadata: SyncMetadata) -> None:
        with self._lock:
            key = (metadata.company_id, metadata.division_id, metadata.table_name)
            self.metadata[key] = metadata.model_copy(deep=True)

    def fetch_records(
        self, table: str, company_id: str, division_id: str, limit: int = 100, offset: int = 0
    ) -> list[dict[str, Any]]:
        rows = [
            dict(row) for key, row in sorted(self.tables.get(table, {}).items(), key=lambda kv: str(kv[0]))
            if key[:2] == (company_id, division_id)
        ]
        return rows[offset:offset + limit]

    def row(self, table: str, company_id: str, division_id: str, guid: str) -> Optional[dict[str, Any]]:
        return self.tables.get(table, {}).get((company_id, division_id, guid))

    def count(self, table: str) -> int:
        return len(self.tables.get(table, {}))

    def initialize_schema(self) -> None:
        """Nothing to create; tables appear on first write."""

    def close(self) -> None:
        pass

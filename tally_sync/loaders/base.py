"""
Store interface shared by the batch engine, the orchestrator and the API.
"""
from __future__ import annotations
from typing import Any, Optional, Protocol
import psycopg

from ..models import SyncMetadata

# Every synced table is keyed by tenant scope plus Tally's guid
UPSERT_KEY = ("company_id", "division_id", "guid")


class SyncStore(Protocol):
    def upsert_batch(self, table: str, rows: list[dict[str, Any]]) -> int:
        """Insert or update ``rows`` atomically; returns rows written."""
        ...

    def get_sync_metadata(
        self, company_id: str, division_id: str, table_name: str
    ) -> Optional[SyncMetadata]: ...

    def list_sync_metadata(self, company_id: str, division_id: str) -> list[SyncMetadata]: ...

    def update_sync_metadata(self, metadata: SyncMetadata) -> None: ...

    def fetch_records(
        self, table: str, company_id: str, division_id: str, limit: int = 100, offset: int = 0
    ) -> list[dict[str, Any]]: ...

    def close(self) -> None: ...


def is_transient_error(exc: BaseException) -> bool:
    """
    True for store errors worth retrying.

    psycopg's OperationalError covers lost connections, admin shutdowns,
    serialization failures and deadlocks; constraint and data errors are
    permanent.
    """
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    return isinstance(exc, psycopg.OperationalError)

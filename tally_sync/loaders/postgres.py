"""
PostgreSQL store.

Provides connection management, the per-batch upsert statement and the
sync_metadata bookkeeping table.
"""
from __future__ import annotations
import re
from typing import Any, Optional
import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from loguru import logger

from ..config import SyncConfig
from ..models import SyncMetadata, get_schema_sql
from .base import UPSERT_KEY

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_METADATA_COLUMNS = (
    "company_id, division_id, table_name, last_sync, sync_type, "
    "records_processed, records_failed, metadata"
)


def get_connection(config: Optional[SyncConfig] = None):
    """
    Create a database connection.

    Autocommit is on; multi-statement work opens an explicit transaction.
    """
    config = config or SyncConfig.from_env()
    return psycopg.connect(config.db_url, autocommit=True, row_factory=dict_row)


def _identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _upsert_statement(
    target: str, columns: tuple[str, ...], rows: list[dict[str, Any]]
) -> tuple[str, list[Any]]:
    update_columns = [c for c in columns if c not in UPSERT_KEY]
    row_sql = "(" + ", ".join(["%s"] * len(columns)) + ")"
    values_sql = ", ".join([row_sql] * len(rows))
    set_sql = ", ".join([f"{c} = EXCLUDED.{c}" for c in update_columns] + ["updated_at = NOW()"])
    sql = (
        f"INSERT INTO {target} ({', '.join(columns)}) "
        f"VALUES {values_sql} "
        f"ON CONFLICT ({', '.join(UPSERT_KEY)}) DO UPDATE SET {set_sql}"
    )
    return sql, [row[c] for row in rows for c in columns]


class PostgresStore:
    """
    SyncStore backed by PostgreSQL via psycopg.

    Tables live in the configured schema (``TALLY_SYNC_SCHEMA``).
    """

    def __init__(self, config: Optional[SyncConfig] = None):
        self.config = config or SyncConfig.from_env()
        self.schema = _identifier(self.config.db_schema)
        self._conn = None

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = get_connection(self.config)
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def table(self, name: str) -> str:
        return f"{self.schema}.{_identifier(name)}"

    def ensure_schema(self):
        """Create schema if it doesn't exist."""
        with self.conn.cursor() as cur:
            cur.execute(f"CREATE SCHEMA IF NOT EXISTS {self.schema}")

    def initialize_schema(self):
        """Create the schema and all tables if they don't exist."""
        self.ensure_schema()
        with self.conn.transaction():
            with self.conn.cursor() as cur:
                cur.execute(f"SET LOCAL search_path TO {self.schema}")
                cur.execute(get_schema_sql())
        logger.info(f"Database schema {self.schema} initialized")

    def upsert_batch(self, table: str, rows: list[dict[str, Any]]) -> int:
        """
        Upsert a batch of rows in one transaction.

        Rows are grouped by their key set and each group is written with a
        single statement, so a column a row does not carry is left untouched
        on conflict instead of being overwritten with NULL. Existing rows get
        the group's non-key columns overwritten and ``updated_at`` bumped.

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        target = self.table(table)
        groups: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for row in rows:
            columns = tuple(_identifier(c) for c in row)
            groups.setdefault(columns, []).append(row)

        with self.conn.transaction():
            with self.conn.cursor() as cur:
                for columns, group in groups.items():
                    cur.execute(*_upsert_statement(target, columns, group))
        return len(rows)

    def get_sync_metadata(
        self, company_id: str, division_id: str, table_name: str
    ) -> Optional[SyncMetadata]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_METADATA_COLUMNS}
                FROM {self.table("sync_metadata")}
                WHERE company_id = %s AND division_id = %s AND table_name = %s
                """,
                (company_id, division_id, table_name),
            )
            row = cur.fetchone()
        return SyncMetadata.model_validate(row) if row else None

    def list_sync_metadata(self, company_id: str, division_id: str) -> list[SyncMetadata]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_METADATA_COLUMNS}
                FROM {self.table("sync_metadata")}
                WHERE company_id = %s AND division_id = %s
                ORDER BY table_name
                """,
                (company_id, division_id),
            )
            return [SyncMetadata.model_validate(row) for row in cur.fetchall()]

    def update_sync_metadata(self, metadata: SyncMetadata) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.table("sync_metadata")} ({_METADATA_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (company_id, division_id, table_name) DO UPDATE SET
                    last_sync = EXCLUDED.last_sync,
                    sync_type = EXCLUDED.sync_type,
                    records_processed = EXCLUDED.records_processed,
                    records_failed = EXCLUDED.records_failed,
                    metadata = EXCLUDED.metadata,
                    updated_at = NOW()
                """,
                (
                    metadata.company_id,
                    metadata.division_id,
                    metadata.table_name,
                    metadata.last_sync,
                    metadata.sync_type,
                    metadata.records_processed,
                    metadata.records_failed,
                    Jsonb(metadata.metadata),
                ),
            )

    def fetch_records(
        self, table: str, company_id: str, division_id: str, limit: int = 100, offset: int = 0
    ) -> list[dict[str, Any]]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT * FROM {self.table(table)}
                WHERE company_id = %s AND division_id = %s
                ORDER BY guid
                LIMIT %s OFFSET %s
                """,
                (company_id, division_id, limit, offset),
            )
            return cur.fetchall()

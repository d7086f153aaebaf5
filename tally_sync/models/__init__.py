"""
Data models for Tally Sync.

Pydantic models for the declarative table configuration, the tenant scope a
sync runs under, change cursors and the structured results a sync returns.
Also exposes the PostgreSQL schema definition.
"""
from __future__ import annotations
import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

# Path to schema file
SCHEMA_FILE = Path(__file__).parent / "schema.sql"

# A plain native attribute, optionally reaching into the parent level with ".."
IDENTIFIER_RE = re.compile(r"^(\.\.)?[A-Za-z0-9_]+$")

SyncType = Literal["full", "incremental"]


def get_schema_sql() -> str:
    """Get the full schema SQL."""
    return SCHEMA_FILE.read_text(encoding="utf-8")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FieldType(str, Enum):
    TEXT = "text"
    LOGICAL = "logical"
    DATE = "date"
    NUMBER = "number"
    AMOUNT = "amount"
    QUANTITY = "quantity"
    RATE = "rate"


class Category(str, Enum):
    MASTER = "master"
    TRANSACTION = "transaction"


class TableStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class FieldSpec(BaseModel):
    """One target column and the Tally expression it is read from."""

    model_config = ConfigDict(frozen=True)

    name: str
    field: str
    type: FieldType = FieldType.TEXT
    tag: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> Any:
        if value is None:
            return FieldType.TEXT
        if isinstance(value, FieldType):
            return value
        try:
            return FieldType(str(value).strip().lower())
        except ValueError:
            logger.warning(f"Unknown field type '{value}', treating as text")
            return FieldType.TEXT

    @property
    def is_identifier(self) -> bool:
        return bool(IDENTIFIER_RE.match(self.field))

    @property
    def source_tag(self) -> str:
        """Tag the value appears under in message and summary responses."""
        if self.tag:
            return self.tag.upper()
        if self.is_identifier:
            return self.field.upper()
        return self.name.upper()


class TableSpec(BaseModel):
    """
    Declarative description of one synchronizable entity category.

    ``collection`` is a dot-separated path; each extra segment is a child
    collection exploded from its parent (e.g. ``Voucher.AllLedgerEntries``).
    Tables with ``report`` set are fetched through a predefined Tally report
    instead of a generated TDL definition.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    collection: str
    fields: tuple[FieldSpec, ...]
    filters: tuple[str, ...] = ()
    fetch: tuple[str, ...] = ()
    category: Category = Category.MASTER
    report: Optional[str] = None
    depends_on: Optional[str] = None
    entity: Optional[str] = None

    @field_validator("fields")
    @classmethod
    def _has_fields(cls, value: tuple[FieldSpec, ...]) -> tuple[FieldSpec, ...]:
        if not value:
            raise ValueError("at least one field is required")
        names = [f.name for f in value]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate field names in {names}")
        return value

    @property
    def segments(self) -> list[str]:
        return [s for s in self.collection.split(".") if s]

    @property
    def is_detail(self) -> bool:
        return len(self.segments) > 1

    @property
    def entity_tag(self) -> str:
        """XML element name of one entity node in message responses."""
        return (self.entity or self.segments[0]).upper()

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> Optional[FieldSpec]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def parent_key(self) -> Optional[str]:
        """Column carrying the parent entity's guid on detail rows."""
        for f in self.fields:
            if f.field.lower() == "..guid":
                return f.name
        return None


class Tenant(BaseModel):
    """Company/division scope a sync runs under."""

    company_id: str
    division_id: str
    company_name: str
    tally_url: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return self.company_id, self.division_id


class ChangeCursor(BaseModel):
    """AlterID pair reported by Tally (or last persisted)."""

    master: int = 0
    transaction: int = 0

    def for_category(self, category: Category) -> int:
        return self.master if category == Category.MASTER else self.transaction


class SyncMetadata(BaseModel):
    company_id: str
    division_id: str
    table_name: str
    last_sync: datetime = Field(default_factory=utcnow)
    sync_type: SyncType = "full"
    records_processed: int = 0
    records_failed: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class TableResult(BaseModel):
    """Outcome of syncing one table."""

    table: str
    category: Category
    status: TableStatus = TableStatus.COMPLETED
    sync_type: SyncType = "full"
    shape: Optional[str] = None
    fetched: int = 0
    processed: int = 0
    failed: int = 0
    rejected: int = 0
    duplicates: int = 0
    coerced: int = 0
    error: Optional[str] = None
    diagnostic: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        if self.status == TableStatus.COMPLETED:
            return True
        return self.status == TableStatus.SKIPPED and self.error is None


class SyncSummary(BaseModel):
    """Structured result of one sync invocation. Always returned, never raised."""

    company_id: str
    division_id: str
    mode: SyncType
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    cursor: ChangeCursor = Field(default_factory=ChangeCursor)
    last_cursor: ChangeCursor = Field(default_factory=ChangeCursor)
    tables: list[TableResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    cancelled: bool = False

    @computed_field
    @property
    def records_processed(self) -> int:
        return sum(t.processed for t in self.tables)

    @computed_field
    @property
    def records_failed(self) -> int:
        return sum(t.failed for t in self.tables)

    @computed_field
    @property
    def success(self) -> bool:
        return not self.errors and all(t.succeeded for t in self.tables)

    def result_for(self, table: str) -> Optional[TableResult]:
        for result in self.tables:
            if result.table == table:
                return result
        return None


__all__ = [
    "SCHEMA_FILE",
    "get_schema_sql",
    "FieldType",
    "Category",
    "TableStatus",
    "FieldSpec",
    "TableSpec",
    "Tenant",
    "ChangeCursor",
    "SyncMetadata",
    "TableResult",
    "SyncSummary",
    "SyncType",
]

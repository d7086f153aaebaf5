"""
Change tracking with Tally AlterIDs.

Tally keeps two monotonically increasing counters per company: one bumped on
any master change (AltMstId) and one on any voucher change (AltVchId). The
last value synced for each table is stored in its SyncMetadata blob; the
lowest value across a category's tables is that category's cursor.
"""
from __future__ import annotations
from typing import Any, Iterable, Optional
from loguru import logger

from .builder import build_change_cursor_request
from .models import Category, ChangeCursor, SyncMetadata, TableSpec, Tenant

CURSOR_KEY = "last_alter_id"
CATEGORY_KEYS = {
    Category.MASTER: "last_alter_id_master",
    Category.TRANSACTION: "last_alter_id_transaction",
}


def _to_int(token: Any) -> int:
    s = str(token).strip().strip('"').strip().replace(" ", "").replace(",", "")
    return int(s) if s.isdigit() else 0


def parse_cursor_response(text: Optional[str]) -> ChangeCursor:
    """
    Parse the comma delimited AlterID reply, e.g. ``"1523","8841"``.

    Missing or non-numeric values count as 0.
    """
    cleaned = (text or "").replace("\x00", "").lstrip("\ufeff").strip()
    line = cleaned.splitlines()[0] if cleaned else ""
    parts = line.split(",") if line else []
    master = _to_int(parts[0]) if len(parts) > 0 else 0
    transaction = _to_int(parts[1]) if len(parts) > 1 else 0
    return ChangeCursor(master=master, transaction=transaction)


def cursor_from_metadata(metadata: Optional[SyncMetadata], category: Category) -> int:
    """Last AlterID persisted for a table, 0 when never synced."""
    if metadata is None:
        return 0
    blob = metadata.metadata or {}
    value = blob.get(CURSOR_KEY, blob.get(CATEGORY_KEYS[category], 0))
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid cursor {value!r} for {metadata.table_name}")
        return 0


class ChangeTracker:
    """
    Change-tracking coordinator for one sync invocation.

    Args:
        client: TallyClient (anything with ``post_xml``)
        store: SyncStore holding SyncMetadata
        legacy_compare: Resync a category whenever its current AlterID is
            nonzero, ignoring the last synced value
    """

    def __init__(self, client=None, store=None, legacy_compare: bool = False):
        self.client = client
        self.store = store
        self.legacy_compare = legacy_compare

    def fetch(self, company: str) -> ChangeCursor:
        """Ask Tally for the company's current AlterIDs."""
        response = self.client.post_xml(build_change_cursor_request(company))
        cursor = parse_cursor_response(response)
        logger.debug(f"Current AlterIDs for {company}: master={cursor.master}, transaction={cursor.transaction}")
        return cursor

    def load(self, tenant: Tenant, tables: Iterable[TableSpec]) -> ChangeCursor:
        """Last synced cursor per category (0 when any table was never synced)."""
        values: dict[Category, list[int]] = {Category.MASTER: [], Category.TRANSACTION: []}
        for table in tables:
            metadata = self.store.get_sync_metadata(tenant.company_id, tenant.division_id, table.name)
            values[table.category].append(cursor_from_metadata(metadata, table.category))
        return ChangeCursor(
            master=min(values[Category.MASTER], default=0),
            transaction=min(values[Category.TRANSACTION], default=0),
        )

    def needs_sync(self, current: int, last: int) -> bool:
        if self.legacy_compare:
            return current > 0
        return current > last

    def decide(self, current: ChangeCursor, last: ChangeCursor) -> dict[Category, bool]:
        """Whether each category has changes to pull."""
        return {
            category: self.needs_sync(current.for_category(category), last.for_category(category))
            for category in Category
        }

    @staticmethod
    def changed_since(last: int) -> Optional[int]:
        """AlterID an incremental export starts after, None for a first sync."""
        return last if last > 0 else None

    @staticmethod
    def cursor_metadata(category: Category, value: int) -> dict[str, int]:
        """Metadata persisted after a table synced cleanly up to ``value``."""
        return {CURSOR_KEY: value, CATEGORY_KEYS[category]: value}

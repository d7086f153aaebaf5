"""
Main sync orchestration for Tally Sync.

Provides:
- Full sync: every configured table, regardless of change state
- Incremental sync: only categories whose AlterID moved, filtered by AlterID
- Selective sync: specific tables only
- Date range sync: transactions in a date range
"""
from __future__ import annotations
import argparse
import sys
from datetime import date
from typing import Iterable, Optional
from loguru import logger

from .builder import build_table_request
from .cancel import CancelToken
from .client import TallyClient, TallyConnectionError, TallyResponseError
from .config import SyncConfig, setup_logging
from .loaders import BatchUpsertEngine, MemoryStore, PostgresStore, RetryPolicy
from .models import (
    Category,
    ChangeCursor,
    SyncSummary,
    SyncType,
    TableResult,
    TableSpec,
    TableStatus,
    Tenant,
    utcnow,
)
from .parsers import ResponseShape, extract_records
from .tables import TableConfig, TableConfigError, load_table_config
from .tracking import ChangeTracker
from .transform import CoercionStats, transform_records

MODES = ("full", "incremental")


class TallySync:
    """
    Main synchronization orchestrator.

    Coordinates fetching data from Tally and loading it into the store for
    one tenant. All state lives on the instance and only for the duration
    of one run.

    Usage:
        with TallySync() as sync:
            # Incremental sync of everything
            summary = sync.run()

            # Full sync of specific tables
            summary = sync.run("full", tables=["ledgers", "vouchers"])
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        tenant: Optional[Tenant] = None,
        store=None,
        client=None,
        tables: Optional[TableConfig] = None,
    ):
        self.config = config or SyncConfig.from_env()
        self.tenant = tenant or self.config.tenant()
        self.tables = tables or load_table_config(self.config.table_config)

        # Only close what we created
        self._owns_store = store is None
        self._owns_client = client is None
        self.store = store if store is not None else PostgresStore(self.config)
        self.client = client if client is not None else TallyClient(
            self.config, url=self.tenant.tally_url, company=self.tenant.company_name
        )
        self.tracker = ChangeTracker(
            self.client, self.store, legacy_compare=self.config.legacy_change_detection
        )

    def test_connection(self) -> dict:
        """Test connection to Tally."""
        return self.client.test_connection()

    def initialize_schema(self):
        """Create database schema and tables if they don't exist."""
        self.store.initialize_schema()

    def _engine(self, cancel_token: Optional[CancelToken]) -> BatchUpsertEngine:
        return BatchUpsertEngine(
            self.store,
            batch_size=self.config.batch_size,
            retry_policy=RetryPolicy(
                max_attempts=self.config.upsert_max_attempts,
                backoff=self.config.upsert_backoff,
            ),
            cancel_token=cancel_token,
        )

    def _timeout(self, sync_type: SyncType, cancel_token: Optional[CancelToken]) -> float:
        timeout = float(
            self.config.full_sync_timeout if sync_type == "full" else self.config.request_timeout
        )
        remaining = cancel_token.remaining() if cancel_token else None
        if remaining is not None:
            timeout = max(1.0, min(timeout, remaining))
        return timeout

    def _date_range(self, table: TableSpec, from_date, to_date) -> tuple:
        # Masters are not period-bound
        if table.category == Category.MASTER and not table.report:
            return None, None
        return from_date or self.config.default_from_date(), to_date or date.today()

    def sync_table(
        self,
        table: TableSpec,
        sync_type: SyncType = "full",
        changed_since: Optional[int] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        cancel_token: Optional[CancelToken] = None,
        success_metadata: Optional[dict] = None,
    ) -> TableResult:
        """
        Sync one table: build, post, extract, transform, upsert.

        Failures are recorded on the returned TableResult, never raised.

        Args:
            table: Table to sync
            sync_type: "full" or "incremental" (recorded in SyncMetadata)
            changed_since: Only pull entities with a higher AlterID
            from_date: Start of the transaction range
            to_date: End of the transaction range
            cancel_token: Stops further batches when triggered
            success_metadata: Persisted only if every batch is written

        Returns:
            TableResult with counts and status
        """
        result = TableResult(table=table.name, category=table.category, sync_type=sync_type)

        try:
            target = self.tables.target_table(table.name)
        except TableConfigError as e:
            logger.error(f"{table.name}: {e}")
            result.status = TableStatus.FAILED
            result.error = str(e)
            return result

        engine = self._engine(cancel_token)
        from_date, to_date = self._date_range(table, from_date, to_date)
        request = build_table_request(
            table, self.tenant.company_name, from_date, to_date, changed_since
        )

        logger.info(f"Syncing {table.name} ({sync_type})...")
        try:
            response = self.client.post_xml(request, timeout=self._timeout(sync_type, cancel_token))
        except (TallyConnectionError, TallyResponseError) as e:
            logger.error(f"Failed to fetch {table.name}: {e}")
            result.status = TableStatus.FAILED
            result.error = str(e)
            engine.record_metadata(table.name, self.tenant, sync_type, metadata={"last_error": str(e)})
            return result

        extraction = extract_records(response, table)
        result.shape = extraction.shape.value
        result.fetched = len(extraction)
        result.diagnostic = extraction.diagnostic

        if extraction.shape == ResponseShape.UNKNOWN:
            result.status = TableStatus.FAILED
            result.error = f"Unrecognized response: {extraction.diagnostic}"
            engine.record_metadata(table.name, self.tenant, sync_type, metadata={"last_error": result.error})
            return result

        stats = CoercionStats()
        records = transform_records(
            extraction.records, table, by_tag=extraction.keyed_by_tag, stats=stats
        )
        result.coerced = stats.total
        if stats.total:
            logger.warning(f"{table.name}: {stats.total} values defaulted: {dict(stats.counts)}")

        upserted = engine.upsert(
            table.name,
            target,
            records,
            self.tenant,
            sync_type=sync_type,
            metadata={"shape": result.shape, "fetched": result.fetched, "coerced": result.coerced},
            success_metadata=success_metadata,
        )
        result.processed = upserted.processed
        result.failed = upserted.records_failed
        result.rejected = upserted.rejected
        result.duplicates = upserted.duplicates

        if upserted.cancelled:
            result.status = TableStatus.CANCELLED
        elif upserted.failed_batches:
            result.status = TableStatus.PARTIAL if upserted.processed else TableStatus.FAILED
            result.error = upserted.errors[-1]
        else:
            result.status = TableStatus.COMPLETED

        logger.info(
            f"{table.name}: {result.status.value}, {result.processed} processed, "
            f"{result.failed} failed ({result.shape})"
        )
        return result

    def run(
        self,
        mode: SyncType = "incremental",
        tables: Optional[Iterable[str]] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> SyncSummary:
        """
        Run a sync over the configured (or selected) tables.

        Masters run before transactions, each in priority order. Detail
        tables are skipped when their parent failed in the same run. In
        incremental mode a category whose AlterID has not moved is skipped.

        Args:
            mode: "full" or "incremental"
            tables: Specific table names (default: all configured)
            from_date: Start date for transactions
            to_date: End date for transactions
            cancel_token: Caller-supplied stop signal/deadline

        Returns:
            SyncSummary, also on partial failure
        """
        if mode not in MODES:
            raise ValueError(f"Unknown mode: {mode}. Valid: {', '.join(MODES)}")

        summary = SyncSummary(
            company_id=self.tenant.company_id, division_id=self.tenant.division_id, mode=mode
        )
        try:
            selected = self.tables.ordered(tables)
        except TableConfigError as e:
            logger.error(str(e))
            summary.errors.append(str(e))
            summary.finished_at = utcnow()
            return summary

        sync_type: SyncType = mode
        if mode == "incremental" and not self.config.enable_incremental:
            logger.info("Incremental sync disabled, running full sync")
            sync_type = "full"

        current: Optional[ChangeCursor] = None
        try:
            current = self.tracker.fetch(self.tenant.company_name)
            summary.cursor = current
        except (TallyConnectionError, TallyResponseError) as e:
            logger.error(f"Could not read change cursor: {e}")
            summary.errors.append(f"change cursor: {e}")
            if sync_type == "incremental":
                logger.warning("Falling back to full sync")
                sync_type = "full"

        changed = {category: True for category in Category}
        last = ChangeCursor()
        if sync_type == "incremental":
            try:
                last = self.tracker.load(self.tenant, selected)
            except Exception as e:
                logger.error(f"Could not load last change cursor: {e}")
                summary.errors.append(f"last cursor: {e}")
                logger.warning("Falling back to full sync")
                sync_type = "full"

        if sync_type == "incremental":
            summary.last_cursor = last
            changed = self.tracker.decide(current, last)
            logger.info(
                f"AlterIDs master {last.master} -> {current.master}, "
                f"transaction {last.transaction} -> {current.transaction}"
            )

        logger.info(f"=== {sync_type.title()} sync of {len(selected)} tables ===")
        unhealthy: set[str] = set()
        for table in selected:
            if cancel_token is not None and cancel_token.cancelled:
                logger.warning(f"Sync cancelled before {table.name}")
                summary.cancelled = True
                summary.tables.append(
                    TableResult(table=table.name, category=table.category, status=TableStatus.CANCELLED)
                )
                unhealthy.add(table.name)
                continue

            if table.depends_on and table.depends_on in unhealthy:
                logger.warning(f"Skipping {table.name}: {table.depends_on} did not sync")
                summary.tables.append(
                    TableResult(
                        table=table.name,
                        category=table.category,
                        status=TableStatus.SKIPPED,
                        error=f"Parent table {table.depends_on} did not sync",
                    )
                )
                unhealthy.add(table.name)
                continue

            table_type: SyncType = sync_type
            changed_since = None
            if sync_type == "incremental":
                if not changed[table.category]:
                    logger.info(f"Skipping {table.name}: no {table.category.value} changes")
                    summary.tables.append(
                        TableResult(
                            table=table.name,
                            category=table.category,
                            status=TableStatus.SKIPPED,
                            sync_type="incremental",
                        )
                    )
                    continue
                # Report-backed tables cannot be filtered by AlterID
                if not table.report:
                    changed_since = self.tracker.changed_since(last.for_category(table.category))
                if changed_since is None:
                    table_type = "full"

            success_metadata = None
            if current is not None:
                success_metadata = self.tracker.cursor_metadata(
                    table.category, current.for_category(table.category)
                )

            result = self.sync_table(
                table,
                sync_type=table_type,
                changed_since=changed_since,
                from_date=from_date,
                to_date=to_date,
                cancel_token=cancel_token,
                success_metadata=success_metadata,
            )
            summary.tables.append(result)
            if not result.succeeded:
                unhealthy.add(table.name)
            if result.status == TableStatus.CANCELLED:
                summary.cancelled = True
            if result.error:
                summary.errors.append(f"{table.name}: {result.error}")

        summary.finished_at = utcnow()
        logger.info(
            f"=== Sync complete: {summary.records_processed} processed, "
            f"{summary.records_failed} failed, {len(summary.errors)} errors ==="
        )
        return summary

    def close(self):
        """Close the connections this instance opened."""
        if self._owns_client:
            self.client.close()
        if self._owns_store:
            self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def run_sync(
    mode: SyncType = "incremental",
    tables: Optional[Iterable[str]] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    config: Optional[SyncConfig] = None,
    store=None,
    timeout: Optional[float] = None,
) -> SyncSummary:
    """
    Convenience function to run sync.

    Args:
        mode: 'full' or 'incremental'
        tables: Specific tables to sync
        from_date: Start date for transactions
        to_date: End date for transactions
        config: Optional config override
        store: Optional store override (e.g. MemoryStore for dry runs)
        timeout: Overall deadline in seconds

    Returns:
        SyncSummary
    """
    token = CancelToken(timeout) if timeout else None
    with TallySync(config, store=store) as sync:
        return sync.run(mode, tables=tables, from_date=from_date, to_date=to_date, cancel_token=token)


def _table_names(values: Optional[list[str]]) -> Optional[list[str]]:
    if not values:
        return None
    return [name.strip() for value in values for name in value.split(",") if name.strip()]


def print_summary(summary: SyncSummary) -> None:
    print("\n=== Sync Results ===")
    print(f"tenant: {summary.company_id}/{summary.division_id} ({summary.mode})")
    print(f"cursor: master={summary.cursor.master}, transaction={summary.cursor.transaction}")
    for result in summary.tables:
        line = f"  {result.table}: {result.status.value}, {result.processed} processed, {result.failed} failed"
        if result.error:
            line += f" - {result.error}"
        print(line)
    if summary.cancelled:
        print("cancelled: yes")
    print(f"success: {summary.success}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Tally Sync - Sync Tally data to PostgreSQL"
    )
    parser.add_argument(
        "--mode",
        choices=MODES,
        default="incremental",
        help="Sync mode (default: incremental)",
    )
    parser.add_argument(
        "--tables",
        nargs="*",
        help="Specific tables to sync (space or comma separated)",
    )
    parser.add_argument(
        "--from-date",
        type=lambda s: date.fromisoformat(s),
        help="Start date for transactions (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--to-date",
        type=lambda s: date.fromisoformat(s),
        help="End date for transactions (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--init-only",
        action="store_true",
        help="Only initialize database schema, don't sync",
    )
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Test Tally connection and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and transform but keep rows in memory instead of the database",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Start the HTTP API",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Stop starting new tables/batches after this many seconds",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    config = SyncConfig.from_env()
    setup_logging(config, verbose=args.verbose)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return 1

    if args.serve:
        import uvicorn
        from .api import create_app

        uvicorn.run(create_app(config), host=config.api_host, port=config.api_port)
        return 0

    store = MemoryStore() if args.dry_run else None
    try:
        with TallySync(config, store=store) as sync:
            if args.test_connection:
                result = sync.test_connection()
                print(f"Connection test: {result}")
                return 0 if result["status"] == "connected" else 1

            if args.init_only:
                sync.initialize_schema()
                print("Schema initialized successfully")
                return 0

            token = CancelToken(args.timeout) if args.timeout else None
            summary = sync.run(
                mode=args.mode,
                tables=_table_names(args.tables),
                from_date=args.from_date,
                to_date=args.to_date,
                cancel_token=token,
            )
    except TableConfigError as e:
        logger.error(f"Table configuration error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Sync failed: {e}")
        return 1

    print_summary(summary)
    return 0 if summary.success else 1


if __name__ == "__main__":
    sys.exit(main())

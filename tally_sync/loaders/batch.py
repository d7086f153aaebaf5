"""
Batch upsert engine.

Partitions normalized records into bounded batches, writes each batch with a
single idempotent upsert, retries transient store errors and records one
SyncMetadata entry per table run.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Optional
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed
from loguru import logger

from ..cancel import CancelToken
from ..models import SyncMetadata, SyncType, Tenant
from .base import SyncStore, is_transient_error

SOURCE = "tally"
DEFAULT_BATCH_SIZE = 100


@dataclass
class RetryPolicy:
    """Retry for one persistence call: fixed backoff, transient errors only."""

    max_attempts: int = 2
    backoff: float = 2.0
    retryable: Callable[[BaseException], bool] = is_transient_error

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.backoff),
            retry=retry_if_exception(self.retryable),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying batch after transient error "
                f"(attempt {retry_state.attempt_number}): {retry_state.outcome.exception()}"
            ),
        )
        return retryer(fn, *args, **kwargs)


@dataclass
class UpsertResult:
    processed: int = 0
    failed: int = 0
    rejected: int = 0
    duplicates: int = 0
    batches: int = 0
    failed_batches: int = 0
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        """No batch failed and the run was not cut short."""
        return self.failed_batches == 0 and not self.cancelled

    @property
    def records_failed(self) -> int:
        return self.failed + self.rejected


def batched(rows: list[dict[str, Any]], size: int) -> Iterator[list[dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


class BatchUpsertEngine:
    """
    Persist normalized records for one tenant.

    Args:
        store: SyncStore to write to
        batch_size: Rows per upsert statement
        retry_policy: Retry applied to each batch
        cancel_token: Checked before each batch
    """

    def __init__(
        self,
        store: SyncStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry_policy: Optional[RetryPolicy] = None,
        cancel_token: Optional[CancelToken] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_token = cancel_token

    def prepare(
        self, records: Iterable[dict[str, Any]], tenant: Tenant, result: UpsertResult
    ) -> list[dict[str, Any]]:
        """
        Drop records without a guid, collapse duplicate guids (last wins) and
        stamp tenant and provenance columns.
        """
        by_guid: dict[str, dict[str, Any]] = {}
        for record in records:
            guid = record.get("guid")
            guid = str(guid).strip() if guid is not None else ""
            if not guid:
                result.rejected += 1
                continue
            if guid in by_guid:
                result.duplicates += 1
            by_guid[guid] = {**record, "guid": guid}

        stamp = datetime.now(timezone.utc)
        return [
            {
                **record,
                "company_id": tenant.company_id,
                "division_id": tenant.division_id,
                "sync_timestamp": stamp,
                "source": SOURCE,
            }
            for record in by_guid.values()
        ]

    def upsert(
        self,
        table_name: str,
        target_table: str,
        records: Iterable[dict[str, Any]],
        tenant: Tenant,
        sync_type: SyncType = "full",
        metadata: Optional[dict[str, Any]] = None,
        success_metadata: Optional[dict[str, Any]] = None,
    ) -> UpsertResult:
        """
        Write records in batches and record the run in SyncMetadata.

        Args:
            table_name: Logical table name (SyncMetadata key)
            target_table: Database table to write
            records: Normalized records
            tenant: Tenant scope stamped on every row
            sync_type: "full" or "incremental"
            metadata: Extra values for the metadata blob
            success_metadata: Values recorded only when every batch was
                written (e.g. the change cursor)

        Returns:
            UpsertResult with per-run counts
        """
        result = UpsertResult()
        rows = self.prepare(records, tenant, result)
        if result.rejected:
            logger.warning(f"{table_name}: rejected {result.rejected} records without guid")
        if result.duplicates:
            logger.debug(f"{table_name}: collapsed {result.duplicates} duplicate guids")

        for number, batch in enumerate(batched(rows, self.batch_size), start=1):
            if self.cancel_token is not None and self.cancel_token.cancelled:
                result.cancelled = True
                logger.warning(f"{table_name}: cancelled before batch {number}")
                break
            result.batches += 1
            try:
                self.retry_policy.call(self.store.upsert_batch, target_table, batch)
                result.processed += len(batch)
            except Exception as e:
                result.failed += len(batch)
                result.failed_batches += 1
                result.errors.append(f"batch {number}: {e}")
                logger.error(f"{table_name}: batch {number} ({len(batch)} rows) failed: {e}")

        extra = {
            **(metadata or {}),
            "batches": result.batches,
            "failed_batches": result.failed_batches,
            "rejected": result.rejected,
            "duplicates": result.duplicates,
        }
        if result.errors:
            extra["last_error"] = result.errors[-1]
        if result.cancelled:
            extra["cancelled"] = True
        self.record_metadata(
            table_name,
            tenant,
            sync_type,
            processed=result.processed,
            failed=result.records_failed,
            metadata=extra,
            success_metadata=success_metadata if result.clean else None,
        )
        return result

    def record_metadata(
        self,
        table_name: str,
        tenant: Tenant,
        sync_type: SyncType,
        processed: int = 0,
        failed: int = 0,
        metadata: Optional[dict[str, Any]] = None,
        success_metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[SyncMetadata]:
        """
        Write the SyncMetadata row for one table run.

        The previous blob is carried forward so a failed run keeps the last
        good change cursor.
        """
        try:
            previous = self.store.get_sync_metadata(tenant.company_id, tenant.division_id, table_name)
            blob = dict(previous.metadata) if previous else {}
            blob.pop("last_error", None)
            blob.pop("cancelled", None)
            blob.update(metadata or {})
            blob.update(success_metadata or {})
            entry = SyncMetadata(
                company_id=tenant.company_id,
                division_id=tenant.division_id,
                table_name=table_name,
                sync_type=sync_type,
                records_processed=processed,
                records_failed=failed,
                metadata=blob,
            )
            self.store.update_sync_metadata(entry)
            return entry
        except Exception as e:
            logger.error(f"{table_name}: could not record sync metadata: {e}")
            return None

"""
Tests for stores and the batch upsert engine.

PostgreSQL tests marked ``integration`` need TALLY_SYNC_TEST_DB_URL.
"""
import os
from unittest.mock import MagicMock, Mock
import psycopg
import pytest

from tally_sync.cancel import CancelToken
from tally_sync.config import SyncConfig
from tally_sync.loaders import (
    BatchUpsertEngine,
    MemoryStore,
    PostgresStore,
    RetryPolicy,
    is_transient_error,
)
from tally_sync.models import SyncMetadata

NO_WAIT = RetryPolicy(max_attempts=2, backoff=0)


def _records(count, prefix="g"):
    return [{"guid": f"{prefix}{i}", "name": f"Name {i}"} for i in range(count)]


@pytest.fixture
def mock_store():
    store = Mock()
    store.upsert_batch.side_effect = lambda table, rows: len(rows)
    store.get_sync_metadata.return_value = None
    return store


class TestRetryPolicy:
    def test_transient_classification(self):
        assert is_transient_error(psycopg.OperationalError("server closed the connection"))
        assert is_transient_error(TimeoutError())
        assert not is_transient_error(psycopg.IntegrityError("duplicate key"))
        assert not is_transient_error(ValueError("bad"))

    def test_transient_error_retried_once(self):
        fn = Mock(side_effect=[psycopg.OperationalError("lost"), "ok"])
        assert NO_WAIT.call(fn, "a") == "ok"
        assert fn.call_count == 2

    def test_gives_up_after_max_attempts(self):
        fn = Mock(side_effect=psycopg.OperationalError("lost"))
        with pytest.raises(psycopg.OperationalError):
            NO_WAIT.call(fn)
        assert fn.call_count == 2

    def test_permanent_error_not_retried(self):
        fn = Mock(side_effect=ValueError("bad row"))
        with pytest.raises(ValueError):
            NO_WAIT.call(fn)
        assert fn.call_count == 1


class TestBatchUpsertEngine:
    """Tests for batching, validation and metadata bookkeeping."""

    def test_records_without_guid_never_reach_the_store(self, mock_store, tenant):
        """Guid-less records are rejected before any persistence call."""
        engine = BatchUpsertEngine(mock_store, retry_policy=NO_WAIT)
        result = engine.upsert("groups", "mst_group", [{"name": "A"}, {"guid": "  ", "name": "B"}, {"guid": None}], tenant)

        mock_store.upsert_batch.assert_not_called()
        assert result.processed == 0
        assert result.rejected == 3
        assert result.records_failed == 3
        metadata = mock_store.update_sync_metadata.call_args.args[0]
        assert metadata.records_processed == 0
        assert metadata.records_failed == 3

    def test_mixed_records_only_send_valid_ones(self, mock_store, tenant):
        engine = BatchUpsertEngine(mock_store, retry_policy=NO_WAIT)
        result = engine.upsert("groups", "mst_group", [{"guid": "g1"}, {"name": "no guid"}], tenant)

        rows = mock_store.upsert_batch.call_args.args[1]
        assert [r["guid"] for r in rows] == ["g1"]
        assert result.processed == 1
        assert result.rejected == 1

    def test_rows_are_stamped(self, mock_store, tenant):
        BatchUpsertEngine(mock_store).upsert("groups", "mst_group", [{"guid": "g1"}], tenant)

        row = mock_store.upsert_batch.call_args.args[1][0]
        assert row["company_id"] == "c1"
        assert row["division_id"] == "d1"
        assert row["source"] == "tally"
        assert row["sync_timestamp"] is not None

    def test_batches_are_bounded(self, mock_store, tenant):
        engine = BatchUpsertEngine(mock_store, batch_size=100)
        result = engine.upsert("groups", "mst_group", _records(250), tenant)

        sizes = [len(c.args[1]) for c in mock_store.upsert_batch.call_args_list]
        assert sizes == [100, 100, 50]
        assert result.batches == 3
        assert result.processed == 250

    def test_duplicate_guids_last_wins(self, mock_store, tenant):
        records = [{"guid": "g1", "name": "first"}, {"guid": "g2"}, {"guid": "g1", "name": "second"}]
        result = BatchUpsertEngine(mock_store).upsert("groups", "mst_group", records, tenant)

        rows = mock_store.upsert_batch.call_args.args[1]
        assert len(rows) == 2
        assert next(r for r in rows if r["guid"] == "g1")["name"] == "second"
        assert result.duplicates == 1

    def test_failed_batch_is_isolated(self, mock_store, tenant):
        """A permanent failure in one batch keeps the others."""
        mock_store.upsert_batch.side_effect = [100, ValueError("constraint"), 50]
        engine = BatchUpsertEngine(mock_store, batch_size=100, retry_policy=NO_WAIT)
        result = engine.upsert("groups", "mst_group", _records(250), tenant, success_metadata={"last_alter_id": 9})

        assert mock_store.upsert_batch.call_count == 3
        assert result.processed == 150
        assert result.failed == 100
        assert result.failed_batches == 1
        assert "constraint" in result.errors[0]
        metadata = mock_store.update_sync_metadata.call_args.args[0]
        assert "last_alter_id" not in metadata.metadata
        assert metadata.records_failed == 100

    def test_transient_batch_failure_retried(self, mock_store, tenant):
        mock_store.upsert_batch.side_effect = [psycopg.OperationalError("deadlock detected"), 2]
        result = BatchUpsertEngine(mock_store, retry_policy=NO_WAIT).upsert(
            "groups", "mst_group", _records(2), tenant
        )

        assert mock_store.upsert_batch.call_count == 2
        assert result.processed == 2
        assert result.failed == 0

    def test_cancel_stops_new_batches(self, mock_store, tenant):
        token = CancelToken()
        calls = []

        def upsert_batch(table, rows):
            calls.append(len(rows))
            token.cancel()
            return len(rows)

        mock_store.upsert_batch.side_effect = upsert_batch
        result = BatchUpsertEngine(mock_store, batch_size=10, cancel_token=token).upsert(
            "groups", "mst_group", _records(30), tenant, success_metadata={"last_alter_id": 4}
        )

        assert calls == [10]
        assert result.cancelled
        assert result.processed == 10
        assert "last_alter_id" not in mock_store.update_sync_metadata.call_args.args[0].metadata

    def test_exactly_one_metadata_update(self, mock_store, tenant):
        BatchUpsertEngine(mock_store, batch_size=10).upsert("groups", "mst_group", _records(35), tenant, "incremental")

        mock_store.update_sync_metadata.assert_called_once()
        metadata = mock_store.update_sync_metadata.call_args.args[0]
        assert metadata.sync_type == "incremental"
        assert metadata.records_processed == 35
        assert metadata.metadata["batches"] == 4

    def test_metadata_carries_previous_cursor_on_failure(self, store, tenant):
        store.update_sync_metadata(
            SyncMetadata(company_id="c1", division_id="d1", table_name="groups", metadata={"last_alter_id": 7})
        )
        engine = BatchUpsertEngine(store, retry_policy=NO_WAIT)
        store.upsert_batch = Mock(side_effect=ValueError("bad"))

        engine.upsert("groups", "mst_group", _records(1), tenant, success_metadata={"last_alter_id": 9})

        metadata = store.get_sync_metadata("c1", "d1", "groups")
        assert metadata.metadata["last_alter_id"] == 7
        assert "bad" in metadata.metadata["last_error"]

    def test_clean_run_advances_cursor(self, store, tenant):
        engine = BatchUpsertEngine(store)
        engine.upsert("groups", "mst_group", _records(1), tenant, success_metadata={"last_alter_id": 9})
        assert store.get_sync_metadata("c1", "d1", "groups").metadata["last_alter_id"] == 9

    def test_metadata_write_failure_is_not_raised(self, mock_store, tenant):
        mock_store.update_sync_metadata.side_effect = psycopg.OperationalError("down")
        result = BatchUpsertEngine(mock_store).upsert("groups", "mst_group", _records(1), tenant)
        assert result.processed == 1

    def test_invalid_batch_size(self, mock_store):
        with pytest.raises(ValueError):
            BatchUpsertEngine(mock_store, batch_size=0)


class TestMemoryStore:
    def test_second_write_wins_and_advances_updated_at(self, store, tenant):
        """Upserting the same guid twice leaves one row with the second values."""
        engine = BatchUpsertEngine(store)
        engine.upsert("groups", "mst_group", [{"guid": "g1", "name": "First"}], tenant)
        first = dict(store.row("mst_group", "c1", "d1", "g1"))
        engine.upsert("groups", "mst_group", [{"guid": "g1", "name": "Second"}], tenant)
        second = store.row("mst_group", "c1", "d1", "g1")

        assert store.count("mst_group") == 1
        assert second["name"] == "Second"
        assert second["updated_at"] > first["updated_at"]
        assert second["created_at"] == first["created_at"]

    def test_rows_are_scoped_by_tenant(self, store):
        store.upsert_batch("mst_group", [
            {"company_id": "c1", "division_id": "d1", "guid": "g1"},
            {"company_id": "c2", "division_id": "d1", "guid": "g1"},
        ])
        assert store.count("mst_group") == 2
        assert len(store.fetch_records("mst_group", "c1", "d1")) == 1

    def test_fetch_records_pages(self, store):
        store.upsert_batch("mst_group", [
            {"company_id": "c1", "division_id": "d1", "guid": f"g{i}"} for i in range(5)
        ])
        page = store.fetch_records("mst_group", "c1", "d1", limit=2, offset=2)
        assert [r["guid"] for r in page] == ["g2", "g3"]


class TestPostgresStore:
    """SQL generation against a mocked connection."""

    @pytest.fixture
    def pg(self, config):
        store = PostgresStore(config)
        store._conn = MagicMock()
        store._conn.closed = False
        return store

    def _executed(self, pg):
        cursor = pg._conn.cursor.return_value.__enter__.return_value
        return cursor.execute.call_args.args

    def test_upsert_is_one_statement_per_batch(self, pg):
        rows = [
            {"company_id": "c1", "division_id": "d1", "guid": "g1", "name": "A"},
            {"company_id": "c1", "division_id": "d1", "guid": "g2", "name": "B"},
        ]
        assert pg.upsert_batch("mst_group", rows) == 2

        sql, params = self._executed(pg)
        assert sql.startswith("INSERT INTO tally_sync.mst_group (company_id, division_id, guid, name)")
        assert "ON CONFLICT (company_id, division_id, guid) DO UPDATE SET" in sql
        assert "name = EXCLUDED.name" in sql
        assert "updated_at = NOW()" in sql
        assert "guid = EXCLUDED.guid" not in sql
        assert params == ["c1", "d1", "g1", "A", "c1", "d1", "g2", "B"]
        pg._conn.transaction.assert_called_once()

    def test_rows_with_different_columns_keep_absent_values(self, pg):
        rows = [
            {"company_id": "c1", "division_id": "d1", "guid": "s1", "name": "Bolt", "amount": 4.0},
            {"company_id": "c1", "division_id": "d1", "guid": "s2", "name": "Nut"},
        ]
        assert pg.upsert_batch("mst_stock_item", rows) == 2

        cursor = pg._conn.cursor.return_value.__enter__.return_value
        assert cursor.execute.call_count == 2
        (with_amount, first), (without_amount, second) = [c.args for c in cursor.execute.call_args_list]
        assert "amount = EXCLUDED.amount" in with_amount
        assert first == ["c1", "d1", "s1", "Bolt", 4.0]
        assert "amount" not in without_amount
        assert second == ["c1", "d1", "s2", "Nut"]
        pg._conn.transaction.assert_called_once()

    def test_empty_batch_is_a_no_op(self, pg):
        assert pg.upsert_batch("mst_group", []) == 0
        pg._conn.cursor.assert_not_called()

    def test_rejects_unsafe_identifiers(self, pg):
        with pytest.raises(ValueError):
            pg.upsert_batch("mst_group; DROP TABLE x", [{"guid": "g1"}])
        with pytest.raises(ValueError):
            pg.upsert_batch("mst_group", [{"guid": "g1", "name) --": "x"}])

    def test_metadata_upsert(self, pg):
        pg.update_sync_metadata(
            SyncMetadata(company_id="c1", division_id="d1", table_name="groups", metadata={"last_alter_id": 3})
        )
        sql, params = self._executed(pg)
        assert "ON CONFLICT (company_id, division_id, table_name)" in sql
        assert params[:3] == ("c1", "d1", "groups")
        assert params[-1].obj == {"last_alter_id": 3}


@pytest.mark.integration
@pytest.mark.skipif(not os.getenv("TALLY_SYNC_TEST_DB_URL"), reason="TALLY_SYNC_TEST_DB_URL not set")
class TestPostgresIntegration:
    """Round trips against a real database."""

    @pytest.fixture
    def pg(self):
        config = SyncConfig(db_url=os.environ["TALLY_SYNC_TEST_DB_URL"], db_schema="tally_sync_test")
        with PostgresStore(config) as store:
            store.initialize_schema()
            yield store

    def test_upsert_twice(self, pg, tenant):
        engine = BatchUpsertEngine(pg)
        engine.upsert("groups", "mst_group", [{"guid": "it-g1", "name": "First"}], tenant)
        engine.upsert("groups", "mst_group", [{"guid": "it-g1", "name": "Second"}], tenant)

        rows = [r for r in pg.fetch_records("mst_group", "c1", "d1", limit=1000) if r["guid"] == "it-g1"]
        assert len(rows) == 1
        assert rows[0]["name"] == "Second"
        assert pg.get_sync_metadata("c1", "d1", "groups").records_processed == 1

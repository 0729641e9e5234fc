"""
Unit tests for PostgresDocumentStore.

The psycopg2 connection is mocked; these tests cover transaction handling and
outcome reporting, not SQL against a live database.
"""

from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from src.ingestion.errors import StoreUnavailableError
from src.ingestion.storage.base import WriteOperation
from src.ingestion.storage.postgres import PostgresDocumentStore
from src.schemas.runs import ScraperRun


@pytest.fixture
def cursor():
    cur = MagicMock()
    cur.rowcount = 1
    return cur


@pytest.fixture
def connection(cursor):
    conn = MagicMock()
    conn.closed = 0
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn


@pytest.fixture
def store(connection):
    return PostgresDocumentStore(connection)


def executed_sql(cursor):
    return [c.args[0] for c in cursor.execute.call_args_list]


class TestBulkUpsert:
    """Tests for per-operation savepoints."""

    def test_all_ok_commits(self, store, connection, cursor, make_gig):
        gigs = [make_gig(), make_gig(title="Idles")]
        outcomes = store.bulk_upsert([WriteOperation.upsert(g) for g in gigs])

        assert [o.ok for o in outcomes] == [True, True]
        assert executed_sql(cursor).count("SAVEPOINT gig_op") == 2
        assert executed_sql(cursor).count("RELEASE SAVEPOINT gig_op") == 2
        connection.commit.assert_called_once()

    def test_rejected_write_rolled_back_alone(
        self, store, connection, cursor, make_gig
    ):
        good, bad = make_gig(), make_gig(title="Idles")

        def execute(sql, params=None):
            if "INSERT INTO gigs" in sql and params[0] == bad.identity_key:
                raise psycopg2.IntegrityError("violates check constraint")

        cursor.execute.side_effect = execute
        outcomes = store.bulk_upsert(
            [WriteOperation.upsert(bad), WriteOperation.upsert(good)]
        )

        assert [o.ok for o in outcomes] == [False, True]
        assert "check constraint" in outcomes[0].error
        assert "ROLLBACK TO SAVEPOINT gig_op" in executed_sql(cursor)
        connection.commit.assert_called_once()

    def test_touch_of_missing_row_fails(self, store, cursor, make_gig):
        cursor.rowcount = 0
        [outcome] = store.bulk_upsert([WriteOperation.touch(make_gig())])
        assert not outcome.ok
        assert "No gig stored" in outcome.error

    def test_connection_loss_is_store_unavailable(self, store, connection, cursor, make_gig):
        cursor.execute.side_effect = psycopg2.OperationalError("server closed")
        with pytest.raises(StoreUnavailableError):
            store.bulk_upsert([WriteOperation.upsert(make_gig())])
        connection.rollback.assert_called_once()
        connection.commit.assert_not_called()


class TestReads:
    def test_find_by_keys_empty(self, store, connection):
        assert store.find_by_keys([]) == {}
        connection.cursor.assert_not_called()

    def test_find_by_keys(self, store, cursor, make_gig):
        gig = make_gig()
        cursor.fetchall.return_value = [(gig.identity_key, gig.to_document())]
        found = store.find_by_keys([gig.identity_key])
        assert found[gig.identity_key].title == gig.title

    def test_get_run(self, store, cursor):
        run = ScraperRun(source_id="a")
        cursor.fetchone.return_value = (run.model_dump(mode="json"),)
        assert store.get_run(run.run_id).run_id == run.run_id

    def test_get_run_missing(self, store, cursor):
        cursor.fetchone.return_value = None
        assert store.get_run("nope") is None


class TestMarkStale:
    def test_threshold(self, store, cursor):
        cursor.fetchall.return_value = [("k1", 1, False), ("k2", 0, False), ("k3", 5, True)]
        with patch("src.ingestion.storage.postgres.execute_values") as ev:
            newly = store.mark_stale("a", ["k0"], 2)

        assert newly == ["k1"]
        updates = ev.call_args.args[2]
        assert updates == [("k1", 2, True), ("k2", 1, False), ("k3", 6, True)]

    def test_nothing_to_update(self, store, cursor):
        cursor.fetchall.return_value = []
        with patch("src.ingestion.storage.postgres.execute_values") as ev:
            assert store.mark_stale("a", [], 3) == []
        ev.assert_not_called()


class TestLifecycle:
    def test_connect_failure(self):
        with patch(
            "src.ingestion.storage.postgres.psycopg2.connect",
            side_effect=psycopg2.OperationalError("refused"),
        ):
            with pytest.raises(StoreUnavailableError):
                PostgresDocumentStore.connect("postgresql://localhost/gigs")

    def test_connect_creates_schema(self, connection, cursor):
        with patch(
            "src.ingestion.storage.postgres.psycopg2.connect", return_value=connection
        ):
            store = PostgresDocumentStore.connect("postgresql://localhost/gigs")
        assert store.conn is connection
        assert "CREATE TABLE IF NOT EXISTS gigs" in executed_sql(cursor)[0]

    def test_close(self, store, connection):
        store.close()
        connection.close.assert_called_once()

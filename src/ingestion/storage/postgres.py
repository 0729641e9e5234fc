"""
PostgreSQL document store.

Gigs, runs and error log entries are kept as JSONB documents keyed by
identity key / run id / entry id. Each ``bulk_upsert`` call is one
transaction; every operation runs under its own SAVEPOINT so that a rejected
write is rolled back alone while the rest of the chunk commits.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

import psycopg2
from psycopg2.extras import Json, execute_values

from src.ingestion.errors import StoreUnavailableError
from src.ingestion.storage.base import (
    VENUE_SLUG_PATTERN,
    DocumentStore,
    OperationKind,
    OperationOutcome,
    WriteOperation,
)
from src.schemas.gig import Gig
from src.schemas.runs import ErrorLogEntry, ScraperRun

logger = logging.getLogger(__name__)

# Errors meaning the backend is gone rather than a single write being bad
CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS gigs (
    identity_key TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    document JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT gigs_venue_slug_check
        CHECK ((document -> 'venue' ->> 'slug') ~ '{VENUE_SLUG_PATTERN}')
);
CREATE INDEX IF NOT EXISTS gigs_source_id_idx ON gigs (source_id);

CREATE TABLE IF NOT EXISTS scraper_runs (
    run_id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    document JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS scraper_runs_source_started_idx
    ON scraper_runs (source_id, started_at DESC);

CREATE TABLE IF NOT EXISTS error_logs (
    seq BIGSERIAL PRIMARY KEY,
    entry_id TEXT NOT NULL UNIQUE,
    run_id TEXT NOT NULL,
    source_id TEXT NOT NULL,
    document JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS error_logs_run_id_idx ON error_logs (run_id);
"""


class PostgresDocumentStore(DocumentStore):
    """
    ``DocumentStore`` backed by a psycopg2 connection.

    The connection is shared by every source run in the process, so access
    is serialized with a lock.
    """

    def __init__(self, db_connection, *, ensure_schema: bool = False) -> None:
        """Initialize with an active psycopg2 connection."""
        self.conn = db_connection
        self._lock = threading.Lock()
        if ensure_schema:
            self.ensure_schema()

    @classmethod
    def connect(
        cls, dsn: str, *, connect_timeout: int = 10, ensure_schema: bool = True
    ) -> "PostgresDocumentStore":
        """
        Open a connection and wrap it.

        Raises:
            StoreUnavailableError: If the database cannot be reached
        """
        try:
            conn = psycopg2.connect(dsn, connect_timeout=connect_timeout)
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError(f"Cannot connect to database: {e}") from e
        return cls(conn, ensure_schema=ensure_schema)

    def ensure_schema(self) -> None:
        with self._transaction() as cur:
            cur.execute(SCHEMA_SQL)

    def close(self) -> None:
        if not self.conn.closed:
            self.conn.close()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _rollback_quietly(self) -> None:
        try:
            self.conn.rollback()
        except CONNECTION_ERRORS:
            logger.debug("Rollback skipped, connection already closed")

    @contextmanager
    def _transaction(self):
        """Cursor inside one transaction; connection loss -> StoreUnavailableError."""
        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    yield cur
                self.conn.commit()
            except CONNECTION_ERRORS as e:
                self._rollback_quietly()
                raise StoreUnavailableError(f"Database unavailable: {e}") from e
            except Exception:
                self._rollback_quietly()
                raise

    # ------------------------------------------------------------------
    # Gigs
    # ------------------------------------------------------------------

    def find_by_keys(self, keys: Iterable[str]) -> Dict[str, Gig]:
        key_list = list(set(keys))
        if not key_list:
            return {}
        with self._transaction() as cur:
            cur.execute(
                "SELECT identity_key, document FROM gigs WHERE identity_key = ANY(%s)",
                (key_list,),
            )
            rows = cur.fetchall()
        return {key: Gig.from_document(document) for key, document in rows}

    def bulk_upsert(
        self, operations: Sequence[WriteOperation]
    ) -> List[OperationOutcome]:
        outcomes: List[OperationOutcome] = []
        with self._transaction() as cur:
            for op in operations:
                cur.execute("SAVEPOINT gig_op")
                try:
                    applied = self._apply(cur, op)
                except CONNECTION_ERRORS:
                    raise
                except psycopg2.Error as e:
                    cur.execute("ROLLBACK TO SAVEPOINT gig_op")
                    message = (e.pgerror or str(e)).strip()
                    logger.warning(f"Write for gig {op.identity_key} rejected: {message}")
                    outcomes.append(OperationOutcome(op.identity_key, False, message))
                    continue

                cur.execute("RELEASE SAVEPOINT gig_op")
                if applied:
                    outcomes.append(OperationOutcome(op.identity_key, True))
                else:
                    outcomes.append(
                        OperationOutcome(
                            op.identity_key, False, f"No gig stored under {op.identity_key}"
                        )
                    )
        return outcomes

    def _apply(self, cur, op: WriteOperation) -> bool:
        if op.kind == OperationKind.TOUCH:
            cur.execute(
                """
                UPDATE gigs
                SET document = document || %s, updated_at = now()
                WHERE identity_key = %s;
                """,
                (Json(op.document), op.identity_key),
            )
            return cur.rowcount == 1

        cur.execute(
            """
            INSERT INTO gigs (identity_key, source_id, document, updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (identity_key) DO UPDATE SET
                source_id = EXCLUDED.source_id,
                document = EXCLUDED.document,
                updated_at = now();
            """,
            (op.identity_key, op.document.get("source_id"), Json(op.document)),
        )
        return True

    def mark_stale(
        self,
        source_id: str,
        seen_keys: Iterable[str],
        threshold: int,
        now: Optional[datetime] = None,
    ) -> List[str]:
        seen = list(set(seen_keys))
        newly_stale: List[str] = []
        with self._transaction() as cur:
            cur.execute(
                """
                SELECT identity_key,
                       COALESCE((document ->> 'missed_runs')::int, 0),
                       COALESCE((document ->> 'stale')::boolean, false)
                FROM gigs
                WHERE source_id = %s AND NOT (identity_key = ANY(%s))
                FOR UPDATE;
                """,
                (source_id, seen),
            )
            updates = []
            for key, missed_runs, stale in cur.fetchall():
                missed_runs += 1
                if missed_runs >= threshold and not stale:
                    stale = True
                    newly_stale.append(key)
                updates.append((key, missed_runs, stale))

            if updates:
                execute_values(
                    cur,
                    """
                    UPDATE gigs AS g
                    SET document = g.document || jsonb_build_object(
                            'missed_runs', v.missed_runs, 'stale', v.stale
                        ),
                        updated_at = now()
                    FROM (VALUES %s) AS v(identity_key, missed_runs, stale)
                    WHERE g.identity_key = v.identity_key;
                    """,
                    updates,
                )
        return newly_stale

    # ------------------------------------------------------------------
    # Runs & error log
    # ------------------------------------------------------------------

    def save_run(self, run: ScraperRun) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO scraper_runs (run_id, source_id, started_at, document)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (run_id) DO UPDATE SET document = EXCLUDED.document;
                """,
                (
                    run.run_id,
                    run.source_id,
                    run.started_at,
                    Json(run.model_dump(mode="json")),
                ),
            )

    def get_run(self, run_id: str) -> Optional[ScraperRun]:
        with self._transaction() as cur:
            cur.execute("SELECT document FROM scraper_runs WHERE run_id = %s", (run_id,))
            row = cur.fetchone()
        return ScraperRun.model_validate(row[0]) if row else None

    def list_runs(
        self, source_id: Optional[str] = None, limit: int = 50
    ) -> List[ScraperRun]:
        with self._transaction() as cur:
            if source_id is None:
                cur.execute(
                    "SELECT document FROM scraper_runs ORDER BY started_at DESC LIMIT %s",
                    (limit,),
                )
            else:
                cur.execute(
                    """
                    SELECT document FROM scraper_runs
                    WHERE source_id = %s
                    ORDER BY started_at DESC
                    LIMIT %s;
                    """,
                    (source_id, limit),
                )
            rows = cur.fetchall()
        return [ScraperRun.model_validate(row[0]) for row in rows]

    def append_error(self, entry: ErrorLogEntry) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO error_logs (entry_id, run_id, source_id, document)
                VALUES (%s, %s, %s, %s);
                """,
                (
                    entry.entry_id,
                    entry.run_id,
                    entry.source_id,
                    Json(entry.model_dump(mode="json")),
                ),
            )

    def list_errors(self, run_id: str) -> List[ErrorLogEntry]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT document FROM error_logs WHERE run_id = %s ORDER BY seq",
                (run_id,),
            )
            rows = cur.fetchall()
        return [ErrorLogEntry.model_validate(row[0]) for row in rows]

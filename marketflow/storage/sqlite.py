"""SQLite entity store.

Records are stored as JSON documents in a single ``entities`` table keyed by
``(entity_type, entity_id)``, with the version, the per-type uniqueness key
and the soft-delete timestamp broken out into columns. State transitions go
to an append-only ``transitions`` table.

Every commit runs inside ``BEGIN IMMEDIATE`` so the write lock is taken
before the version checks, and each update also re-checks the version in its
``WHERE`` clause.
"""

import contextlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, List, Optional, Union

from marketflow.errors import ConflictError, EntityNotFoundError, StorageError
from marketflow.types import (
    EntityType,
    Job,
    MutationKind,
    Payment,
    Review,
    StateTransition,
    parse_datetime,
    record_from_dict,
    record_to_dict,
    utc_now,
)

from .base import CommitResult, Write, build_mutation, duplicate_error, unique_key

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    unique_key TEXT,
    data TEXT NOT NULL,
    deleted_at TEXT,
    PRIMARY KEY (entity_type, entity_id),
    UNIQUE (entity_type, unique_key)
);

CREATE TABLE IF NOT EXISTS transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor_id INTEGER,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transitions_entity ON transitions(entity_type, entity_id);
"""


class SQLiteEntityStore:
    """SQLite-backed :class:`~marketflow.storage.base.EntityStore`.

    Opens one connection per operation, so instances are safe to share
    between threads.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(SCHEMA)
        logger.debug(f"Initialized entity store at {self.db_path}")

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Yield a connection and close it afterwards."""
        conn = self._get_conn()
        try:
            yield conn
        finally:
            conn.close()

    @contextlib.contextmanager
    def _transaction(self):
        """Context manager for a write transaction.

        Takes the database write lock up front, commits on success, rolls
        back on any exception and closes the connection in all cases.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception as e:
                logger.debug(f"Transaction failed, rolling back: {e}")
                conn.execute("ROLLBACK")
                raise

    @staticmethod
    def _row_to_record(entity_type: EntityType, row: sqlite3.Row) -> Any:
        return record_from_dict(entity_type, json.loads(row["data"]))

    # === Reads ===

    def get(self, entity_type: EntityType, entity_id: int) -> Any:
        entity_type = EntityType(entity_type)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type.value, entity_id),
            ).fetchone()
        if row is None:
            raise EntityNotFoundError(entity_type.value, entity_id)
        return self._row_to_record(entity_type, row)

    def _query(self, entity_type: EntityType, where: str = "", params: tuple = ()) -> List[Any]:
        sql = "SELECT data FROM entities WHERE entity_type = ?"
        if where:
            sql = f"{sql} AND {where}"
        with self._connect() as conn:
            rows = conn.execute(f"{sql} ORDER BY entity_id", (entity_type.value, *params)).fetchall()
        return [self._row_to_record(entity_type, row) for row in rows]

    def find_payment_for_job(self, job_id: int) -> Optional[Payment]:
        payments = self._query(EntityType.PAYMENT, "json_extract(data, '$.job_id') = ?", (job_id,))
        return payments[0] if payments else None

    def find_review(self, job_id: int, reviewer_id: int) -> Optional[Review]:
        reviews = self._query(
            EntityType.REVIEW,
            "json_extract(data, '$.job_id') = ? AND json_extract(data, '$.reviewer_id') = ?",
            (job_id, reviewer_id),
        )
        return reviews[0] if reviews else None

    def list_reviews_for_user(self, reviewee_id: int) -> List[Review]:
        return self._query(EntityType.REVIEW, "json_extract(data, '$.reviewee_id') = ?", (reviewee_id,))

    def list_open_jobs(self) -> List[Job]:
        return self._query(
            EntityType.JOB,
            "json_extract(data, '$.status') = 'open' AND deleted_at IS NULL",
        )

    def list_transitions(self, entity_type: EntityType, entity_id: int) -> List[StateTransition]:
        entity_type = EntityType(entity_type)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM transitions WHERE entity_type = ? AND entity_id = ? ORDER BY id",
                (entity_type.value, entity_id),
            ).fetchall()
        return [
            StateTransition(
                id=row["id"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                actor_id=row["actor_id"],
                created_at=parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    # === Writes ===

    def commit(self, writes: List[Write]) -> CommitResult:
        try:
            with self._transaction() as conn:
                return self._apply(conn, writes)
        except sqlite3.IntegrityError as e:
            # Uniqueness is checked before each insert; this only fires if the
            # schema and the checks disagree.
            raise StorageError(f"Integrity error during commit: {e}") from e
        except sqlite3.OperationalError as e:
            raise StorageError(f"Commit failed: {e}") from e

    def _apply(self, conn: sqlite3.Connection, writes: List[Write]) -> CommitResult:
        result = CommitResult()
        for write in writes:
            entity_type = write.entity_type
            record = write.record
            key = unique_key(record)

            if key is not None:
                holder = conn.execute(
                    "SELECT entity_id FROM entities WHERE entity_type = ? AND unique_key = ?",
                    (entity_type.value, key),
                ).fetchone()
                if holder is not None and holder["entity_id"] != record.id:
                    raise duplicate_error(record)

            if write.kind == MutationKind.CREATED:
                stored = self._insert(conn, entity_type, record, key)
            else:
                stored = self._update(conn, entity_type, record, key, write.expected_version)

            if write.transition is not None:
                result.transitions.append(self._append_transition(conn, write.transition, stored.id))

            result.records.append(stored)
            result.mutations.append(build_mutation(write, stored))
            logger.debug(f"Stored {entity_type.value}/{stored.id} v{stored.version} ({write.kind.value})")
        return result

    def _insert(self, conn: sqlite3.Connection, entity_type: EntityType, record: Any, key: Optional[str]) -> Any:
        row = conn.execute(
            "SELECT COALESCE(MAX(entity_id), 0) + 1 AS next_id FROM entities WHERE entity_type = ?",
            (entity_type.value,),
        ).fetchone()
        data = record_to_dict(record)
        data["id"] = row["next_id"]
        data["version"] = 1
        conn.execute(
            """
            INSERT INTO entities (entity_type, entity_id, version, unique_key, data, deleted_at)
            VALUES (?, ?, 1, ?, ?, ?)
            """,
            (entity_type.value, data["id"], key, json.dumps(data), data.get("deleted_at")),
        )
        return record_from_dict(entity_type, data)

    def _update(
        self,
        conn: sqlite3.Connection,
        entity_type: EntityType,
        record: Any,
        key: Optional[str],
        expected_version: int,
    ) -> Any:
        data = record_to_dict(record)
        data["version"] = expected_version + 1
        cursor = conn.execute(
            """
            UPDATE entities SET
                version = version + 1,
                unique_key = ?,
                data = ?,
                deleted_at = ?
            WHERE entity_type = ? AND entity_id = ? AND version = ?
            """,
            (key, json.dumps(data), data.get("deleted_at"), entity_type.value, record.id, expected_version),
        )
        if cursor.rowcount == 0:
            current = conn.execute(
                "SELECT version FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type.value, record.id),
            ).fetchone()
            if current is None:
                raise EntityNotFoundError(entity_type.value, record.id)
            raise ConflictError(entity_type.value, record.id, expected_version, current["version"])
        return record_from_dict(entity_type, data)

    def _append_transition(
        self, conn: sqlite3.Connection, transition: StateTransition, stored_id: int
    ) -> StateTransition:
        entity_id = transition.entity_id if transition.entity_id is not None else stored_id
        created_at = transition.created_at or utc_now()
        cursor = conn.execute(
            """
            INSERT INTO transitions (entity_type, entity_id, from_status, to_status, actor_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                transition.entity_type,
                entity_id,
                transition.from_status,
                transition.to_status,
                transition.actor_id,
                created_at.isoformat(),
            ),
        )
        return StateTransition(
            id=cursor.lastrowid,
            entity_type=transition.entity_type,
            entity_id=entity_id,
            from_status=transition.from_status,
            to_status=transition.to_status,
            actor_id=transition.actor_id,
            created_at=created_at,
        )

    def close(self):
        """Connections are per-operation; nothing to release."""
        pass

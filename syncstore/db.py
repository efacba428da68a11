"""PostgreSQL implementation of the local store."""
import json
import threading
from contextlib import contextmanager
from datetime import datetime
from functools import partial
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
import psycopg2.errors
from psycopg2.extras import Json, RealDictCursor

from syncstore import settings
from syncstore.errors import DuplicateSyncItemError, RecordConflictError
from syncstore.logging_conf import logger
from syncstore.query import FilterOperator, QueryParams
from syncstore.queue.models import SyncOperation, SyncQueueItem, SyncStatus
from syncstore.store import LocalStore

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_records (
    model_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    data JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (model_type, record_id)
);

CREATE TABLE IF NOT EXISTS sync_queue_items (
    id BIGSERIAL PRIMARY KEY,
    model_type TEXT NOT NULL,
    model_id TEXT NOT NULL,
    temporary_client_id TEXT,
    id_negotiation_status TEXT NOT NULL DEFAULT 'complete',
    payload JSONB NOT NULL,
    operation TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    next_retry_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    idempotency_key TEXT UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending',
    headers JSONB,
    extra JSONB
);

CREATE UNIQUE INDEX IF NOT EXISTS sync_queue_items_pending_key
    ON sync_queue_items (model_type, model_id, operation)
    WHERE status = 'pending';

CREATE INDEX IF NOT EXISTS sync_queue_items_due
    ON sync_queue_items (status, next_retry_at, created_at);
"""

SYNC_ITEM_COLUMNS = """
    id, model_type, model_id, temporary_client_id, id_negotiation_status,
    payload, operation, attempt_count, last_error, next_retry_at,
    created_at, idempotency_key, status, headers, extra
"""

_dumps = partial(json.dumps, default=str)


def _json(value: Optional[Dict[str, Any]]) -> Optional[Json]:
    return Json(value, dumps=_dumps) if value is not None else None


class Database(LocalStore):
    """Database connection and operations for records and the sync queue."""

    def __init__(self, dsn: Optional[str] = None):
        super().__init__()
        self.dsn = dsn or settings.DATABASE_URL
        self._conn = None
        self._lock = threading.RLock()
        self._in_transaction = False

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self.dsn)
        return self._conn

    def close(self):
        """Close database connection."""
        with self._lock:
            if self._conn and not self._conn.closed:
                self._conn.close()
                self._conn = None

    @contextmanager
    def cursor(self):
        """Cursor that commits on exit unless an outer transaction owns the commit."""
        with self._lock:
            cur = self.conn.cursor(cursor_factory=RealDictCursor)
            try:
                yield cur
                if not self._in_transaction:
                    self.conn.commit()
            except Exception:
                if not self._in_transaction:
                    self.conn.rollback()
                raise
            finally:
                cur.close()

    @contextmanager
    def _transaction_scope(self, outermost: bool):
        with self._lock:
            if not outermost:
                yield
                return
            self._in_transaction = True
            try:
                yield
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise
            finally:
                self._in_transaction = False

    def init_schema(self) -> None:
        """Create tables and indexes if missing."""
        with self.cursor() as cur:
            cur.execute(SCHEMA)
        logger.info("Local store schema ready")

    # Records

    def get(self, model_type: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(
                "SELECT data FROM sync_records WHERE model_type = %s AND record_id = %s",
                (model_type, record_id)
            )
            row = cur.fetchone()
            return row["data"] if row else None

    def query(self, model_type: str, params: Optional[QueryParams] = None) -> List[Dict[str, Any]]:
        params = params or QueryParams()

        # Equality filters narrow the scan in SQL; the full query runs in Python
        containment = {
            f.field: f.value for f in params.filters
            if f.operator == FilterOperator.EQUALS and f.value is not None
        }
        with self.cursor() as cur:
            if containment:
                cur.execute(
                    "SELECT data FROM sync_records WHERE model_type = %s AND data @> %s",
                    (model_type, _json(containment))
                )
            else:
                cur.execute("SELECT data FROM sync_records WHERE model_type = %s", (model_type,))
            records = [row["data"] for row in cur.fetchall()]
        return params.apply(records)

    def upsert(self, model_type: str, record: Dict[str, Any]) -> None:
        record_id = record.get("id")
        if not record_id:
            raise ValueError(f"Cannot store {model_type} without an id")
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO sync_records (model_type, record_id, data, updated_at)
                VALUES (%s, %s, %s, NOW())
                ON CONFLICT (model_type, record_id)
                DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
            """, (model_type, record_id, _json(record)))
        self._record_changed(model_type, record_id)

    def delete(self, model_type: str, record_id: str) -> bool:
        with self.cursor() as cur:
            cur.execute(
                "DELETE FROM sync_records WHERE model_type = %s AND record_id = %s RETURNING record_id",
                (model_type, record_id)
            )
            existed = cur.fetchone() is not None
        if existed:
            self._record_changed(model_type, record_id)
        return existed

    def truncate(self, model_type: str) -> int:
        with self.cursor() as cur:
            cur.execute("DELETE FROM sync_records WHERE model_type = %s RETURNING record_id", (model_type,))
            removed = [row["record_id"] for row in cur.fetchall()]
        for record_id in removed:
            self._record_changed(model_type, record_id)
        if removed:
            logger.info(f"Truncated {len(removed)} {model_type} records")
        return len(removed)

    def replace_id(self, model_type: str, old_id: str, new_id: str) -> Optional[Dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute("SAVEPOINT record_rekey")
            try:
                cur.execute("""
                    UPDATE sync_records
                    SET record_id = %s,
                        data = jsonb_set(data, '{id}', to_jsonb(%s::text)),
                        updated_at = NOW()
                    WHERE model_type = %s AND record_id = %s
                    RETURNING data
                """, (new_id, new_id, model_type, old_id))
            except psycopg2.errors.UniqueViolation as e:
                cur.execute("ROLLBACK TO SAVEPOINT record_rekey")
                raise RecordConflictError(f"{model_type} {new_id} already exists locally") from e
            row = cur.fetchone()
            cur.execute("RELEASE SAVEPOINT record_rekey")
        if row is None:
            return None
        self._record_changed(model_type, old_id)
        self._record_changed(model_type, new_id)
        return row["data"]

    def update_foreign_keys(self, model_type: str, field: str, old_value: str, new_value: str) -> List[str]:
        with self.cursor() as cur:
            cur.execute("""
                UPDATE sync_records
                SET data = jsonb_set(data, %s, to_jsonb(%s::text)),
                    updated_at = NOW()
                WHERE model_type = %s AND data->>%s = %s
                RETURNING record_id
            """, ([field], new_value, model_type, field, old_value))
            changed = [row["record_id"] for row in cur.fetchall()]
        for record_id in changed:
            self._record_changed(model_type, record_id)
        return changed

    # Sync queue table

    def _row_to_item(self, row: Dict[str, Any]) -> SyncQueueItem:
        return SyncQueueItem(**dict(row))

    def insert_sync_item(self, item: SyncQueueItem) -> SyncQueueItem:
        with self.cursor() as cur:
            cur.execute("SAVEPOINT sync_item_write")
            try:
                cur.execute(f"""
                    INSERT INTO sync_queue_items (
                        model_type, model_id, temporary_client_id, id_negotiation_status,
                        payload, operation, attempt_count, last_error, next_retry_at,
                        created_at, idempotency_key, status, headers, extra
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {SYNC_ITEM_COLUMNS}
                """, (
                    item.model_type, item.model_id, item.temporary_client_id,
                    item.id_negotiation_status.value, _json(item.payload), item.operation.value,
                    item.attempt_count, item.last_error, item.next_retry_at, item.created_at,
                    item.idempotency_key, item.status.value, _json(item.headers), _json(item.extra)
                ))
            except psycopg2.errors.UniqueViolation as e:
                cur.execute("ROLLBACK TO SAVEPOINT sync_item_write")
                raise DuplicateSyncItemError(
                    f"Sync item already queued for {item.model_type}:{item.model_id} {item.operation.value}"
                ) from e
            row = cur.fetchone()
            cur.execute("RELEASE SAVEPOINT sync_item_write")
            return self._row_to_item(row)

    def update_sync_item(self, item: SyncQueueItem) -> None:
        with self.cursor() as cur:
            cur.execute("SAVEPOINT sync_item_write")
            try:
                cur.execute("""
                    UPDATE sync_queue_items
                    SET model_id = %s,
                        temporary_client_id = %s,
                        id_negotiation_status = %s,
                        payload = %s,
                        operation = %s,
                        attempt_count = %s,
                        last_error = %s,
                        next_retry_at = %s,
                        idempotency_key = %s,
                        status = %s,
                        headers = %s,
                        extra = %s
                    WHERE id = %s
                """, (
                    item.model_id, item.temporary_client_id, item.id_negotiation_status.value,
                    _json(item.payload), item.operation.value, item.attempt_count, item.last_error,
                    item.next_retry_at, item.idempotency_key, item.status.value,
                    _json(item.headers), _json(item.extra), item.id
                ))
            except psycopg2.errors.UniqueViolation as e:
                cur.execute("ROLLBACK TO SAVEPOINT sync_item_write")
                raise DuplicateSyncItemError(f"Sync item {item.id} conflicts with a pending row") from e
            cur.execute("RELEASE SAVEPOINT sync_item_write")

    def get_sync_item(self, item_id: int) -> Optional[SyncQueueItem]:
        with self.cursor() as cur:
            cur.execute(f"SELECT {SYNC_ITEM_COLUMNS} FROM sync_queue_items WHERE id = %s", (item_id,))
            row = cur.fetchone()
            return self._row_to_item(row) if row else None

    def find_pending_sync_item(self, model_type: str, model_id: str,
                               operation: SyncOperation) -> Optional[SyncQueueItem]:
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT {SYNC_ITEM_COLUMNS}
                FROM sync_queue_items
                WHERE status = 'pending' AND model_type = %s AND model_id = %s AND operation = %s
            """, (model_type, model_id, SyncOperation(operation).value))
            row = cur.fetchone()
            return self._row_to_item(row) if row else None

    def get_due_sync_items(self, now: datetime, include_deferred: bool = False) -> List[SyncQueueItem]:
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT {SYNC_ITEM_COLUMNS}
                FROM sync_queue_items
                WHERE status = 'pending'
                  AND (%s OR next_retry_at IS NULL OR next_retry_at <= %s)
                ORDER BY created_at ASC, id ASC
            """, (include_deferred, now))
            return [self._row_to_item(row) for row in cur.fetchall()]

    def get_sync_items(self, model_type: Optional[str] = None, model_id: Optional[str] = None,
                       status: Optional[SyncStatus] = None) -> List[SyncQueueItem]:
        clauses = []
        args: List[Any] = []
        if model_type is not None:
            clauses.append("model_type = %s")
            args.append(model_type)
        if model_id is not None:
            clauses.append("model_id = %s")
            args.append(model_id)
        if status is not None:
            clauses.append("status = %s")
            args.append(SyncStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self.cursor() as cur:
            cur.execute(
                f"SELECT {SYNC_ITEM_COLUMNS} FROM sync_queue_items {where} ORDER BY created_at ASC, id ASC",
                tuple(args)
            )
            return [self._row_to_item(row) for row in cur.fetchall()]

    def delete_sync_item(self, item_id: int) -> bool:
        with self.cursor() as cur:
            cur.execute("DELETE FROM sync_queue_items WHERE id = %s RETURNING id", (item_id,))
            return cur.fetchone() is not None

    def delete_sync_items(self, model_type: str, model_id: str,
                          operations: Optional[Iterable[SyncOperation]] = None) -> int:
        with self.cursor() as cur:
            if operations is None:
                cur.execute("""
                    DELETE FROM sync_queue_items
                    WHERE status = 'pending' AND model_type = %s AND model_id = %s
                    RETURNING id
                """, (model_type, model_id))
            else:
                cur.execute("""
                    DELETE FROM sync_queue_items
                    WHERE status = 'pending' AND model_type = %s AND model_id = %s
                      AND operation = ANY(%s)
                    RETURNING id
                """, (model_type, model_id, [SyncOperation(o).value for o in operations]))
            return len(cur.fetchall())

    def clear_sync_queue(self) -> int:
        with self.cursor() as cur:
            cur.execute("DELETE FROM sync_queue_items RETURNING id")
            count = len(cur.fetchall())
        if count:
            logger.warning(f"Cleared {count} sync queue items")
        return count

    def count_sync_items(self, status: Optional[SyncStatus] = SyncStatus.PENDING) -> int:
        with self.cursor() as cur:
            if status is None:
                cur.execute("SELECT COUNT(*) AS n FROM sync_queue_items")
            else:
                cur.execute("SELECT COUNT(*) AS n FROM sync_queue_items WHERE status = %s", (SyncStatus(status).value,))
            return cur.fetchone()["n"]

"""SQLite-backed TableStore.

Rows are stored as JSON documents in one ``records`` table, with the
natural key of each table materialized into ``unique_key`` so SQLite
enforces it. All access runs on a single worker thread, which serializes
writes and keeps the connection on the thread that created it.
"""
import asyncio
import concurrent.futures
import json
import re
import sqlite3
from typing import List, Optional

from smartassist.core.errors import ConflictError, PersistenceError
from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import ChangeKind
from smartassist.infrastructure.store import Row, TableStore, unique_key

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    tbl TEXT NOT NULL,
    id TEXT NOT NULL,
    unique_key TEXT,
    data TEXT NOT NULL,
    UNIQUE (tbl, id),
    UNIQUE (tbl, unique_key)
);
CREATE INDEX IF NOT EXISTS idx_records_tbl ON records (tbl);
"""

_FIELD_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def _field(name: str) -> str:
    if not _FIELD_RE.match(name):
        raise PersistenceError(f"Invalid column name: {name!r}")
    return f"json_extract(data, '$.{name}')"


class SQLiteTableStore(TableStore):
    """Durable store on a local SQLite file."""

    def __init__(self, database: str, channel=None):
        super().__init__(channel)
        self.database = database
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="sqlite_store"
        )
        self._conn: Optional[sqlite3.Connection] = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(self.database)
            conn.row_factory = sqlite3.Row
            conn.executescript(SCHEMA)
            conn.commit()
            self._conn = conn
            logger.info(f"SQLite store opened: {self.database}")
        return self._conn

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    @staticmethod
    def _where(table: str, filters: Row):
        clauses = ["tbl = ?"]
        params: list = [table]
        for key, value in filters.items():
            clauses.append(f"{_field(key)} IS ?")
            params.append(value)
        return " AND ".join(clauses), params

    # Blocking helpers, executed on the worker thread

    def _select_sync(self, table, filters, order_by, descending, limit) -> List[Row]:
        where, params = self._where(table, filters)
        direction = "DESC" if descending else "ASC"
        sql = f"SELECT data FROM records WHERE {where}"
        if order_by:
            sql += f" ORDER BY {_field(order_by)} {direction}, seq {direction}"
        else:
            sql += " ORDER BY seq ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        rows = self._connection().execute(sql, params).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def _insert_sync(self, table, row) -> Row:
        conn = self._connection()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO records (tbl, id, unique_key, data) VALUES (?, ?, ?, ?)",
                    (table, row["id"], unique_key(table, row), json.dumps(row))
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                f"Duplicate key violates unique constraint on {table}", detail=str(exc)
            ) from exc
        return row

    def _update_sync(self, table, filters, patch) -> List[Row]:
        conn = self._connection()
        where, params = self._where(table, filters)
        updated = []
        with conn:
            rows = conn.execute(f"SELECT seq, data FROM records WHERE {where}", params).fetchall()
            for record in rows:
                data = json.loads(record["data"])
                data.update(patch)
                conn.execute(
                    "UPDATE records SET data = ?, unique_key = ? WHERE seq = ?",
                    (json.dumps(data), unique_key(table, data), record["seq"])
                )
                updated.append(data)
        return updated

    def _upsert_sync(self, table, row, ignore_duplicates):
        conn = self._connection()
        key = unique_key(table, row)
        with conn:
            existing = conn.execute(
                "SELECT seq, data FROM records WHERE tbl = ? AND unique_key = ?",
                (table, key)
            ).fetchone()
            if existing is None:
                conn.execute(
                    "INSERT INTO records (tbl, id, unique_key, data) VALUES (?, ?, ?, ?)",
                    (table, row["id"], key, json.dumps(row))
                )
                return row, ChangeKind.INSERT
            data = json.loads(existing["data"])
            if ignore_duplicates:
                return data, None
            data.update({k: v for k, v in row.items() if k != "id"})
            conn.execute(
                "UPDATE records SET data = ? WHERE seq = ?",
                (json.dumps(data), existing["seq"])
            )
            return data, ChangeKind.UPDATE

    def _close_sync(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # TableStore implementation

    async def _select(self, table, filters, order_by, descending, limit):
        return await self._run(self._select_sync, table, filters, order_by, descending, limit)

    async def _insert(self, table, row):
        return await self._run(self._insert_sync, table, row)

    async def _update(self, table, filters, patch):
        return await self._run(self._update_sync, table, filters, patch)

    async def _upsert(self, table, row, ignore_duplicates):
        return await self._run(self._upsert_sync, table, row, ignore_duplicates)

    async def close(self) -> None:
        await self._run(self._close_sync)
        self._executor.shutdown(wait=True)
        logger.info(f"SQLite store closed: {self.database}")

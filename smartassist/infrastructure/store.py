"""Table-oriented persistence for the engine.

``TableStore`` is the contract the services talk to: select, insert,
update and upsert against named tables, with rows as plain dicts. Every
successful write publishes a ``ChangeEvent`` on the attached notification
channel, which is how the dashboard learns that something moved.

Values are normalized on the way in (datetimes become fixed-width UTC ISO
strings, enums become their values) so ordering by timestamp columns is a
plain string comparison in every backend.
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from smartassist.core.errors import ConflictError, NotFoundError, PersistenceError, SmartAssistError
from smartassist.core.logging import get_logger, LogTimer
from smartassist.domain.dashboard import ChangeEvent, ChangeKind, Table

logger = get_logger(__name__)

# Natural keys enforced by every backend; upserts must name one of these
UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    Table.PROFILES.value: ("user_id",),
    Table.TUTORIALS.value: ("tutorial_id",),
    Table.PROGRESS.value: ("student_id", "tutorial_id"),
}

Row = Dict[str, Any]


def encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [encode_value(v) for v in value]
    return value


def encode_row(row: Row) -> Row:
    return {key: encode_value(value) for key, value in row.items()}


def table_name(table: Any) -> str:
    return table.value if isinstance(table, Table) else str(table)


def unique_key(table: str, row: Row) -> Optional[str]:
    """Serialized natural key for ``row``, or None for tables without one."""
    columns = UNIQUE_KEYS.get(table)
    if not columns:
        return None
    return "|".join(str(row.get(col)) for col in columns)


class TableStore(ABC):
    """Async table store with change publication.

    Subclasses implement the underscore methods; the public wrappers encode
    values, translate backend failures into ``PersistenceError`` and
    publish change signals.
    """

    def __init__(self, channel=None):
        self.channel = channel

    def attach(self, channel) -> None:
        """Publish change signals for every subsequent write on ``channel``."""
        self.channel = channel

    async def select(
        self,
        table: Any,
        filters: Optional[Row] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        name = table_name(table)
        return await self._guard(
            "select", name,
            self._select(name, encode_row(filters or {}), order_by, descending, limit)
        )

    async def select_one(
        self,
        table: Any,
        filters: Row,
        required: bool = True,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Optional[Row]:
        """Return the single matching row.

        Raises:
            NotFoundError: When nothing matches and ``required`` is set.
        """
        rows = await self.select(table, filters, order_by=order_by, descending=descending, limit=1)
        if rows:
            return rows[0]
        if required:
            raise NotFoundError(
                f"No {table_name(table)} row matches",
                detail=", ".join(f"{k}={v}" for k, v in filters.items())
            )
        return None

    async def insert(self, table: Any, row: Row) -> Row:
        name = table_name(table)
        stored = await self._guard("insert", name, self._insert(name, encode_row(row)))
        await self._publish(name, ChangeKind.INSERT, [stored])
        return stored

    async def update(self, table: Any, filters: Row, patch: Row) -> List[Row]:
        """Apply ``patch`` to every matching row in one step.

        Returns the updated rows; an empty list means nothing matched.
        """
        name = table_name(table)
        updated = await self._guard(
            "update", name, self._update(name, encode_row(filters), encode_row(patch))
        )
        await self._publish(name, ChangeKind.UPDATE, updated)
        return updated

    async def upsert(
        self,
        table: Any,
        row: Row,
        on_conflict: Sequence[str],
        ignore_duplicates: bool = False,
    ) -> Row:
        """Insert ``row`` or merge it into the row sharing its natural key.

        With ``ignore_duplicates`` an existing row is returned untouched, which
        gives race-free insert-if-absent semantics.
        """
        name = table_name(table)
        if tuple(on_conflict) != UNIQUE_KEYS.get(name):
            raise PersistenceError(
                f"No unique constraint on {name}({', '.join(on_conflict)})"
            )
        stored, kind = await self._guard(
            "upsert", name, self._upsert(name, encode_row(row), ignore_duplicates)
        )
        if kind is not None:
            await self._publish(name, kind, [stored])
        return stored

    async def close(self) -> None:
        """Release backend resources."""

    async def _guard(self, operation: str, table: str, coro):
        with LogTimer(logger, f"store.{operation}:{table}"):
            try:
                return await coro
            except SmartAssistError:
                raise
            except Exception as exc:
                logger.error(
                    f"Store {operation} on {table} failed: {exc}",
                    extra={"table": table, "operation": operation},
                    exc_info=True
                )
                raise PersistenceError(f"Could not {operation} {table}", detail=str(exc)) from exc

    async def _publish(self, table: str, kind: ChangeKind, rows: Iterable[Row]) -> None:
        if self.channel is None:
            return
        for row in rows:
            event = ChangeEvent(
                table=table,
                event=kind,
                row_id=row.get("id"),
                student_id=row.get("student_id"),
            )
            try:
                await self.channel.publish(event)
            except Exception as exc:
                # The write already landed; listeners catch up on their next re-read
                logger.warning(
                    f"Change signal for {table} not delivered: {exc}",
                    extra={"table": table}
                )

    @abstractmethod
    async def _select(self, table: str, filters: Row, order_by: Optional[str],
                      descending: bool, limit: Optional[int]) -> List[Row]:
        ...

    @abstractmethod
    async def _insert(self, table: str, row: Row) -> Row:
        ...

    @abstractmethod
    async def _update(self, table: str, filters: Row, patch: Row) -> List[Row]:
        ...

    @abstractmethod
    async def _upsert(self, table: str, row: Row,
                      ignore_duplicates: bool) -> Tuple[Row, Optional[ChangeKind]]:
        ...


def _sort_key(order_by: str):
    def key(row: Row):
        value = row.get(order_by)
        return (value is None, value)
    return key


class MemoryTableStore(TableStore):
    """In-process store for development and tests.

    Rows live in insertion-ordered dicts keyed by id. A single lock makes
    each write atomic, including the existence check inside upsert.
    """

    def __init__(self, channel=None):
        super().__init__(channel)
        self._tables: Dict[str, Dict[str, Row]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    def load(self, table: Any, rows: Iterable[Row]) -> None:
        """Seed rows synchronously without publishing change signals."""
        name = table_name(table)
        for row in rows:
            encoded = encode_row(row)
            self._tables[name][encoded["id"]] = encoded

    def count(self, table: Any) -> int:
        return len(self._tables[table_name(table)])

    @staticmethod
    def _matches(row: Row, filters: Row) -> bool:
        return all(row.get(key) == value for key, value in filters.items())

    def _find_by_key(self, table: str, key: Optional[str]) -> Optional[Row]:
        if key is None:
            return None
        for row in self._tables[table].values():
            if unique_key(table, row) == key:
                return row
        return None

    async def _select(self, table, filters, order_by, descending, limit):
        rows = [copy.deepcopy(row) for row in self._tables[table].values()
                if self._matches(row, filters)]
        if order_by:
            rows.sort(key=_sort_key(order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def _insert(self, table, row):
        async with self._lock:
            if row.get("id") in self._tables[table]:
                raise ConflictError(f"Duplicate id in {table}", detail=row.get("id"))
            if self._find_by_key(table, unique_key(table, row)) is not None:
                raise ConflictError(
                    f"Duplicate key violates unique constraint on {table}",
                    detail=unique_key(table, row)
                )
            self._tables[table][row["id"]] = copy.deepcopy(row)
            return copy.deepcopy(row)

    async def _update(self, table, filters, patch):
        async with self._lock:
            updated = []
            for row in self._tables[table].values():
                if self._matches(row, filters):
                    row.update(copy.deepcopy(patch))
                    updated.append(copy.deepcopy(row))
            return updated

    async def _upsert(self, table, row, ignore_duplicates):
        async with self._lock:
            existing = self._find_by_key(table, unique_key(table, row))
            if existing is None:
                self._tables[table][row["id"]] = copy.deepcopy(row)
                return copy.deepcopy(row), ChangeKind.INSERT
            if ignore_duplicates:
                return copy.deepcopy(existing), None
            existing.update({k: copy.deepcopy(v) for k, v in row.items() if k != "id"})
            return copy.deepcopy(existing), ChangeKind.UPDATE

"""Scoped delivery of change signals to listeners.

A student listens to their own help requests and progress (self scope); a
teacher listens to every student's help requests, code, progress and
sessions (teacher scope). Delivery is at-least-once with no ordering across
tables and no replay, so listeners treat a signal as "re-read the
authoritative state" and fetch current state themselves when they
(re)subscribe.
"""
import asyncio
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import ChangeEvent, ChangeKind, Table

logger = get_logger(__name__)

Listener = Callable[[ChangeEvent], None]

TEACHER_TABLES = (Table.HELP_REQUESTS, Table.CODE_LOGS, Table.PROGRESS, Table.SESSIONS)
SELF_TABLES = (Table.HELP_REQUESTS, Table.PROGRESS)


class Scope:
    """One or more ``(table, equality filter)`` pairs.

    Filters match against the signal's fields (``student_id``, ``row_id``).
    A table-wide signal (no row, no student) matches every entry on its
    table, since any row may have changed.
    """

    def __init__(self, name: str, entries: Iterable[Tuple[Table, Optional[Dict[str, str]]]]):
        self.name = name
        self.entries: List[Tuple[str, Dict[str, str]]] = [
            (Table(table).value, dict(filters or {})) for table, filters in entries
        ]

    @property
    def tables(self) -> List[str]:
        return sorted({table for table, _ in self.entries})

    def matches(self, event: ChangeEvent) -> bool:
        for table, filters in self.entries:
            if event.table != table:
                continue
            if event.row_id is None and event.student_id is None:
                return True
            if all(getattr(event, key, None) == value for key, value in filters.items()):
                return True
        return False

    def __repr__(self) -> str:
        return f"Scope({self.name!r}, tables={self.tables})"


def self_scope(student_id: str) -> Scope:
    return Scope(f"student:{student_id}", [(table, {"student_id": student_id}) for table in SELF_TABLES])


def teacher_scope() -> Scope:
    return Scope("teacher", [(table, None) for table in TEACHER_TABLES])


class Subscription:
    """A live registration on the channel.

    ``close`` releases the channel registration immediately and is safe to
    call twice. Usable as a sync or async context manager.
    """

    def __init__(self, dispatcher: "ChangeDispatcher", scope: Scope, callback: Listener):
        self.dispatcher = dispatcher
        self.scope = scope
        self.callback = callback
        self.delivered = 0
        self._handle = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def _on_event(self, event: ChangeEvent) -> None:
        if self._handle is None or not self.scope.matches(event):
            return
        self.delivered += 1
        try:
            self.callback(event)
        except Exception as exc:
            logger.error(
                f"Listener on {self.scope.name} failed for {event.table}: {exc}",
                extra={"table": event.table},
                exc_info=True
            )

    def close(self) -> None:
        if self._handle is not None:
            self.dispatcher.channel.unsubscribe(self._handle)
            self._handle = None
            self.dispatcher._forget(self)
            logger.debug(f"Unsubscribed from {self.scope.name}")

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ChangeDispatcher:
    """Routes channel signals to scoped subscriptions."""

    def __init__(self, channel):
        self.channel = channel
        self._subscriptions: List[Subscription] = []

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, scope: Scope, callback: Listener) -> Subscription:
        subscription = Subscription(self, scope, callback)
        subscription._handle = self.channel.subscribe(scope.tables, subscription._on_event)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {scope!r}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()

    def subscribe_self(self, student_id: str, callback: Listener) -> Subscription:
        return self.subscribe(self_scope(student_id), callback)

    def subscribe_teacher(self, callback: Listener) -> Subscription:
        return self.subscribe(teacher_scope(), callback)

    def close_all(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()

    def _forget(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


class SignalBuffer:
    """Bounded queue between a subscription and one slow consumer.

    When the consumer falls ``maxsize`` signals behind, the backlog is
    replaced by one table-wide signal per table in scope. The consumer then
    re-reads everything once instead of the queue growing without limit.
    """

    def __init__(self, scope: Scope, maxsize: int = 100):
        if maxsize < len(scope.tables):
            raise ValueError("maxsize must hold one signal per table in scope")
        self.scope = scope
        self.overflows = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def __len__(self) -> int:
        return self._queue.qsize()

    def offer(self, event: ChangeEvent) -> None:
        try:
            self._queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            pass
        self.overflows += 1
        while not self._queue.empty():
            self._queue.get_nowait()
        for table in self.scope.tables:
            self._queue.put_nowait(ChangeEvent(table=table, event=ChangeKind.UPDATE))
        logger.warning(f"Signal backlog for {self.scope.name} collapsed to table-wide signals")

    async def get(self) -> ChangeEvent:
        return await self._queue.get()

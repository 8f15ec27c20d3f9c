"""In-process change-notification channel.

Listeners register for a set of tables and receive every ``ChangeEvent``
published on those tables. Callbacks are plain synchronous callables:
anything that needs to do I/O schedules its own task, so a slow listener
never holds up the writer that published the signal.
"""
import itertools
from typing import Callable, Dict, FrozenSet, Iterable, NamedTuple

from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import ChangeEvent
from smartassist.infrastructure.store import table_name

logger = get_logger(__name__)

Listener = Callable[[ChangeEvent], None]


class ChannelHandle(NamedTuple):
    """Opaque token returned by ``subscribe``."""
    id: int
    tables: FrozenSet[str]


class LocalNotificationChannel:
    """Fan-out of change signals within one process."""

    def __init__(self):
        self._listeners: Dict[int, tuple] = {}
        self._ids = itertools.count(1)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, tables: Iterable, callback: Listener) -> ChannelHandle:
        handle = ChannelHandle(next(self._ids), frozenset(table_name(t) for t in tables))
        self._listeners[handle.id] = (handle.tables, callback)
        logger.debug(f"Channel listener {handle.id} added for {sorted(handle.tables)}")
        return handle

    def unsubscribe(self, handle: ChannelHandle) -> None:
        """Remove a listener. Safe to call more than once."""
        if self._listeners.pop(handle.id, None) is not None:
            logger.debug(f"Channel listener {handle.id} removed")

    async def publish(self, event: ChangeEvent) -> None:
        self._deliver(event)

    def _deliver(self, event: ChangeEvent) -> None:
        # Snapshot so listeners may unsubscribe from inside a callback
        for listener_id, (tables, callback) in list(self._listeners.items()):
            if event.table not in tables:
                continue
            try:
                callback(event)
            except Exception as exc:
                logger.error(
                    f"Change listener {listener_id} failed on {event.table}: {exc}",
                    extra={"table": event.table},
                    exc_info=True
                )

    async def start(self) -> None:
        """Nothing to connect for the in-process channel."""

    async def close(self) -> None:
        self._listeners.clear()

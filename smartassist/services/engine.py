"""Wiring of stores, channels and services into one engine."""
from typing import Optional

from smartassist.core.config import Settings, settings as default_settings
from smartassist.core.logging import get_logger
from smartassist.infrastructure.notifications import LocalNotificationChannel
from smartassist.infrastructure.redis import RedisNotificationChannel
from smartassist.infrastructure.seed import seed_tutorials
from smartassist.infrastructure.sqlite_store import SQLiteTableStore
from smartassist.infrastructure.store import MemoryTableStore, TableStore
from smartassist.services.dashboard import TeacherDashboard
from smartassist.services.dispatcher import ChangeDispatcher
from smartassist.services.error_log import ErrorLogService
from smartassist.services.help_requests import HelpRequestChannel
from smartassist.services.profiles import ProfileService
from smartassist.services.progress import ProgressTracker
from smartassist.services.sessions import SessionManager
from smartassist.services.snapshots import CodeSnapshotRecorder
from smartassist.services.tutorials import TutorialCatalog

logger = get_logger(__name__)


class Engine:
    """Every service of the session & synchronization engine, sharing one store and channel."""

    def __init__(self, store: TableStore, channel, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.store = store
        self.channel = channel
        store.attach(channel)

        self.dispatcher = ChangeDispatcher(channel)
        self.tutorials = TutorialCatalog(store)
        self.profiles = ProfileService(store)
        self.progress = ProgressTracker(store, self.tutorials)
        self.snapshots = CodeSnapshotRecorder(store)
        self.sessions = SessionManager(store, exclusive=self.config.exclusive_sessions)
        self.help_requests = HelpRequestChannel(store)
        self.errors = ErrorLogService(store)
        self.dashboard = TeacherDashboard(
            self.profiles,
            self.tutorials,
            self.progress,
            self.snapshots,
            self.help_requests,
            self.dispatcher,
            debounce=self.config.dashboard_debounce_seconds,
            poll_interval=self.config.dashboard_poll_seconds,
        )

    async def start(self, seed: bool = True) -> None:
        await self.channel.start()
        if seed:
            await seed_tutorials(self.store)
        await self.dashboard.start()

    async def close(self) -> None:
        self.dashboard.stop()
        self.dispatcher.close_all()
        await self.channel.close()
        await self.store.close()


async def build_engine(config: Optional[Settings] = None) -> Engine:
    """Create an engine for the configured backends.

    Falls back to the in-process channel when Redis is configured but
    unreachable.
    """
    config = config or default_settings

    if config.store_backend == "sqlite":
        store: TableStore = SQLiteTableStore(config.database_path)
    else:
        store = MemoryTableStore()

    channel = LocalNotificationChannel()
    if config.notify_backend == "redis":
        redis_channel = RedisNotificationChannel(channel_prefix=config.redis_channel_prefix)
        try:
            await redis_channel.connect()
            channel = redis_channel
        except Exception as e:
            logger.warning(f"Redis unavailable, falling back to in-process notifications: {e}")

    logger.info(f"Engine built: store={config.store_backend}, notify={type(channel).__name__}")
    return Engine(store, channel, config)

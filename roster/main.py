"""Wedding roster client.

A RosterClient is one user's view of the shared roster: a local entity
store kept in sync with the storage backend, a mutation gateway for
optimistic writes, and derived statistics for presentation code. Several
clients may share one backend; each sees the others' writes through the
change feed.

Usage:
    async with open_roster() as client:
        guest = await client.gateway.create_guest(
            {"first_name": "Ann", "last_name": "Smith", "side": "bride"}
        )
        print(client.stats.total_guests)
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import AsyncIterator, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from roster.backend.base import FeedSubscription, StorageBackend
from roster.backend.sql import SqlStorageBackend
from roster.core.config import settings
from roster.core.database import create_db_and_tables
from roster.core.scheduler import shutdown_scheduler, start_scheduler
from roster.sync.aggregator import DerivedAggregator, RosterStats
from roster.sync.feed import ChangeFeedAdapter
from roster.sync.full_sync import full_sync
from roster.sync.gateway import MutationGateway
from roster.sync.pending import PendingLedger
from roster.sync.reconciler import Reconciler
from roster.sync.store import EntityStore, RosterSnapshot

logger = logging.getLogger(__name__)


def configure_logging():
    """Send log records to <log_dir>/latest.log."""
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "latest.log"

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        filename=str(log_file),
    )


@dataclass
class SyncStatus:
    """Outcome of the most recent full sync."""
    last_sync_time: datetime | None = None
    success: bool | None = None
    error: str | None = None


class RosterClient:
    """Wires store, ledger, reconciler, feed, gateway and aggregator together.

    Args:
        backend: Shared storage backend.
        name: Label used in log messages.
        background_feed: Consume the change feed in a background task. When
            False, queued events are only applied by process_feed().
        timeout: Backend request timeout in seconds; defaults to
            settings.backend_timeout_seconds.
    """

    def __init__(
        self,
        backend: StorageBackend,
        name: str = "client",
        background_feed: bool = True,
        timeout: float | None = None,
    ):
        self.name = name
        self.backend = backend
        self.store = EntityStore()
        self.ledger = PendingLedger()
        self.reconciler = Reconciler(self.store, self.ledger)
        self.feed = ChangeFeedAdapter(self.reconciler)
        self.gateway = MutationGateway(
            self.store, self.ledger, self.reconciler, self.feed, backend, timeout=timeout,
        )
        self.aggregator = DerivedAggregator(self.store)
        self._background_feed = background_feed
        self._subscription: FeedSubscription | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._status = SyncStatus()

    @property
    def connected(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def connect(self) -> None:
        """Subscribe to the backend change feed."""
        if not self.connected:
            self._subscription = self.backend.subscribe()
            logger.info(f"{self.name} subscribed to change feed")

    async def start(self) -> dict:
        """Subscribe, load the roster and start consuming the feed.

        The subscription is taken before the initial load so that nothing
        committed in between is missed. Returns the full sync statistics.
        """
        self.connect()
        stats = await self.resync()
        if self._background_feed:
            self.feed.start(self._subscription.queue)
        if settings.resync_interval_minutes > 0 and self._scheduler is None:
            self._scheduler = start_scheduler(self.resync, self.name)
        return stats

    async def resync(self) -> dict:
        """Run a full sync and record its outcome in sync_status()."""
        try:
            stats = await full_sync(self.backend, self.store, self.ledger, self.reconciler, self.feed)
        except Exception as e:
            self._status = SyncStatus(last_sync_time=datetime.now(UTC), success=False, error=str(e))
            logger.error(f"{self.name} full sync failed: {e}")
            raise
        self._status = SyncStatus(last_sync_time=datetime.now(UTC), success=True)
        return stats

    def process_feed(self) -> int:
        """Apply every change event queued so far. Returns how many were read."""
        if self._subscription is None:
            return 0
        return self.feed.drain(self._subscription.queue)

    async def close(self) -> None:
        if self._scheduler is not None:
            shutdown_scheduler(self._scheduler)
            self._scheduler = None
        await self.feed.stop()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self.aggregator.close()
        logger.info(f"{self.name} closed")

    # Read accessors

    def snapshot(self) -> RosterSnapshot:
        return self.store.snapshot()

    @property
    def stats(self) -> RosterStats:
        return self.aggregator.stats

    def subscribe_stats(self, callback: Callable[[RosterStats], None]) -> Callable[[], None]:
        return self.aggregator.subscribe(callback)

    def sync_status(self) -> dict:
        """
        Get current sync status.

        Returns dict with the time, success flag and error message of the
        most recent full sync, plus pending and buffered change counts.
        """
        return {
            **asdict(self._status),
            "connected": self.connected,
            "pending_writes": len(self.ledger.pending_refs()),
            "buffered_changes": self.reconciler.buffered_count(),
        }


@asynccontextmanager
async def open_roster(
    backend: StorageBackend | None = None,
    name: str = "client",
    background_feed: bool = True,
) -> AsyncIterator[RosterClient]:
    """Client startup and shutdown lifecycle.

    Without a backend, the SQL backend on settings.database_url is used and
    its tables are created if needed.
    """
    configure_logging()
    if backend is None:
        create_db_and_tables()
        backend = SqlStorageBackend()

    client = RosterClient(backend, name=name, background_feed=background_feed)
    logger.info(f"Starting roster client {name}")
    await client.start()
    try:
        yield client
    finally:
        await client.close()
        logger.info(f"Roster client {name} shut down")

"""Change feed adapter: backend notifications into reconciler input."""

import asyncio
import logging
from collections import deque

from roster.core.config import settings
from roster.models import Association, ChangeEvent, Group, Guest, Operation, Table
from roster.sync.reconciler import Reconciler, RemoteChange

logger = logging.getLogger(__name__)


def translate(event: ChangeEvent) -> RemoteChange:
    """Turn a row-level event into a store-shaped change.

    Raises KeyError or ValueError if the row cannot be translated.
    """
    if event.table is Table.GUEST_GROUPS:
        entity = Association.from_row(event.row)
    elif event.operation is Operation.DELETE:
        entity = None
    elif event.table is Table.GROUPS:
        entity = Group.from_row(event.row)
    else:
        entity = Guest.from_row(event.row)
    return RemoteChange(
        ref=event.ref,
        operation=event.operation,
        entity=entity,
        server_timestamp=event.server_timestamp,
    )


class ChangeFeedAdapter:
    """Consumes backend change events and forwards them to the reconciler.

    The adapter never touches the store itself. Events already seen (same
    table, row id and server timestamp) are ignored, so redelivery is
    harmless. Memory of seen events is bounded by dedupe_window.
    """

    def __init__(self, reconciler: Reconciler, dedupe_window: int | None = None):
        self._reconciler = reconciler
        self._window = dedupe_window or settings.feed_dedupe_window
        self._seen: set[tuple] = set()
        self._order: deque[tuple] = deque()
        self._task: asyncio.Task | None = None

    def handle(self, event: ChangeEvent) -> bool:
        """Process one event. Returns False if it was a duplicate or unreadable."""
        change = self._accept(event)
        if change is None:
            return False
        self._reconciler.apply_remote(change)
        return True

    def acknowledge(self, events: list[ChangeEvent]) -> None:
        """Apply the events a backend write returned for one of our own writes.

        They are marked seen so their later echo on the feed is a no-op.
        """
        for event in events:
            change = self._accept(event)
            if change is not None:
                self._reconciler.confirm(change)

    def drain(self, queue: asyncio.Queue) -> int:
        """Process every event currently queued, without waiting for more."""
        processed = 0
        while not queue.empty():
            self.handle(queue.get_nowait())
            processed += 1
        return processed

    async def consume(self, queue: asyncio.Queue) -> None:
        """Process events forever. Cancel the task to stop."""
        while True:
            event = await queue.get()
            self.handle(event)

    def start(self, queue: asyncio.Queue) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.consume(queue), name="roster-change-feed")
            logger.info("Change feed consumer started")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Change feed consumer stopped")

    def _accept(self, event: ChangeEvent) -> RemoteChange | None:
        try:
            key = event.dedupe_key
        except KeyError as e:
            logger.warning(f"Skipping {event.table.value} event without key column {e}")
            return None
        if key in self._seen:
            logger.debug(f"Skipping duplicate event {key}")
            return None
        self._remember(key)
        try:
            return translate(event)
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping unreadable {event.table.value} {event.operation.value} event: {e}")
            return None

    def _remember(self, key: tuple) -> None:
        self._seen.add(key)
        self._order.append(key)
        while len(self._order) > self._window:
            self._seen.discard(self._order.popleft())

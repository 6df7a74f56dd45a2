"""Storage backend contract.

The backend is the shared source of truth. Every write returns the change
events it committed, and the same events are published to every
subscription, including the writer's own, so a client sees its writes
twice: once as the response and once as the feed echo.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from roster.models import ChangeEvent, Table

Row = dict[str, Any]


@dataclass
class RosterRows:
    """Every row the backend holds, as of one server timestamp."""
    guests: list[Row] = field(default_factory=list)
    groups: list[Row] = field(default_factory=list)
    guest_groups: list[Row] = field(default_factory=list)
    as_of: datetime | None = None


class FeedSubscription:
    """One subscriber's queue of change events."""

    def __init__(self, hub: "FeedHub"):
        self._hub = hub
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self.closed = False

    def close(self) -> None:
        self.closed = True
        self._hub.discard(self)


class FeedHub:
    """Fans committed events out to all open subscriptions."""

    def __init__(self):
        self._subscriptions: list[FeedSubscription] = []

    def subscribe(self) -> FeedSubscription:
        subscription = FeedSubscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def discard(self, subscription: FeedSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, events: list[ChangeEvent]) -> None:
        for subscription in list(self._subscriptions):
            for event in events:
                subscription.queue.put_nowait(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


class StorageBackend(Protocol):
    """What the roster core needs from persistent storage.

    Write methods raise Conflict on uniqueness violations and NotFound when
    a referenced id does not exist. Any other exception is treated by the
    caller as a backend failure.
    """

    async def insert_guest(self, row: Row) -> list[ChangeEvent]: ...

    async def update_guest(self, guest_id: str, changes: Row) -> list[ChangeEvent]: ...

    async def delete_guest(self, guest_id: str) -> list[ChangeEvent]: ...

    async def create_group(
        self, group_row: Row, new_guest_rows: list[Row], guest_ids: list[str],
    ) -> list[ChangeEvent]: ...

    async def update_group(self, group_id: str, changes: Row) -> list[ChangeEvent]: ...

    async def delete_group(self, group_id: str) -> list[ChangeEvent]: ...

    async def link(self, guest_id: str, group_ids: list[str]) -> list[ChangeEvent]: ...

    async def unlink(self, guest_id: str, group_id: str) -> list[ChangeEvent]: ...

    async def group_name_taken(self, name: str, exclude_id: str | None = None) -> bool: ...

    async def missing_ids(self, table: Table, ids: list[str]) -> set[str]: ...

    async def fetch_all(self) -> RosterRows: ...

    def subscribe(self) -> FeedSubscription: ...

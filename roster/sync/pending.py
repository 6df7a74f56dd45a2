"""Pending-mutation ledger: per-entity FIFO serialization of local writes.

Each local write holds a pending marker on every entity it touches from
the moment it is applied optimistically until the backend answers. A second
write that targets an entity already pending waits in a FIFO queue for that
entity. The reconciler consults the ledger to decide whether an incoming
remote change must be buffered.

A superseding write (the user edits the same entity again before the first
request returned) does not wait: it takes the marker over, and the first
write is flagged superseded so that its outcome no longer touches local
state.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable
from uuid import uuid4

from roster.models import EntityRef
from roster.sync.store import Capture

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PendingMutation:
    """A local write between optimistic apply and backend answer.

    Attributes:
        operation: Gateway operation name, e.g. "update_guest".
        refs: Entities this write holds markers on.
        id: Unique id for logging.
        capture: Pre-mutation snapshot to restore on failure. Set once the
            write has acquired all its markers.
        superseded: True once a newer write took the markers over.
    """
    operation: str
    refs: frozenset[EntityRef]
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    capture: Capture | None = None
    superseded: bool = False


class PendingLedger:
    """Tracks which entities have a write in flight and who waits for them."""

    def __init__(self):
        self._owners: dict[EntityRef, PendingMutation] = {}
        self._waiters: dict[EntityRef, deque[tuple[asyncio.Future, PendingMutation]]] = {}

    def is_pending(self, ref: EntityRef) -> bool:
        return ref in self._owners

    def owner(self, ref: EntityRef) -> PendingMutation | None:
        return self._owners.get(ref)

    def pending_refs(self) -> set[EntityRef]:
        return set(self._owners)

    async def acquire(
        self, operation: str, refs: Iterable[EntityRef], supersede: bool = False,
    ) -> PendingMutation:
        """Take markers on all refs, waiting FIFO behind earlier writes.

        Refs are taken in sorted order so two writes sharing several
        entities cannot wait on each other.
        """
        mutation = PendingMutation(operation=operation, refs=frozenset(refs))
        taken: list[EntityRef] = []
        try:
            for ref in sorted(mutation.refs, key=str):
                await self._acquire_one(ref, mutation, supersede)
                taken.append(ref)
        except BaseException:
            self._release_refs(mutation, taken)
            raise
        return mutation

    def release(self, mutation: PendingMutation) -> set[EntityRef]:
        """Drop the mutation's markers, handing each to the next waiter.

        Returns the refs this mutation still owned. Markers taken over by a
        superseding write are left alone.
        """
        return self._release_refs(mutation, mutation.refs)

    async def _acquire_one(
        self, ref: EntityRef, mutation: PendingMutation, supersede: bool,
    ) -> None:
        owner = self._owners.get(ref)
        queue = self._waiters.get(ref)
        if owner is None and not queue:
            self._owners[ref] = mutation
            return

        if supersede and owner is not None and not queue and owner.operation == mutation.operation:
            owner.superseded = True
            self._owners[ref] = mutation
            logger.info(f"{mutation.operation} {mutation.id} supersedes {owner.id} on {ref}")
            return

        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(ref, deque()).append((future, mutation))
        logger.debug(f"{mutation.operation} {mutation.id} queued behind {ref}")
        try:
            await future
        except asyncio.CancelledError:
            queue = self._waiters.get(ref)
            if queue is not None:
                entry = (future, mutation)
                if entry in queue:
                    queue.remove(entry)
            if self._owners.get(ref) is mutation:
                self._release_refs(mutation, [ref])
            raise

    def _release_refs(self, mutation: PendingMutation, refs: Iterable[EntityRef]) -> set[EntityRef]:
        released = set()
        for ref in refs:
            if self._owners.get(ref) is not mutation:
                continue
            released.add(ref)
            del self._owners[ref]
            queue = self._waiters.get(ref)
            while queue:
                future, waiter = queue.popleft()
                if future.done():
                    continue
                self._owners[ref] = waiter
                future.set_result(None)
                break
            if not queue:
                self._waiters.pop(ref, None)
        return released

"""Reconciliation of remote changes with local optimistic state.

Policy is last-write-wins on the server timestamp, applied per entity and
per whole row: a remote row that is at least as new as the last one applied
locally replaces the local entity in full. No field-level merge is
attempted.

Rules, in order:
    1. While a local write is pending on the entity, remote changes for it
       are buffered and replayed once the write is confirmed or rolled back.
       This keeps the echo of our own write from overtaking its
       confirmation.
    2. A remote delete of a guest or group always wins and leaves a
       tombstone; later inserts or updates for that id are ignored.
    3. Otherwise a change older than the last applied timestamp is dropped.
       Equal timestamps go to the remote change.

Association ids are derived from the (guest, group) pair and are reused
when a guest rejoins a group, so association deletes are ordered by
timestamp like any other change instead of leaving tombstones.

The feed is unordered across tables, so an association can arrive before
its guest or group. Such changes are parked under the missing endpoint and
replayed when it shows up, or dropped if it is deleted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from roster.core.errors import Conflict
from roster.models import Association, EntityKind, EntityRef, Group, Guest, Operation
from roster.sync.pending import PendingLedger
from roster.sync.store import Capture, EntityStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteChange:
    """A backend-committed change translated into store shape.

    entity is None for guest and group deletes, whose rows may carry
    nothing but the id.
    """
    ref: EntityRef
    operation: Operation
    entity: Guest | Group | Association | None
    server_timestamp: datetime


class Reconciler:
    """Applies remote and confirmed changes to the entity store."""

    def __init__(self, store: EntityStore, ledger: PendingLedger):
        self._store = store
        self._ledger = ledger
        self._last_applied: dict[EntityRef, datetime] = {}
        self._tombstones: set[EntityRef] = set()
        self._buffered: dict[EntityRef, list[RemoteChange]] = {}
        self._parked: dict[EntityRef, list[RemoteChange]] = {}
        self._deferred: list[RemoteChange] = []

    def last_applied(self, ref: EntityRef) -> datetime | None:
        return self._last_applied.get(ref)

    def is_tombstoned(self, ref: EntityRef) -> bool:
        return ref in self._tombstones

    def buffered_count(self) -> int:
        return sum(len(changes) for changes in self._buffered.values())

    def apply_remote(self, change: RemoteChange) -> None:
        """Entry point for changes pushed by the feed."""
        if self._ledger.is_pending(change.ref):
            logger.debug(f"Buffering {change.operation.value} for pending {change.ref}")
            self._buffered.setdefault(change.ref, []).append(change)
            return
        self._evaluate(change)
        self._retry_deferred()

    def confirm(self, change: RemoteChange) -> None:
        """Apply a change the backend confirmed for one of our own writes.

        The caller still holds the pending marker, so buffering is skipped.
        """
        self._evaluate(change)

    def resolve(self, refs: Iterable[EntityRef]) -> None:
        """Replay whatever waited on refs now that their local write resolved."""
        for ref in refs:
            for change in self._buffered.pop(ref, []):
                self._evaluate(change)
            if self._store.exists(ref):
                self._replay_parked(ref)
        self._retry_deferred()

    def _evaluate(self, change: RemoteChange) -> None:
        ref = change.ref
        if change.operation is Operation.DELETE:
            self._apply_delete(change)
            return

        if ref in self._tombstones:
            logger.debug(f"Ignoring {change.operation.value} for deleted {ref}")
            return
        last = self._last_applied.get(ref)
        if last is not None and change.server_timestamp < last:
            logger.debug(f"Dropping stale {change.operation.value} for {ref}")
            return

        if ref.kind is EntityKind.ASSOCIATION:
            self._apply_link(change)
            return

        try:
            self._store.upsert(change.entity)
        except Conflict:
            logger.warning(f"Deferring {ref}: name '{change.entity.name}' is taken locally")
            self._deferred.append(change)
            return
        self.mark_applied(ref, change.server_timestamp)
        self._replay_parked(ref)

    def _apply_delete(self, change: RemoteChange) -> None:
        ref = change.ref
        last = self._last_applied.get(ref)
        if ref.kind is EntityKind.ASSOCIATION:
            if last is not None and change.server_timestamp < last:
                logger.debug(f"Dropping stale delete for {ref}")
                return
            self._forget_parked(ref)
            pair = change.entity
            if self._store.has_association(pair.guest_id, pair.group_id):
                self._store.unlink_association(pair.guest_id, pair.group_id)
            self.mark_applied(ref, change.server_timestamp)
            return

        self._tombstones.add(ref)
        self.mark_applied(ref, change.server_timestamp)
        dropped = self._parked.pop(ref, [])
        if dropped:
            logger.debug(f"Dropped {len(dropped)} parked associations waiting on deleted {ref}")
        if self._store.exists(ref):
            removed = self._store.remove_cascading(ref)
            logger.info(f"Removed {ref} and {len(removed)} associations after remote delete")

    def _apply_link(self, change: RemoteChange) -> None:
        pair = change.entity
        missing = [endpoint for endpoint in pair.endpoints if not self._store.exists(endpoint)]
        if any(endpoint in self._tombstones for endpoint in missing):
            logger.debug(f"Dropping {change.ref}: an endpoint was deleted")
            return
        if missing:
            # Park under one missing endpoint; the replay re-checks the other.
            self._parked.setdefault(missing[0], []).append(change)
            return
        self._store.link_association(pair.guest_id, pair.group_id)
        self.mark_applied(change.ref, change.server_timestamp)

    def _replay_parked(self, ref: EntityRef) -> None:
        for change in self._parked.pop(ref, []):
            self._evaluate(change)

    def _forget_parked(self, ref: EntityRef) -> None:
        for endpoint, changes in list(self._parked.items()):
            remaining = [change for change in changes if change.ref != ref]
            if remaining:
                self._parked[endpoint] = remaining
            else:
                del self._parked[endpoint]

    def _retry_deferred(self) -> None:
        deferred, self._deferred = self._deferred, []
        for change in deferred:
            if self._ledger.is_pending(change.ref):
                self._buffered.setdefault(change.ref, []).append(change)
            else:
                self._evaluate(change)
        if self._deferred:
            self._apply_deferred_together()

    def _apply_deferred_together(self) -> None:
        """Apply deferred groups that only clash with each other.

        Groups that traded names remotely each wait on a name the other one
        still holds locally, so neither can be applied alone.
        """
        latest: dict[EntityRef, RemoteChange] = {}
        for change in self._deferred:
            if change.ref in self._tombstones:
                continue
            last = self._last_applied.get(change.ref)
            if last is not None and change.server_timestamp < last:
                continue
            current = latest.get(change.ref)
            if current is None or change.server_timestamp >= current.server_timestamp:
                latest[change.ref] = change

        while latest:
            names = {group_id: group.name.strip() for group_id, group in self._store.snapshot().groups.items()}
            names.update({ref.id: change.entity.name.strip() for ref, change in latest.items()})
            owners: dict[str, list[str]] = {}
            for group_id, name in names.items():
                owners.setdefault(name, []).append(group_id)
            blocked = [ref for ref, change in latest.items() if len(owners[change.entity.name.strip()]) > 1]
            if not blocked:
                break
            for ref in blocked:
                del latest[ref]
        if not latest:
            return

        self._store.replace_groups(change.entity for change in latest.values())
        self._deferred = [change for change in self._deferred if change.ref not in latest]
        logger.info(f"Applied {len(latest)} deferred groups together")
        for ref, change in latest.items():
            self.mark_applied(ref, change.server_timestamp)
            self._replay_parked(ref)

    def hold_restored(self, groups: Iterable[Group], capture: Capture) -> None:
        """Bring back rolled-back groups once their names are free again.

        Each group waits with the deferred remote changes, stamped with the
        last timestamp applied for it, so any newer change for the group
        wins over the restore. Captured memberships of a group that is
        missing now wait for it like a parked association.
        """
        for group in groups:
            stamp = self._last_applied.get(group.ref, group.updated_at)
            self._deferred.append(RemoteChange(group.ref, Operation.INSERT, group, stamp))
            if self._store.exists(group.ref):
                continue
            for pair in capture.associations:
                if pair.group_id == group.id:
                    pair_stamp = self._last_applied.get(pair.ref, stamp)
                    self._parked.setdefault(group.ref, []).append(
                        RemoteChange(pair.ref, Operation.INSERT, pair, pair_stamp)
                    )

    def mark_applied(self, ref: EntityRef, timestamp: datetime) -> None:
        """Record timestamp as last applied for ref unless a newer one is known."""
        last = self._last_applied.get(ref)
        if last is None or timestamp > last:
            self._last_applied[ref] = timestamp

"""Initial load of the roster from the storage backend."""

import logging

from roster.backend.base import StorageBackend
from roster.models import ChangeEvent, EntityRef, Operation, Table
from roster.sync.feed import ChangeFeedAdapter
from roster.sync.pending import PendingLedger
from roster.sync.reconciler import Reconciler
from roster.sync.store import EntityStore

logger = logging.getLogger(__name__)


async def full_sync(
    backend: StorageBackend,
    store: EntityStore,
    ledger: PendingLedger,
    reconciler: Reconciler,
    feed: ChangeFeedAdapter,
) -> dict:
    """
    Load every row from the backend and reconcile it into the store.

    Rows go through the change feed adapter like any other remote change, so
    pending local writes, last-write-wins and feed deduplication all apply.
    Local entities the backend no longer has are removed, unless a local
    write on them is still pending or a newer change was applied since the
    rows were read.

    Returns dict with sync statistics.
    """
    rows = await backend.fetch_all()
    stats = {"created": 0, "updated": 0, "deleted": 0}

    events = [
        ChangeEvent(table=Table.GROUPS, operation=Operation.INSERT, row=row, server_timestamp=row["updated_at"])
        for row in rows.groups
    ]
    events += [
        ChangeEvent(table=Table.GUESTS, operation=Operation.INSERT, row=row, server_timestamp=row["updated_at"])
        for row in rows.guests
    ]
    events += [
        ChangeEvent(table=Table.GUEST_GROUPS, operation=Operation.INSERT, row=row, server_timestamp=row["created_at"])
        for row in rows.guest_groups
    ]

    remote_refs: set[EntityRef] = set()
    for event in events:
        ref = event.ref
        remote_refs.add(ref)
        existed = store.exists(ref)
        version = store.version
        feed.handle(event)
        if store.version != version:
            stats["updated" if existed else "created"] += 1

    # Orphans: present locally, gone from the backend
    snapshot = store.snapshot()
    orphans = [
        ChangeEvent(table=Table.GUEST_GROUPS, operation=Operation.DELETE, row=pair.model_dump(), server_timestamp=rows.as_of)
        for pair in snapshot.associations
    ]
    orphans += [
        ChangeEvent(table=Table.GUESTS, operation=Operation.DELETE, row={"id": guest_id}, server_timestamp=rows.as_of)
        for guest_id in snapshot.guests
    ]
    orphans += [
        ChangeEvent(table=Table.GROUPS, operation=Operation.DELETE, row={"id": group_id}, server_timestamp=rows.as_of)
        for group_id in snapshot.groups
    ]
    for event in orphans:
        ref = event.ref
        if ref in remote_refs or ledger.is_pending(ref) or not store.exists(ref):
            continue
        last = reconciler.last_applied(ref)
        if last is not None and last > rows.as_of:
            continue
        logger.debug(f"Removing {ref}: no longer in backend")
        if feed.handle(event):
            stats["deleted"] += 1

    logger.info(
        f"Full sync complete: {stats['created']} created, "
        f"{stats['updated']} updated, {stats['deleted']} deleted"
    )
    return stats

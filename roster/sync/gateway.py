"""Mutation gateway: the only way presentation code changes the roster.

Every operation follows the same steps:

    1. Validate the request. Invalid input raises ValidationError and the
       store is never touched.
    2. Take pending markers on every entity the write touches (waiting FIFO
       behind earlier writes to the same entities), capture their current
       state, and apply the change to the store optimistically.
    3. Send the write to the storage backend, bounded by
       backend_timeout_seconds.
    4. On success, apply the rows the backend committed (which carry the
       server timestamps). On any failure, restore the captured state and
       re-raise: Conflict, NotFound and ValidationError as raised by the
       backend, everything else as BackendFailure.

Failed operations are never retried here; a retry could overtake another
write to the same entity.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Mapping, TypeVar
from uuid import uuid4

import pydantic

from roster.backend.base import StorageBackend
from roster.core.config import settings
from roster.core.errors import BackendFailure, Conflict, NotFound, RosterError, ValidationError
from roster.models import (
    Association,
    ChangeEvent,
    Group,
    GroupCreate,
    GroupUpdate,
    Guest,
    GuestCreate,
    GuestUpdate,
    MembershipChange,
    Table,
    group_ref,
    guest_ref,
)
from roster.sync.feed import ChangeFeedAdapter
from roster.sync.pending import PendingLedger, PendingMutation
from roster.sync.reconciler import Reconciler
from roster.sync.store import EntityStore

logger = logging.getLogger(__name__)

RequestModel = TypeVar("RequestModel", bound=pydantic.BaseModel)


def _new_id() -> str:
    return str(uuid4())


def _validate(model: type[RequestModel], data: RequestModel | Mapping[str, Any]) -> RequestModel:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError.from_pydantic(e) from e


def _committed_row(events: list[ChangeEvent], table: Table, row_id: str) -> dict | None:
    for event in events:
        if event.table is table and event.row.get("id") == row_id:
            return event.row
    return None


class MutationGateway:
    """Optimistic writes with rollback, serialized per entity."""

    def __init__(
        self,
        store: EntityStore,
        ledger: PendingLedger,
        reconciler: Reconciler,
        feed: ChangeFeedAdapter,
        backend: StorageBackend,
        timeout: float | None = None,
    ):
        self._store = store
        self._ledger = ledger
        self._reconciler = reconciler
        self._feed = feed
        self._backend = backend
        self._timeout = timeout if timeout is not None else settings.backend_timeout_seconds

    # Guests

    async def create_guest(self, request: GuestCreate | Mapping[str, Any]) -> Guest:
        request = _validate(GuestCreate, request)
        guest = request.to_guest(_new_id())

        events = await self._mutate(
            "create_guest",
            {"guest_ids": [guest.id]},
            apply=lambda: self._store.upsert_guest(guest),
            write=lambda: self._backend.insert_guest(guest.to_row()),
        )
        row = _committed_row(events, Table.GUESTS, guest.id)
        return Guest.from_row(row) if row else guest

    async def update_guest(
        self,
        guest_id: str,
        changes: GuestUpdate | Mapping[str, Any],
        supersede: bool = False,
    ) -> Guest:
        """Apply a partial update.

        With supersede=True an update still in flight for the same guest is
        discarded instead of waited for; rollback then returns to the state
        that update produced.
        """
        update = _validate(GuestUpdate, changes)
        self._store.get_guest(guest_id)

        def apply():
            current = self._store.get_guest(guest_id)
            self._store.upsert_guest(current.apply(update))

        events = await self._mutate(
            "update_guest",
            {"guest_ids": [guest_id]},
            apply=apply,
            write=lambda: self._backend.update_guest(guest_id, update.to_row_changes()),
            supersede=supersede,
        )
        row = _committed_row(events, Table.GUESTS, guest_id)
        return Guest.from_row(row) if row else self._store.get_guest(guest_id)

    async def delete_guest(self, guest_id: str) -> None:
        """Delete a guest and all of its group memberships."""
        self._store.get_guest(guest_id)
        await self._mutate(
            "delete_guest",
            {"guest_ids": [guest_id]},
            apply=lambda: self._store.remove_cascading(guest_ref(guest_id)),
            write=lambda: self._backend.delete_guest(guest_id),
        )

    # Groups

    async def create_group(self, request: GroupCreate | Mapping[str, Any]) -> Group:
        """Create a group, optionally with existing and new members, as one unit.

        Either the group, every new guest and every membership is created,
        or nothing is.
        """
        request = _validate(GroupCreate, request)
        group = Group(id=_new_id(), name=request.name, type=request.type)
        new_guests = [guest.to_guest(_new_id()) for guest in request.new_guests]
        member_ids = list(request.guest_ids) + [guest.id for guest in new_guests]
        pairs = [Association(guest_id=member_id, group_id=group.id) for member_id in member_ids]

        def apply():
            for guest_id in request.guest_ids:
                self._store.get_guest(guest_id)
            self._store.upsert_group(group)
            for guest in new_guests:
                self._store.upsert_guest(guest)
            for pair in pairs:
                self._store.link_association(pair.guest_id, pair.group_id)

        async def write():
            if await self._backend.group_name_taken(group.name):
                raise Conflict(f"A group named '{group.name}' already exists")
            missing = await self._backend.missing_ids(Table.GUESTS, list(request.guest_ids))
            if missing:
                raise NotFound("Guest", sorted(missing)[0])
            return await self._backend.create_group(
                group.to_row(), [guest.to_row() for guest in new_guests], list(request.guest_ids),
            )

        events = await self._mutate(
            "create_group",
            {"group_ids": [group.id], "guest_ids": [guest.id for guest in new_guests], "pairs": pairs},
            apply=apply,
            write=write,
        )
        row = _committed_row(events, Table.GROUPS, group.id)
        return Group.from_row(row) if row else group

    async def update_group(
        self,
        group_id: str,
        changes: GroupUpdate | Mapping[str, Any],
        supersede: bool = False,
    ) -> Group:
        update = _validate(GroupUpdate, changes)
        self._store.get_group(group_id)

        def apply():
            current = self._store.get_group(group_id)
            self._store.upsert_group(current.apply(update))

        async def write():
            if update.name is not None and await self._backend.group_name_taken(update.name, group_id):
                raise Conflict(f"A group named '{update.name}' already exists")
            return await self._backend.update_group(group_id, update.to_row_changes())

        events = await self._mutate(
            "update_group",
            {"group_ids": [group_id]},
            apply=apply,
            write=write,
            supersede=supersede,
        )
        row = _committed_row(events, Table.GROUPS, group_id)
        return Group.from_row(row) if row else self._store.get_group(group_id)

    async def delete_group(self, group_id: str) -> None:
        """Delete a group and its memberships. Member guests are kept."""
        self._store.get_group(group_id)
        await self._mutate(
            "delete_group",
            {"group_ids": [group_id]},
            apply=lambda: self._store.remove_cascading(group_ref(group_id)),
            write=lambda: self._backend.delete_group(group_id),
        )

    # Memberships

    async def add_guest_to_groups(self, guest_id: str, group_ids: Iterable[str]) -> list[Association]:
        """Link a guest to groups. Returns the memberships that were new."""
        request = _validate(MembershipChange, {"guest_id": guest_id, "group_ids": list(group_ids)})
        self._store.get_guest(request.guest_id)
        for group_id in request.group_ids:
            self._store.get_group(group_id)
        pairs = [
            Association(guest_id=request.guest_id, group_id=group_id)
            for group_id in request.group_ids
            if not self._store.has_association(request.guest_id, group_id)
        ]
        if not pairs:
            return []

        def apply():
            for pair in pairs:
                self._store.link_association(pair.guest_id, pair.group_id)

        async def write():
            new_group_ids = [pair.group_id for pair in pairs]
            if await self._backend.missing_ids(Table.GUESTS, [request.guest_id]):
                raise NotFound("Guest", request.guest_id)
            missing = await self._backend.missing_ids(Table.GROUPS, new_group_ids)
            if missing:
                raise NotFound("Group", sorted(missing)[0])
            return await self._backend.link(request.guest_id, new_group_ids)

        await self._mutate("add_guest_to_groups", {"pairs": pairs}, apply=apply, write=write)
        return pairs

    async def remove_guest_from_group(self, guest_id: str, group_id: str) -> None:
        """Unlink a guest from a group. A guest left with no groups is a solo guest."""
        pair = Association(guest_id=guest_id, group_id=group_id)
        if not self._store.has_association(guest_id, group_id):
            self._store.get_guest(guest_id)
            self._store.get_group(group_id)
            raise NotFound("Association", pair.ref.id)

        await self._mutate(
            "remove_guest_from_group",
            {"pairs": [pair]},
            apply=lambda: self._store.unlink_association(guest_id, group_id),
            write=lambda: self._backend.unlink(guest_id, group_id),
        )

    # Optimistic apply and rollback

    async def _mutate(
        self,
        operation: str,
        scope: dict[str, Any],
        apply: Callable[[], Any],
        write: Callable[[], Awaitable[list[ChangeEvent]]],
        supersede: bool = False,
    ) -> list[ChangeEvent]:
        refs = self._store.capture(**scope).refs
        mutation = await self._ledger.acquire(operation, refs, supersede=supersede)
        try:
            # Capture again: the store may have moved on while we waited
            mutation.capture = self._store.capture(**scope)
            try:
                apply()
            except RosterError:
                self._store.restore(mutation.capture)
                raise

            try:
                events = await asyncio.wait_for(write(), timeout=self._timeout)
            except RosterError as e:
                self._rollback(mutation, e)
                raise
            except asyncio.CancelledError:
                self._rollback(mutation, "cancelled")
                raise
            except TimeoutError as e:
                self._rollback(mutation, "timeout")
                raise BackendFailure(f"no answer within {self._timeout}s", operation) from e
            except Exception as e:
                self._rollback(mutation, e)
                raise BackendFailure(str(e), operation) from e

            if mutation.superseded:
                # A newer write owns the entity now; treat our rows like any
                # remote change so last-write-wins orders them.
                for event in events:
                    self._feed.handle(event)
            else:
                self._feed.acknowledge(events)
            logger.debug(f"{operation} {mutation.id} confirmed with {len(events)} rows")
            return events
        finally:
            released = self._ledger.release(mutation)
            self._reconciler.resolve(released)

    def _rollback(self, mutation: PendingMutation, reason: Any) -> None:
        if mutation.superseded:
            logger.info(f"{mutation.operation} {mutation.id} failed after being superseded: {reason}")
            return
        held = self._store.restore(mutation.capture)
        if held:
            self._reconciler.hold_restored(held, mutation.capture)
        logger.warning(f"Rolled back {mutation.operation} {mutation.id}: {reason}")

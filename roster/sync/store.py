"""In-memory entity store for the locally known roster.

The store holds guests, groups and guest/group associations keyed by id and
is the only shared mutable state inside a client. Everything else (the
mutation gateway, the reconciler, the aggregator) goes through the methods
below, so that the invariants are checked and the version counter moves on
every change.

Invariants:
    - An association exists only while both its guest and its group exist.
    - Group names are unique after trimming surrounding whitespace.
    - A failed operation leaves the store exactly as it was.
    - version increases by one on every successful mutation and never
      otherwise.

All methods are synchronous. Within one asyncio loop nothing else can run
between a check and the mutation that follows it, so no locking is needed.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from roster.core.errors import Conflict, NotFound
from roster.models import Association, EntityKind, EntityRef, Group, Guest

logger = logging.getLogger(__name__)

StoreListener = Callable[[int], None]


@dataclass(frozen=True)
class RosterSnapshot:
    """Read-only copy of the store contents.

    Two snapshots compare equal when their contents are equal, whatever
    their versions.
    """
    guests: dict[str, Guest]
    groups: dict[str, Group]
    associations: frozenset[Association]
    version: int = field(default=0, compare=False)

    def members_of(self, group_id: str) -> set[str]:
        return {a.guest_id for a in self.associations if a.group_id == group_id}

    def groups_of(self, guest_id: str) -> set[str]:
        return {a.group_id for a in self.associations if a.guest_id == guest_id}


@dataclass(frozen=True)
class Capture:
    """Pre-mutation state of the entities an operation may touch.

    guests and groups map each captured id to its value, or None when the
    entity did not exist. associations is the set of pairs that existed
    among pair_scope; pairs outside pair_scope are never touched on restore.
    """
    guests: dict[str, Guest | None]
    groups: dict[str, Group | None]
    pair_scope: frozenset[Association]
    associations: frozenset[Association]

    @property
    def refs(self) -> set[EntityRef]:
        refs = {EntityRef(EntityKind.GUEST, guest_id) for guest_id in self.guests}
        refs |= {EntityRef(EntityKind.GROUP, group_id) for group_id in self.groups}
        refs |= {pair.ref for pair in self.pair_scope}
        return refs


class EntityStore:
    """Normalized guests, groups and associations with invariant enforcement."""

    def __init__(self):
        self._guests: dict[str, Guest] = {}
        self._groups: dict[str, Group] = {}
        self._associations: set[Association] = set()
        self._version = 0
        self._listeners: list[StoreListener] = []

    @property
    def version(self) -> int:
        return self._version

    # Reads

    def get_guest(self, guest_id: str) -> Guest:
        try:
            return self._guests[guest_id]
        except KeyError:
            raise NotFound("Guest", guest_id) from None

    def get_group(self, group_id: str) -> Group:
        try:
            return self._groups[group_id]
        except KeyError:
            raise NotFound("Group", group_id) from None

    def get(self, ref: EntityRef) -> Guest | Group | Association:
        if ref.kind is EntityKind.GUEST:
            return self.get_guest(ref.id)
        if ref.kind is EntityKind.GROUP:
            return self.get_group(ref.id)
        for pair in self._associations:
            if pair.ref == ref:
                return pair
        raise NotFound("Association", ref.id)

    def exists(self, ref: EntityRef) -> bool:
        try:
            self.get(ref)
        except NotFound:
            return False
        return True

    def has_association(self, guest_id: str, group_id: str) -> bool:
        return Association(guest_id=guest_id, group_id=group_id) in self._associations

    def groups_of_guest(self, guest_id: str) -> list[Group]:
        self.get_guest(guest_id)
        return [self._groups[a.group_id] for a in self._associations if a.guest_id == guest_id]

    def guests_in_group(self, group_id: str) -> list[Guest]:
        self.get_group(group_id)
        return [self._guests[a.guest_id] for a in self._associations if a.group_id == group_id]

    def solo_guests(self) -> list[Guest]:
        linked = {a.guest_id for a in self._associations}
        return [guest for guest_id, guest in self._guests.items() if guest_id not in linked]

    def find_group_by_name(self, name: str) -> Group | None:
        wanted = name.strip()
        for group in self._groups.values():
            if group.name.strip() == wanted:
                return group
        return None

    def snapshot(self) -> RosterSnapshot:
        return RosterSnapshot(
            guests=dict(self._guests),
            groups=dict(self._groups),
            associations=frozenset(self._associations),
            version=self._version,
        )

    # Mutations

    def upsert_guest(self, guest: Guest) -> None:
        if self._guests.get(guest.id) == guest:
            return
        self._guests[guest.id] = guest
        self._commit()

    def upsert_group(self, group: Group) -> None:
        """Insert or replace a group. Raises Conflict if another group has the name."""
        clash = self.find_group_by_name(group.name)
        if clash is not None and clash.id != group.id:
            raise Conflict(f"A group named '{group.name.strip()}' already exists")
        if self._groups.get(group.id) == group:
            return
        self._groups[group.id] = group
        self._commit()

    def replace_groups(self, groups: Iterable[Group]) -> None:
        """Insert or replace several groups as one mutation.

        Name uniqueness is checked against the resulting set of groups, so
        groups may trade names with each other. Raises Conflict and changes
        nothing if two groups would end up with the same name.
        """
        incoming = {group.id: group for group in groups}
        final = {**self._groups, **incoming}
        seen: dict[str, str] = {}
        for group_id, group in final.items():
            name = group.name.strip()
            if name in seen:
                raise Conflict(f"A group named '{name}' already exists")
            seen[name] = group_id
        if all(self._groups.get(group_id) == group for group_id, group in incoming.items()):
            return
        self._groups.update(incoming)
        self._commit()

    def upsert(self, entity: Guest | Group) -> None:
        if isinstance(entity, Guest):
            self.upsert_guest(entity)
        else:
            self.upsert_group(entity)

    def link_association(self, guest_id: str, group_id: str) -> bool:
        """Link a guest to a group. Returns False if the pair already existed."""
        self.get_guest(guest_id)
        self.get_group(group_id)
        pair = Association(guest_id=guest_id, group_id=group_id)
        if pair in self._associations:
            return False
        self._associations.add(pair)
        self._commit()
        return True

    def unlink_association(self, guest_id: str, group_id: str) -> None:
        pair = Association(guest_id=guest_id, group_id=group_id)
        if pair not in self._associations:
            raise NotFound("Association", pair.ref.id)
        self._associations.discard(pair)
        self._commit()

    def remove(self, ref: EntityRef) -> None:
        """Remove one entity that nothing references.

        Guests and groups that still have associations are refused with
        Conflict; use remove_cascading() for those.
        """
        if ref.kind is EntityKind.ASSOCIATION:
            pair = self.get(ref)
            self.unlink_association(pair.guest_id, pair.group_id)
            return
        self.get(ref)
        if self._pairs_touching(ref):
            raise Conflict(f"{ref} still has group associations")
        self._drop(ref)
        self._commit()

    def remove_cascading(self, ref: EntityRef) -> set[Association]:
        """Remove a guest or group together with every association mentioning it.

        Returns the associations that were removed.
        """
        if ref.kind is EntityKind.ASSOCIATION:
            pair = self.get(ref)
            self.unlink_association(pair.guest_id, pair.group_id)
            return {pair}
        self.get(ref)
        removed = self._pairs_touching(ref)
        self._associations -= removed
        self._drop(ref)
        self._commit()
        return removed

    # Snapshot capture and restore

    def capture(
        self,
        guest_ids: Iterable[str] = (),
        group_ids: Iterable[str] = (),
        pairs: Iterable[Association] = (),
    ) -> Capture:
        """Record the current state of the given entities.

        The pair scope always includes every association that currently
        touches a captured guest or group, so a cascade can be undone.
        """
        guest_ids = set(guest_ids)
        group_ids = set(group_ids)
        scope = set(pairs)
        scope |= {
            a for a in self._associations
            if a.guest_id in guest_ids or a.group_id in group_ids
        }
        return Capture(
            guests={guest_id: self._guests.get(guest_id) for guest_id in guest_ids},
            groups={group_id: self._groups.get(group_id) for group_id in group_ids},
            pair_scope=frozenset(scope),
            associations=frozenset(scope & self._associations),
        )

    def restore(self, capture: Capture) -> list[Group]:
        """Put captured entities back exactly as they were, as one mutation.

        A captured association whose other endpoint has disappeared in the
        meantime is not recreated. A captured group whose name has since
        been taken by a group outside the capture is held back: it keeps its
        current state and is returned, so the caller can bring it back once
        the name is free.
        """
        before = self.snapshot()
        held = self._clashing_groups(capture)
        for guest_id, guest in capture.guests.items():
            if guest is None:
                self._guests.pop(guest_id, None)
                self._associations = {a for a in self._associations if a.guest_id != guest_id}
            else:
                self._guests[guest_id] = guest
        for group_id, group in capture.groups.items():
            if group is None:
                self._groups.pop(group_id, None)
                self._associations = {a for a in self._associations if a.group_id != group_id}
            elif group not in held:
                self._groups[group_id] = group
        for pair in capture.pair_scope:
            if pair in capture.associations and pair.guest_id in self._guests and pair.group_id in self._groups:
                self._associations.add(pair)
            else:
                self._associations.discard(pair)
        if held:
            logger.warning(f"Holding back {len(held)} restored groups whose names are taken")
        if self.snapshot() != before:
            self._commit()
        return held

    def _clashing_groups(self, capture: Capture) -> list[Group]:
        taken = {
            group.name.strip() for group_id, group in self._groups.items()
            if group_id not in capture.groups
        }
        return [
            group for group in capture.groups.values()
            if group is not None and group.name.strip() in taken
        ]

    # Listeners

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        """Call listener(version) after every successful mutation.

        Returns a function that unregisters the listener.
        """
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _commit(self) -> None:
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(self._version)
            except Exception:
                logger.exception(f"Store listener failed at version {self._version}")

    def _pairs_touching(self, ref: EntityRef) -> set[Association]:
        if ref.kind is EntityKind.GUEST:
            return {a for a in self._associations if a.guest_id == ref.id}
        return {a for a in self._associations if a.group_id == ref.id}

    def _drop(self, ref: EntityRef) -> None:
        if ref.kind is EntityKind.GUEST:
            del self._guests[ref.id]
        else:
            del self._groups[ref.id]

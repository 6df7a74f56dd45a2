"""Typed references to entities held in the roster store."""

from typing import NamedTuple

from roster.models.enums import EntityKind


class EntityRef(NamedTuple):
    """Identifies one guest, group or association.

    Associations have no id of their own; their ref id is derived from the
    (guest_id, group_id) pair via association_id().
    """
    kind: EntityKind
    id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


def association_id(guest_id: str, group_id: str) -> str:
    return f"{guest_id}/{group_id}"


def guest_ref(guest_id: str) -> EntityRef:
    return EntityRef(EntityKind.GUEST, guest_id)


def group_ref(group_id: str) -> EntityRef:
    return EntityRef(EntityKind.GROUP, group_id)


def association_ref(guest_id: str, group_id: str) -> EntityRef:
    return EntityRef(EntityKind.ASSOCIATION, association_id(guest_id, group_id))

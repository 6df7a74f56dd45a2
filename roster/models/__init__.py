from roster.models.change_event import ChangeEvent, Operation, Table
from roster.models.entity_ref import EntityRef, association_ref, group_ref, guest_ref
from roster.models.enums import EntityKind, GroupType, InclusionStatus, RsvpStatus, Side
from roster.models.group import Group, GroupCreate, GroupRow, GroupUpdate
from roster.models.guest import Address, Guest, GuestCreate, GuestRow, GuestUpdate
from roster.models.membership import Association, GuestGroupRow, MembershipChange

__all__ = [
    "Address",
    "Association",
    "ChangeEvent",
    "EntityKind",
    "EntityRef",
    "Group",
    "GroupCreate",
    "GroupRow",
    "GroupType",
    "GroupUpdate",
    "Guest",
    "GuestCreate",
    "GuestGroupRow",
    "GuestRow",
    "GuestUpdate",
    "InclusionStatus",
    "MembershipChange",
    "Operation",
    "RsvpStatus",
    "Side",
    "Table",
    "association_ref",
    "group_ref",
    "guest_ref",
]

"""Enumerations shared by roster entities, requests and rows."""

from enum import Enum


class InclusionStatus(str, Enum):
    """Curation flag: whether the couple intends to invite the guest."""
    DEFINITELY = "definitely"
    MAYBE = "maybe"
    NOT_INVITED = "not_invited"


class RsvpStatus(str, Enum):
    """Guest response state. Absence (None) means no invitation has gone out."""
    INVITED = "invited"
    ATTENDING = "attending"
    DECLINED = "declined"


class Side(str, Enum):
    BRIDE = "bride"
    GROOM = "groom"
    BOTH = "both"


class GroupType(str, Enum):
    FAMILY = "family"
    COUPLE = "couple"
    FRIEND_GROUP = "friend_group"


class EntityKind(str, Enum):
    """The three kinds of record the store keeps."""
    GUEST = "guest"
    GROUP = "group"
    ASSOCIATION = "association"

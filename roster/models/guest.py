"""Guest model for people on the wedding roster.

This module defines three shapes of a guest:

    - Guest: the immutable entity held in the local roster store.
    - GuestCreate / GuestUpdate: caller requests, validated against the
      field rules before anything is applied.
    - GuestRow: the persisted table row in the SQL storage backend, with
      the structured address flattened into nullable columns.

Row snapshots carried by change events are plain dicts with GuestRow's
column names; Guest.from_row() and Guest.to_row() convert between them.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Mapping

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from sqlmodel import Field as SQLField
from sqlmodel import SQLModel

from roster.models.entity_ref import EntityRef, guest_ref
from roster.models.enums import InclusionStatus, RsvpStatus, Side

# Letters (any script, accented included), spaces, hyphens and apostrophes
NAME_PATTERN = re.compile(r"(?:[^\W\d_]|[ '’-])+")
EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

ADDRESS_FIELDS = ("street", "city", "state", "zip")


def _check_person_name(value: str) -> str:
    if not 1 <= len(value) <= 100:
        raise ValueError("must be between 1 and 100 characters")
    if not NAME_PATTERN.fullmatch(value) or not value.strip():
        raise ValueError("may only contain letters, spaces, hyphens and apostrophes")
    return value


def _check_email(value: str) -> str:
    if len(value) > 254:
        raise ValueError("must be at most 254 characters")
    if not EMAIL_PATTERN.fullmatch(value):
        raise ValueError("is not a valid email address")
    return value


PersonName = Annotated[str, AfterValidator(_check_person_name)]
Email = Annotated[str, AfterValidator(_check_email)]
Notes = Annotated[str, Field(max_length=1000)]


class Address(BaseModel):
    """A postal address. Every part is required; a guest has all of it or none."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    street: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    zip: str = Field(min_length=1, max_length=20)


class Guest(BaseModel):
    """A guest as known to the local roster store.

    Attributes:
        id: Opaque unique identifier, generated by the client that created
            the guest and kept by the backend as primary key.
        first_name, last_name: Person name, letters/spaces/hyphen/apostrophe.
        email: Optional contact address.
        address: Optional structured address, never partially present.
        inclusion_status: Whether the couple intends to invite this guest.
        rsvp_status: Response state; independent of inclusion_status.
        side: Which side of the couple the guest belongs to.
        notes: Free-form notes.
        created_at, updated_at: Server-assigned timestamps. None while a
            locally created guest has not been confirmed by the backend.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    first_name: PersonName
    last_name: PersonName
    email: Email | None = None
    address: Address | None = None
    inclusion_status: InclusionStatus = InclusionStatus.MAYBE
    rsvp_status: RsvpStatus | None = None
    side: Side
    notes: Notes | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def ref(self) -> EntityRef:
        return guest_ref(self.id)

    def apply(self, update: "GuestUpdate") -> "Guest":
        """Return a copy with the fields explicitly set on the update replaced."""
        changes = {name: getattr(update, name) for name in update.model_fields_set}
        return self.model_copy(update=changes)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Guest":
        """Build from a row snapshot. Raises ValueError on a partial address."""
        parts = {name: row.get(name) for name in ADDRESS_FIELDS}
        present = [name for name, value in parts.items() if value is not None]
        if present and len(present) != len(ADDRESS_FIELDS):
            raise ValueError(f"guest row {row.get('id')} has a partial address: {present}")
        return cls(
            id=row["id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row.get("email"),
            address=Address(**parts) if present else None,
            inclusion_status=row.get("inclusion_status") or InclusionStatus.MAYBE,
            rsvp_status=row.get("rsvp_status"),
            side=row["side"],
            notes=row.get("notes"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_row(self) -> dict[str, Any]:
        address = self.address.model_dump() if self.address else dict.fromkeys(ADDRESS_FIELDS)
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            **address,
            "inclusion_status": self.inclusion_status.value,
            "rsvp_status": self.rsvp_status.value if self.rsvp_status else None,
            "side": self.side.value,
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class GuestCreate(BaseModel):
    """Request to add a guest. Side has no default and must be supplied."""
    model_config = ConfigDict(extra="forbid")

    first_name: PersonName
    last_name: PersonName
    email: Email | None = None
    address: Address | None = None
    inclusion_status: InclusionStatus = InclusionStatus.MAYBE
    rsvp_status: RsvpStatus | None = None
    side: Side
    notes: Notes | None = None

    def to_guest(self, guest_id: str) -> Guest:
        return Guest(id=guest_id, **dict(self))


class GuestUpdate(BaseModel):
    """Partial update. Only fields explicitly passed are applied.

    Passing None clears an optional field (address=None removes the whole
    address); required fields cannot be cleared.
    """
    model_config = ConfigDict(extra="forbid")

    first_name: PersonName | None = None
    last_name: PersonName | None = None
    email: Email | None = None
    address: Address | None = None
    inclusion_status: InclusionStatus | None = None
    rsvp_status: RsvpStatus | None = None
    side: Side | None = None
    notes: Notes | None = None

    @model_validator(mode="after")
    def check_fields(self) -> "GuestUpdate":
        if not self.model_fields_set:
            raise ValueError("at least one field must be updated")
        for name in ("first_name", "last_name", "inclusion_status", "side"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        return self

    def to_row_changes(self) -> dict[str, Any]:
        """Column values for the fields being updated; the address spans four columns."""
        changes = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if name == "address":
                changes.update(value.model_dump() if value else dict.fromkeys(ADDRESS_FIELDS))
            elif isinstance(value, Enum):
                changes[name] = value.value
            else:
                changes[name] = value
        return changes


class GuestRow(SQLModel, table=True):
    """Persisted guest row in the SQL storage backend."""
    __tablename__ = "guests"

    id: str = SQLField(primary_key=True)
    first_name: str = SQLField(max_length=100)
    last_name: str = SQLField(max_length=100)
    email: str | None = SQLField(default=None, max_length=254)
    street: str | None = SQLField(default=None, max_length=200)
    city: str | None = SQLField(default=None, max_length=100)
    state: str | None = SQLField(default=None, max_length=100)
    zip: str | None = SQLField(default=None, max_length=20)
    inclusion_status: str = SQLField(default=InclusionStatus.MAYBE.value)
    rsvp_status: str | None = None
    side: str
    notes: str | None = SQLField(default=None, max_length=1000)
    created_at: datetime
    updated_at: datetime

"""Group model for households, couples and friend circles.

Groups bundle guests for seating and invitations. A guest may belong to
any number of groups (including none); membership lives in the
guest_groups association table, see roster.models.membership.

Group names are unique across the roster after trimming surrounding
whitespace. Names are stored trimmed, so comparing stored names is enough
to enforce uniqueness.
"""

from datetime import datetime
from typing import Annotated, Any, Mapping

from pydantic import AfterValidator, BaseModel, ConfigDict, model_validator
from sqlmodel import Field as SQLField
from sqlmodel import SQLModel

from roster.models.entity_ref import EntityRef, group_ref
from roster.models.enums import GroupType
from roster.models.guest import GuestCreate


def _check_group_name(value: str) -> str:
    value = value.strip()
    if not 1 <= len(value) <= 200:
        raise ValueError("must be between 1 and 200 characters after trimming")
    return value


GroupName = Annotated[str, AfterValidator(_check_group_name)]


class Group(BaseModel):
    """A group as known to the local roster store.

    Attributes:
        id: Opaque unique identifier, generated by the creating client.
        name: Trimmed display name, unique across groups.
        type: Kind of group.
        created_at, updated_at: Server-assigned timestamps, None until the
            backend has confirmed the group.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: GroupName
    type: GroupType
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def ref(self) -> EntityRef:
        return group_ref(self.id)

    def apply(self, update: "GroupUpdate") -> "Group":
        changes = {name: getattr(update, name) for name in update.model_fields_set}
        return self.model_copy(update=changes)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Group":
        return cls(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class GroupCreate(BaseModel):
    """Request to create a group, optionally with a batch of members.

    Attributes:
        name: Group name; trimmed before use.
        type: Kind of group, required.
        guest_ids: Existing guests to link to the new group.
        new_guests: Guests to create and link in the same operation.
    """
    model_config = ConfigDict(extra="forbid")

    name: GroupName
    type: GroupType
    guest_ids: list[str] = []
    new_guests: list[GuestCreate] = []

    @model_validator(mode="after")
    def check_members(self) -> "GroupCreate":
        if len(set(self.guest_ids)) != len(self.guest_ids):
            raise ValueError("guest_ids contains duplicates")
        return self


class GroupUpdate(BaseModel):
    """Rename and/or retype a group."""
    model_config = ConfigDict(extra="forbid")

    name: GroupName | None = None
    type: GroupType | None = None

    @model_validator(mode="after")
    def check_fields(self) -> "GroupUpdate":
        if not self.model_fields_set:
            raise ValueError("at least one field must be updated")
        for name in self.model_fields_set:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        return self

    def to_row_changes(self) -> dict[str, Any]:
        changes = {}
        if "name" in self.model_fields_set:
            changes["name"] = self.name
        if "type" in self.model_fields_set:
            changes["type"] = self.type.value
        return changes


class GroupRow(SQLModel, table=True):
    """Persisted group row in the SQL storage backend."""
    __tablename__ = "groups"

    id: str = SQLField(primary_key=True)
    name: str = SQLField(max_length=200, unique=True, index=True)
    type: str
    created_at: datetime
    updated_at: datetime

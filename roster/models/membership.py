"""Guest-to-group association.

An association is a bare (guest_id, group_id) pair: present or absent, no
duplicates, no ordering. Both endpoints must exist. Deleting either endpoint
deletes the pair in the same step, locally in the roster store and in the
backend through ON DELETE CASCADE.
"""

from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlmodel import Field as SQLField
from sqlmodel import SQLModel

from roster.models.entity_ref import EntityRef, association_ref, group_ref, guest_ref


class Association(BaseModel):
    model_config = ConfigDict(frozen=True)

    guest_id: str
    group_id: str

    @property
    def ref(self) -> EntityRef:
        return association_ref(self.guest_id, self.group_id)

    @property
    def endpoints(self) -> tuple[EntityRef, EntityRef]:
        return guest_ref(self.guest_id), group_ref(self.group_id)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Association":
        return cls(guest_id=row["guest_id"], group_id=row["group_id"])


class GuestGroupRow(SQLModel, table=True):
    """Persisted membership row. The composite primary key forbids duplicates."""
    __tablename__ = "guest_groups"

    guest_id: str = SQLField(foreign_key="guests.id", primary_key=True, ondelete="CASCADE")
    group_id: str = SQLField(foreign_key="groups.id", primary_key=True, ondelete="CASCADE")
    created_at: datetime


class MembershipChange(BaseModel):
    """Request to add a guest to one or more groups."""
    model_config = ConfigDict(extra="forbid")

    guest_id: str = Field(min_length=1)
    group_ids: list[str] = Field(min_length=1)

    @model_validator(mode="after")
    def check_groups(self) -> "MembershipChange":
        if len(set(self.group_ids)) != len(self.group_ids):
            raise ValueError("group_ids contains duplicates")
        return self

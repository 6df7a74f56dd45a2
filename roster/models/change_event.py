"""Change notifications published by the storage backend.

Each event describes one committed row change: which table, what kind of
operation, the row as it looks after the change (before it, for deletes)
and the server timestamp of the commit. Events from one table arrive in
commit order; events from different tables may interleave arbitrarily.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from roster.models.entity_ref import EntityRef, association_ref, group_ref, guest_ref


class Table(str, Enum):
    GUESTS = "guests"
    GROUPS = "groups"
    GUEST_GROUPS = "guest_groups"


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A single committed row change."""
    model_config = ConfigDict(frozen=True)

    table: Table
    operation: Operation
    row: dict[str, Any]
    server_timestamp: datetime

    @property
    def ref(self) -> EntityRef:
        if self.table is Table.GUEST_GROUPS:
            return association_ref(self.row["guest_id"], self.row["group_id"])
        if self.table is Table.GROUPS:
            return group_ref(self.row["id"])
        return guest_ref(self.row["id"])

    @property
    def dedupe_key(self) -> tuple[str, str, datetime]:
        """Same table, same row and same commit time means the same event."""
        return (self.table.value, self.ref.id, self.server_timestamp)

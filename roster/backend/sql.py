"""SQL storage backend on SQLModel/SQLite.

Plays the role of the shared server: every roster client in the process
writes through one SqlStorageBackend instance and subscribes to its change
feed. Each write runs in a single transaction stamped with one server
timestamp; timestamps are strictly increasing across transactions so that
last-write-wins has a total order to work with.

Cascades are performed explicitly (association rows deleted before the
guest or group) so that subscribers receive a delete event for every
association that disappears. The ON DELETE CASCADE foreign keys stay as
the safety net.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, select

from roster.backend.base import FeedHub, FeedSubscription, Row, RosterRows
from roster.core.database import engine as default_engine
from roster.core.errors import Conflict, NotFound, ValidationError
from roster.models import ChangeEvent, GroupRow, GuestGroupRow, GuestRow, Operation, Table
from roster.models.guest import ADDRESS_FIELDS

logger = logging.getLogger(__name__)

_TABLE_MODELS = {Table.GUESTS: GuestRow, Table.GROUPS: GroupRow}
_IMMUTABLE_COLUMNS = {"id", "created_at", "updated_at"}


def _row_dict(row: SQLModel) -> Row:
    """Column values of a row, with SQLite's naive datetimes read back as UTC."""
    data = row.model_dump()
    for key, value in data.items():
        if isinstance(value, datetime) and value.tzinfo is None:
            data[key] = value.replace(tzinfo=UTC)
    return data


class SqlStorageBackend:
    """StorageBackend implementation over a SQLAlchemy engine.

    Args:
        engine: Engine to use; defaults to the one configured in
            roster.core.database.
        latency: Seconds every call sleeps before running, to emulate a
            network round trip.
    """

    def __init__(self, engine: Engine | None = None, latency: float = 0.0):
        self._engine = engine or default_engine
        self._hub = FeedHub()
        self._last_timestamp: datetime | None = None
        self.latency = latency

    def subscribe(self) -> FeedSubscription:
        return self._hub.subscribe()

    @property
    def subscriber_count(self) -> int:
        return self._hub.subscriber_count

    # Guests

    async def insert_guest(self, row: Row) -> list[ChangeEvent]:
        await self._round_trip()
        with self._session() as session:
            now = self._next_timestamp()
            guest = GuestRow(**{**row, "created_at": now, "updated_at": now})
            session.add(guest)
            self._commit(session, "insert guest")
            events = [self._event(Table.GUESTS, Operation.INSERT, guest, now)]
        return self._publish(events)

    async def update_guest(self, guest_id: str, changes: Row) -> list[ChangeEvent]:
        await self._round_trip()
        with self._session() as session:
            guest = self._get(session, GuestRow, guest_id)
            now = self._next_timestamp()
            self._assign(guest, changes)
            address = [getattr(guest, name) for name in ADDRESS_FIELDS]
            if any(part is not None for part in address) and None in address:
                raise ValidationError(
                    "Address must be complete or absent", {"address": "partial address"},
                )
            guest.updated_at = now
            session.add(guest)
            self._commit(session, "update guest")
            events = [self._event(Table.GUESTS, Operation.UPDATE, guest, now)]
        return self._publish(events)

    async def delete_guest(self, guest_id: str) -> list[ChangeEvent]:
        await self._round_trip()
        with self._session() as session:
            guest = self._get(session, GuestRow, guest_id)
            now = self._next_timestamp()
            links = session.exec(
                select(GuestGroupRow).where(GuestGroupRow.guest_id == guest_id)
            ).all()
            events = self._delete_links(session, links, now)
            events.append(self._event(Table.GUESTS, Operation.DELETE, guest, now))
            session.delete(guest)
            self._commit(session, "delete guest")
        logger.info(f"Deleted guest {guest_id} and {len(links)} memberships")
        return self._publish(events)

    # Groups

    async def create_group(
        self, group_row: Row, new_guest_rows: list[Row], guest_ids: list[str],
    ) -> list[ChangeEvent]:
        """Create a group, its new guests and all memberships in one transaction."""
        await self._round_trip()
        with self._session() as session:
            name = group_row["name"].strip()
            if self._name_taken(session, name, group_row["id"]):
                raise Conflict(f"A group named '{name}' already exists")
            missing = self._missing(session, GuestRow, guest_ids)
            if missing:
                raise NotFound("Guest", sorted(missing)[0])

            now = self._next_timestamp()
            group = GroupRow(**{**group_row, "name": name, "created_at": now, "updated_at": now})
            session.add(group)
            guests = [
                GuestRow(**{**row, "created_at": now, "updated_at": now})
                for row in new_guest_rows
            ]
            session.add_all(guests)
            member_ids = list(guest_ids) + [guest.id for guest in guests]
            links = [
                GuestGroupRow(guest_id=member_id, group_id=group.id, created_at=now)
                for member_id in member_ids
            ]
            session.add_all(links)
            self._commit(session, "create group")

            events = [self._event(Table.GROUPS, Operation.INSERT, group, now)]
            events += [self._event(Table.GUESTS, Operation.INSERT, guest, now) for guest in guests]
            events += [self._event(Table.GUEST_GROUPS, Operation.INSERT, link, now) for link in links]
        logger.info(f"Created group '{name}' with {len(member_ids)} members")
        return self._publish(events)

    async def update_group(self, group_id: str, changes: Row) -> list[ChangeEvent]:
        await self._round_trip()
        with self._session() as session:
            group = self._get(session, GroupRow, group_id)
            if "name" in changes:
                changes = {**changes, "name": changes["name"].strip()}
                if self._name_taken(session, changes["name"], group_id):
                    raise Conflict(f"A group named '{changes['name']}' already exists")
            now = self._next_timestamp()
            self._assign(group, changes)
            group.updated_at = now
            session.add(group)
            self._commit(session, "update group")
            events = [self._event(Table.GROUPS, Operation.UPDATE, group, now)]
        return self._publish(events)

    async def delete_group(self, group_id: str) -> list[ChangeEvent]:
        await self._round_trip()
        with self._session() as session:
            group = self._get(session, GroupRow, group_id)
            now = self._next_timestamp()
            links = session.exec(
                select(GuestGroupRow).where(GuestGroupRow.group_id == group_id)
            ).all()
            events = self._delete_links(session, links, now)
            events.append(self._event(Table.GROUPS, Operation.DELETE, group, now))
            session.delete(group)
            self._commit(session, "delete group")
        logger.info(f"Deleted group {group_id} and {len(links)} memberships")
        return self._publish(events)

    # Memberships

    async def link(self, guest_id: str, group_ids: list[str]) -> list[ChangeEvent]:
        """Add memberships. Pairs that already exist are left as they are."""
        await self._round_trip()
        with self._session() as session:
            self._get(session, GuestRow, guest_id)
            missing = self._missing(session, GroupRow, group_ids)
            if missing:
                raise NotFound("Group", sorted(missing)[0])
            existing = set(session.exec(
                select(GuestGroupRow.group_id).where(GuestGroupRow.guest_id == guest_id)
            ).all())
            now = self._next_timestamp()
            links = [
                GuestGroupRow(guest_id=guest_id, group_id=group_id, created_at=now)
                for group_id in group_ids
                if group_id not in existing
            ]
            session.add_all(links)
            self._commit(session, "link guest")
            events = [self._event(Table.GUEST_GROUPS, Operation.INSERT, link, now) for link in links]
        return self._publish(events)

    async def unlink(self, guest_id: str, group_id: str) -> list[ChangeEvent]:
        """Remove a membership. Removing one that is already gone is a no-op."""
        await self._round_trip()
        with self._session() as session:
            link = session.get(GuestGroupRow, (guest_id, group_id))
            if link is None:
                return []
            now = self._next_timestamp()
            events = self._delete_links(session, [link], now)
            self._commit(session, "unlink guest")
        return self._publish(events)

    # Authoritative checks and reads

    async def group_name_taken(self, name: str, exclude_id: str | None = None) -> bool:
        await self._round_trip()
        with self._session() as session:
            return self._name_taken(session, name.strip(), exclude_id)

    async def missing_ids(self, table: Table, ids: list[str]) -> set[str]:
        await self._round_trip()
        if table not in _TABLE_MODELS:
            raise ValueError(f"Existence checks are not supported for {table.value}")
        with self._session() as session:
            return self._missing(session, _TABLE_MODELS[table], ids)

    async def fetch_all(self) -> RosterRows:
        await self._round_trip()
        with self._session() as session:
            return RosterRows(
                guests=[_row_dict(row) for row in session.exec(select(GuestRow)).all()],
                groups=[_row_dict(row) for row in session.exec(select(GroupRow)).all()],
                guest_groups=[_row_dict(row) for row in session.exec(select(GuestGroupRow)).all()],
                as_of=self._next_timestamp(),
            )

    # Helpers

    async def _round_trip(self) -> None:
        await asyncio.sleep(self.latency)

    def _session(self) -> Session:
        # Rows are turned into events after commit; keep their loaded values
        return Session(self._engine, expire_on_commit=False)

    def _next_timestamp(self) -> datetime:
        now = datetime.now(UTC)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _get(self, session: Session, model: type[SQLModel], row_id: str) -> Any:
        row = session.get(model, row_id)
        if row is None:
            raise NotFound(model.__name__.removesuffix("Row"), row_id)
        return row

    def _missing(self, session: Session, model: type[SQLModel], ids: list[str]) -> set[str]:
        if not ids:
            return set()
        found = session.exec(select(model.id).where(col(model.id).in_(ids))).all()
        return set(ids) - set(found)

    def _name_taken(self, session: Session, name: str, exclude_id: str | None) -> bool:
        statement = select(GroupRow).where(GroupRow.name == name)
        if exclude_id is not None:
            statement = statement.where(GroupRow.id != exclude_id)
        return session.exec(statement).first() is not None

    def _assign(self, row: SQLModel, changes: Row) -> None:
        for key, value in changes.items():
            if key in _IMMUTABLE_COLUMNS:
                continue
            if key not in type(row).model_fields:
                raise ValidationError(f"Unknown column '{key}'", {key: "unknown column"})
            setattr(row, key, value)

    def _delete_links(
        self, session: Session, links: list[GuestGroupRow], now: datetime,
    ) -> list[ChangeEvent]:
        events = []
        for link in links:
            events.append(self._event(Table.GUEST_GROUPS, Operation.DELETE, link, now))
            session.delete(link)
        # Flush link deletes before any parent delete in the same transaction
        session.flush()
        return events

    def _commit(self, session: Session, operation: str) -> None:
        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.warning(f"Integrity error during {operation}: {e.orig}")
            raise Conflict(f"{operation} violates a uniqueness or reference constraint") from e

    def _event(self, table: Table, operation: Operation, row: SQLModel, now: datetime) -> ChangeEvent:
        return ChangeEvent(table=table, operation=operation, row=_row_dict(row), server_timestamp=now)

    def _publish(self, events: list[ChangeEvent]) -> list[ChangeEvent]:
        if events:
            self._hub.publish(events)
        return events

"""Roster-wide counts derived from the entity store."""

import logging
from collections import Counter
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from roster.models import InclusionStatus, RsvpStatus, Side
from roster.sync.store import EntityStore, RosterSnapshot

logger = logging.getLogger(__name__)

StatsListener = Callable[["RosterStats"], None]


class RosterStats(BaseModel):
    """Counts over the current roster.

    by_rsvp has a None bucket for guests who have not been sent an RSVP.
    group_counts maps each group id to its member count, empty groups
    included.
    """
    model_config = ConfigDict(frozen=True)

    total_guests: int = 0
    solo_guests: int = 0
    by_inclusion: dict[InclusionStatus, int] = Field(default_factory=dict)
    by_rsvp: dict[RsvpStatus | None, int] = Field(default_factory=dict)
    by_side: dict[Side, int] = Field(default_factory=dict)
    group_counts: dict[str, int] = Field(default_factory=dict)


def compute_stats(snapshot: RosterSnapshot) -> RosterStats:
    guests = snapshot.guests.values()
    inclusion = Counter(guest.inclusion_status for guest in guests)
    rsvp = Counter(guest.rsvp_status for guest in guests)
    side = Counter(guest.side for guest in guests)
    members = Counter(pair.group_id for pair in snapshot.associations)
    linked = {pair.guest_id for pair in snapshot.associations}

    return RosterStats(
        total_guests=len(snapshot.guests),
        solo_guests=sum(1 for guest_id in snapshot.guests if guest_id not in linked),
        by_inclusion={status: inclusion[status] for status in InclusionStatus},
        by_rsvp={None: rsvp[None], **{status: rsvp[status] for status in RsvpStatus}},
        by_side={s: side[s] for s in Side},
        group_counts={group_id: members[group_id] for group_id in snapshot.groups},
    )


class DerivedAggregator:
    """Keeps RosterStats current by recomputing on every store version bump."""

    def __init__(self, store: EntityStore):
        self._store = store
        self._subscribers: list[StatsListener] = []
        self._stats = compute_stats(store.snapshot())
        self._unsubscribe = store.add_listener(self._on_change)

    @property
    def stats(self) -> RosterStats:
        return self._stats

    def subscribe(self, callback: StatsListener) -> Callable[[], None]:
        """Call callback(stats) whenever the counts change. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def close(self) -> None:
        self._unsubscribe()
        self._subscribers.clear()

    def _on_change(self, version: int) -> None:
        stats = compute_stats(self._store.snapshot())
        if stats == self._stats:
            return
        self._stats = stats
        for callback in list(self._subscribers):
            try:
                callback(stats)
            except Exception:
                logger.exception(f"Stats subscriber failed at version {version}")

"""Tests for derived roster statistics."""

from roster.models import Group, Guest, InclusionStatus, RsvpStatus, Side, guest_ref
from roster.sync.aggregator import DerivedAggregator, RosterStats, compute_stats
from roster.sync.store import EntityStore


def fill(store: EntityStore) -> None:
    store.upsert_guest(Guest(id="g1", first_name="Ann", last_name="Smith", side="bride", rsvp_status="attending"))
    store.upsert_guest(Guest(id="g2", first_name="Bob", last_name="Smith", side="groom", inclusion_status="definitely"))
    store.upsert_guest(Guest(id="g3", first_name="Cy", last_name="Jones", side="both", rsvp_status="declined"))
    store.upsert_group(Group(id="f1", name="Smiths", type="family"))
    store.upsert_group(Group(id="f2", name="Empty", type="couple"))
    store.link_association("g1", "f1")
    store.link_association("g2", "f1")


class TestComputeStats:
    def test_empty_roster(self, store: EntityStore):
        stats = compute_stats(store.snapshot())
        assert stats.total_guests == 0
        assert stats.by_inclusion == {status: 0 for status in InclusionStatus}
        assert stats.by_rsvp[None] == 0
        assert len(stats.by_rsvp) == 4

    def test_counts(self, store: EntityStore):
        fill(store)
        stats = compute_stats(store.snapshot())

        assert stats.total_guests == 3
        assert stats.solo_guests == 1
        assert stats.by_inclusion[InclusionStatus.MAYBE] == 2
        assert stats.by_inclusion[InclusionStatus.DEFINITELY] == 1
        assert stats.by_rsvp == {
            None: 1,
            RsvpStatus.INVITED: 0,
            RsvpStatus.ATTENDING: 1,
            RsvpStatus.DECLINED: 1,
        }
        assert stats.by_side == {Side.BRIDE: 1, Side.GROOM: 1, Side.BOTH: 1}
        assert stats.group_counts == {"f1": 2, "f2": 0}

    def test_buckets_sum_to_total(self, store: EntityStore):
        fill(store)
        stats = compute_stats(store.snapshot())
        for buckets in (stats.by_inclusion, stats.by_rsvp, stats.by_side):
            assert sum(buckets.values()) == stats.total_guests


class TestDerivedAggregator:
    """Tests for recomputation on store changes."""

    def test_tracks_store(self, store: EntityStore):
        aggregator = DerivedAggregator(store)
        fill(store)
        assert aggregator.stats == compute_stats(store.snapshot())

        store.remove_cascading(guest_ref("g1"))
        assert aggregator.stats.total_guests == 2
        assert aggregator.stats.group_counts["f1"] == 1

    def test_subscribers_see_changes_only(self, store: EntityStore):
        aggregator = DerivedAggregator(store)
        received: list[RosterStats] = []
        unsubscribe = aggregator.subscribe(received.append)

        store.upsert_guest(Guest(id="g1", first_name="Ann", last_name="Smith", side="bride"))
        # A name change bumps the version but leaves every count as it was
        store.upsert_guest(Guest(id="g1", first_name="Anne", last_name="Smith", side="bride"))
        assert [stats.total_guests for stats in received] == [1]

        unsubscribe()
        store.upsert_guest(Guest(id="g2", first_name="Bob", last_name="Smith", side="groom"))
        assert len(received) == 1

    def test_close_detaches(self, store: EntityStore):
        aggregator = DerivedAggregator(store)
        aggregator.close()
        fill(store)
        assert aggregator.stats.total_guests == 0

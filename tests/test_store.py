"""Tests for the in-memory entity store."""

import pytest

from roster.core.errors import Conflict, NotFound
from roster.models import Association, Group, Guest, group_ref, guest_ref
from roster.sync.store import EntityStore


def make_guest(guest_id: str, first_name: str = "Ann") -> Guest:
    return Guest(id=guest_id, first_name=first_name, last_name="Smith", side="bride")


def make_group(group_id: str, name: str = "Smiths") -> Group:
    return Group(id=group_id, name=name, type="family")


@pytest.fixture(name="filled")
def filled_fixture(store: EntityStore) -> EntityStore:
    """Two guests in one group, plus a solo guest."""
    store.upsert_guest(make_guest("g1"))
    store.upsert_guest(make_guest("g2", "Bob"))
    store.upsert_guest(make_guest("g3", "Cy"))
    store.upsert_group(make_group("f1"))
    store.link_association("g1", "f1")
    store.link_association("g2", "f1")
    return store


class TestReads:
    def test_get_missing(self, store: EntityStore):
        with pytest.raises(NotFound):
            store.get_guest("nope")
        with pytest.raises(NotFound):
            store.get(group_ref("nope"))

    def test_membership_reads(self, filled: EntityStore):
        assert {g.id for g in filled.guests_in_group("f1")} == {"g1", "g2"}
        assert [g.id for g in filled.groups_of_guest("g1")] == ["f1"]
        assert [g.id for g in filled.solo_guests()] == ["g3"]

    def test_snapshot_is_a_copy(self, filled: EntityStore):
        snapshot = filled.snapshot()
        filled.remove(guest_ref("g3"))
        assert "g3" in snapshot.guests
        assert snapshot.members_of("f1") == {"g1", "g2"}
        assert snapshot.groups_of("g3") == set()


class TestMutations:
    """Tests for invariant enforcement."""

    def test_version_bumps_once_per_change(self, store: EntityStore):
        store.upsert_guest(make_guest("g1"))
        assert store.version == 1
        store.upsert_guest(make_guest("g1"))
        assert store.version == 1, "identical upsert is not a change"
        store.upsert_guest(make_guest("g1", "Anne"))
        assert store.version == 2

    def test_group_name_unique_after_trim(self, store: EntityStore):
        store.upsert_group(make_group("f1", "Smiths"))
        with pytest.raises(Conflict):
            store.upsert_group(Group.model_construct(id="f2", name=" Smiths ", type="family"))
        assert store.version == 1

    def test_renaming_group_keeps_own_name(self, store: EntityStore):
        store.upsert_group(make_group("f1", "Smiths"))
        store.upsert_group(Group(id="f1", name="Smiths", type="couple"))
        assert store.get_group("f1").type.value == "couple"

    def test_groups_can_trade_names_together(self, store: EntityStore):
        store.upsert_group(make_group("f1", "Alpha"))
        store.upsert_group(make_group("f2", "Beta"))
        version = store.version

        store.replace_groups([make_group("f1", "Beta"), make_group("f2", "Alpha")])

        assert store.get_group("f1").name == "Beta"
        assert store.get_group("f2").name == "Alpha"
        assert store.version == version + 1

    def test_replace_groups_refuses_duplicate_result(self, store: EntityStore):
        store.upsert_group(make_group("f1", "Alpha"))
        store.upsert_group(make_group("f2", "Beta"))
        before = store.snapshot()

        with pytest.raises(Conflict):
            store.replace_groups([make_group("f1", "Beta")])

        assert store.snapshot() == before

    def test_link_requires_endpoints(self, store: EntityStore):
        store.upsert_guest(make_guest("g1"))
        with pytest.raises(NotFound):
            store.link_association("g1", "missing")
        assert store.snapshot().associations == frozenset()

    def test_link_is_idempotent(self, filled: EntityStore):
        version = filled.version
        assert filled.link_association("g1", "f1") is False
        assert filled.version == version

    def test_unlink_missing(self, filled: EntityStore):
        with pytest.raises(NotFound):
            filled.unlink_association("g3", "f1")

    def test_remove_refuses_linked_entity(self, filled: EntityStore):
        with pytest.raises(Conflict):
            filled.remove(guest_ref("g1"))
        assert filled.get_guest("g1")

    def test_remove_cascading_guest(self, filled: EntityStore):
        version = filled.version
        removed = filled.remove_cascading(guest_ref("g1"))
        assert removed == {Association(guest_id="g1", group_id="f1")}
        assert not filled.exists(guest_ref("g1"))
        assert filled.version == version + 1

    def test_remove_cascading_group_keeps_guests(self, filled: EntityStore):
        filled.remove_cascading(group_ref("f1"))
        assert set(filled.snapshot().guests) == {"g1", "g2", "g3"}
        assert filled.snapshot().associations == frozenset()
        assert len(filled.solo_guests()) == 3


class TestCaptureRestore:
    """Tests for rollback support."""

    def test_restore_undoes_cascade(self, filled: EntityStore):
        before = filled.snapshot()
        capture = filled.capture(guest_ids=["g1"])
        filled.remove_cascading(guest_ref("g1"))

        filled.restore(capture)

        assert filled.snapshot() == before

    def test_restore_removes_created_entities(self, store: EntityStore):
        before = store.snapshot()
        pair = Association(guest_id="g1", group_id="f1")
        capture = store.capture(guest_ids=["g1"], group_ids=["f1"], pairs=[pair])
        store.upsert_group(make_group("f1"))
        store.upsert_guest(make_guest("g1"))
        store.link_association("g1", "f1")

        store.restore(capture)

        assert store.snapshot() == before

    def test_restore_is_one_version_bump(self, filled: EntityStore):
        capture = filled.capture(group_ids=["f1"])
        filled.remove_cascading(group_ref("f1"))
        version = filled.version
        filled.restore(capture)
        assert filled.version == version + 1

    def test_restore_without_changes_keeps_version(self, filled: EntityStore):
        capture = filled.capture(guest_ids=["g3"])
        version = filled.version
        filled.restore(capture)
        assert filled.version == version

    def test_restore_skips_pairs_with_vanished_endpoint(self, filled: EntityStore):
        capture = filled.capture(guest_ids=["g1"])
        filled.remove_cascading(guest_ref("g1"))
        # Meanwhile the group disappears for another reason
        filled.remove_cascading(group_ref("f1"))

        filled.restore(capture)

        assert filled.exists(guest_ref("g1"))
        assert not filled.has_association("g1", "f1")

    def test_restore_holds_back_group_whose_name_was_taken(self, filled: EntityStore):
        capture = filled.capture(group_ids=["f1"])
        filled.remove_cascading(group_ref("f1"))
        filled.upsert_group(make_group("f2", "Smiths"))

        held = filled.restore(capture)

        assert [group.id for group in held] == ["f1"]
        assert set(filled.snapshot().groups) == {"f2"}
        assert filled.snapshot().associations == frozenset()

    def test_capture_refs(self, filled: EntityStore):
        refs = filled.capture(guest_ids=["g1"]).refs
        assert guest_ref("g1") in refs
        assert Association(guest_id="g1", group_id="f1").ref in refs


class TestListeners:
    def test_listener_called_with_version(self, store: EntityStore):
        seen = []
        unsubscribe = store.add_listener(seen.append)
        store.upsert_guest(make_guest("g1"))
        unsubscribe()
        store.upsert_guest(make_guest("g2"))
        assert seen == [1]

    def test_failing_listener_does_not_break_store(self, store: EntityStore):
        def broken(version):
            raise RuntimeError("boom")

        store.add_listener(broken)
        store.upsert_guest(make_guest("g1"))
        assert store.exists(guest_ref("g1"))

    def test_unsubscribe_twice(self, store: EntityStore):
        seen = []
        unsubscribe = store.add_listener(seen.append)
        unsubscribe()
        unsubscribe()
        store.upsert_guest(make_guest("g1"))
        assert seen == []

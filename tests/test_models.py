"""Tests for roster models and request validation."""

from datetime import UTC, datetime

import pydantic
import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from roster.core.errors import ValidationError
from roster.models import (
    Address,
    ChangeEvent,
    Group,
    GroupCreate,
    GroupRow,
    GroupUpdate,
    Guest,
    GuestCreate,
    GuestGroupRow,
    GuestRow,
    GuestUpdate,
    InclusionStatus,
    MembershipChange,
    Operation,
    Side,
    Table,
    association_ref,
    guest_ref,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)
ADDRESS = {"street": "1 Chapel Lane", "city": "Bath", "state": "Somerset", "zip": "BA1 1AA"}


class TestGuestCreate:
    """Tests for guest field rules."""

    def test_defaults(self):
        """Test that inclusion defaults to maybe and RSVP to none."""
        request = GuestCreate(first_name="Ann", last_name="Smith", side="bride")
        assert request.inclusion_status is InclusionStatus.MAYBE
        assert request.rsvp_status is None
        assert request.side is Side.BRIDE

    @pytest.mark.parametrize("name", ["Zoë", "O'Brien", "Smith-Jones", "Mary Ann", "José"])
    def test_accepted_names(self, name):
        request = GuestCreate(first_name=name, last_name="Smith", side="groom")
        assert request.first_name == name

    @pytest.mark.parametrize("name", ["", "R2D2", "Ann!", "a" * 101, "   "])
    def test_rejected_names(self, name):
        with pytest.raises(pydantic.ValidationError):
            GuestCreate(first_name=name, last_name="Smith", side="groom")

    def test_name_at_length_limit(self):
        request = GuestCreate(first_name="a" * 100, last_name="Smith", side="groom")
        assert len(request.first_name) == 100

    def test_side_is_required(self):
        with pytest.raises(pydantic.ValidationError):
            GuestCreate(first_name="Ann", last_name="Smith")

    def test_invalid_email(self):
        with pytest.raises(pydantic.ValidationError):
            GuestCreate(first_name="Ann", last_name="Smith", side="bride", email="not-an-email")

    def test_notes_limit(self):
        GuestCreate(first_name="Ann", last_name="Smith", side="bride", notes="x" * 1000)
        with pytest.raises(pydantic.ValidationError):
            GuestCreate(first_name="Ann", last_name="Smith", side="bride", notes="x" * 1001)

    def test_partial_address_rejected(self):
        """Test that an address must carry all four parts."""
        with pytest.raises(pydantic.ValidationError):
            GuestCreate(
                first_name="Ann", last_name="Smith", side="bride",
                address={"street": "1 Chapel Lane", "city": "Bath"},
            )

    def test_unknown_field_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            GuestCreate(first_name="Ann", last_name="Smith", side="bride", age=30)

    def test_to_guest(self):
        guest = GuestCreate(first_name="Ann", last_name="Smith", side="bride", address=ADDRESS).to_guest("g1")
        assert guest.id == "g1"
        assert guest.address == Address(**ADDRESS)
        assert guest.created_at is None


class TestGuestUpdate:
    """Tests for partial guest updates."""

    def test_empty_update_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            GuestUpdate()

    @pytest.mark.parametrize("field", ["first_name", "last_name", "inclusion_status", "side"])
    def test_required_fields_cannot_be_cleared(self, field):
        with pytest.raises(pydantic.ValidationError):
            GuestUpdate(**{field: None})

    def test_clearing_optional_fields(self):
        update = GuestUpdate(email=None, rsvp_status=None)
        assert update.model_fields_set == {"email", "rsvp_status"}

    def test_address_spans_four_columns(self):
        changes = GuestUpdate(address=None).to_row_changes()
        assert changes == {"street": None, "city": None, "state": None, "zip": None}

        changes = GuestUpdate(address=ADDRESS, side="groom").to_row_changes()
        assert changes == {**ADDRESS, "side": "groom"}

    def test_apply_only_touches_set_fields(self):
        guest = Guest(id="g1", first_name="Ann", last_name="Smith", side="bride", email="ann@example.com")
        updated = guest.apply(GuestUpdate(rsvp_status="attending"))
        assert updated.email == "ann@example.com"
        assert updated.rsvp_status.value == "attending"
        assert guest.rsvp_status is None


class TestGuestRows:
    """Tests for converting guests to and from row snapshots."""

    def test_row_snapshot(self):
        guest = Guest(id="g1", first_name="Ann", last_name="Smith", side="bride", address=ADDRESS)
        row = guest.to_row()
        assert row["street"] == "1 Chapel Lane"
        assert row["inclusion_status"] == "maybe"
        assert Guest.from_row(row) == guest

    def test_row_without_address(self):
        guest = Guest(id="g1", first_name="Ann", last_name="Smith", side="bride")
        assert Guest.from_row(guest.to_row()).address is None

    def test_partial_address_row_is_rejected(self):
        row = Guest(id="g1", first_name="Ann", last_name="Smith", side="bride").to_row()
        row["city"] = "Bath"
        with pytest.raises(ValueError, match="partial address"):
            Guest.from_row(row)


class TestGroupModels:
    """Tests for group requests."""

    def test_name_is_trimmed(self):
        assert GroupCreate(name="  The Smiths ", type="family").name == "The Smiths"

    @pytest.mark.parametrize("name", ["", "   ", "x" * 201])
    def test_rejected_names(self, name):
        with pytest.raises(pydantic.ValidationError):
            GroupCreate(name=name, type="family")

    def test_type_is_required(self):
        with pytest.raises(pydantic.ValidationError):
            GroupCreate(name="The Smiths")

    def test_duplicate_members_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            GroupCreate(name="The Smiths", type="family", guest_ids=["g1", "g1"])

    def test_new_guests_are_validated(self):
        with pytest.raises(pydantic.ValidationError):
            GroupCreate(name="The Smiths", type="family", new_guests=[{"first_name": "Ann"}])

    def test_update_cannot_clear(self):
        with pytest.raises(pydantic.ValidationError):
            GroupUpdate(type=None)
        with pytest.raises(pydantic.ValidationError):
            GroupUpdate()

    def test_update_row_changes(self):
        assert GroupUpdate(name=" Smiths ").to_row_changes() == {"name": "Smiths"}

    def test_apply(self):
        group = Group(id="f1", name="Smiths", type="family")
        renamed = group.apply(GroupUpdate(name="Smith Family"))
        assert renamed.name == "Smith Family"
        assert renamed.type == group.type


class TestMembershipChange:
    def test_needs_a_group(self):
        with pytest.raises(pydantic.ValidationError):
            MembershipChange(guest_id="g1", group_ids=[])

    def test_duplicate_groups_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            MembershipChange(guest_id="g1", group_ids=["f1", "f1"])


class TestValidationError:
    """Tests for translating pydantic errors."""

    def test_errors_keyed_by_field(self):
        with pytest.raises(pydantic.ValidationError) as info:
            GuestCreate(first_name="R2D2", last_name="Smith", side="bride", email="nope")
        error = ValidationError.from_pydantic(info.value)
        assert set(error.errors) == {"first_name", "email"}
        assert error.to_dict()["code"] == "VALIDATION_ERROR"


class TestChangeEvent:
    def test_association_ref(self):
        event = ChangeEvent(
            table=Table.GUEST_GROUPS,
            operation=Operation.INSERT,
            row={"guest_id": "g1", "group_id": "f1", "created_at": NOW},
            server_timestamp=NOW,
        )
        assert event.ref == association_ref("g1", "f1")
        assert event.dedupe_key == ("guest_groups", "g1/f1", NOW)

    def test_guest_ref(self):
        event = ChangeEvent(table=Table.GUESTS, operation=Operation.DELETE, row={"id": "g1"}, server_timestamp=NOW)
        assert event.ref == guest_ref("g1")


class TestTableModels:
    """Tests for the persisted rows."""

    def _guest_row(self, guest_id: str) -> GuestRow:
        return GuestRow(
            id=guest_id, first_name="Ann", last_name="Smith", side="bride",
            created_at=NOW, updated_at=NOW,
        )

    def test_group_name_unique(self, session: Session):
        session.add(GroupRow(id="f1", name="Smiths", type="family", created_at=NOW, updated_at=NOW))
        session.commit()
        session.add(GroupRow(id="f2", name="Smiths", type="couple", created_at=NOW, updated_at=NOW))
        with pytest.raises(IntegrityError):
            session.commit()

    def test_membership_requires_endpoints(self, session: Session):
        session.add(self._guest_row("g1"))
        session.commit()
        session.add(GuestGroupRow(guest_id="g1", group_id="missing", created_at=NOW))
        with pytest.raises(IntegrityError):
            session.commit()

    def test_membership_cascades_on_delete(self, session: Session):
        session.add(self._guest_row("g1"))
        session.add(GroupRow(id="f1", name="Smiths", type="family", created_at=NOW, updated_at=NOW))
        session.commit()
        session.add(GuestGroupRow(guest_id="g1", group_id="f1", created_at=NOW))
        session.commit()

        session.delete(session.get(GuestRow, "g1"))
        session.commit()
        session.expire_all()
        assert session.get(GuestGroupRow, ("g1", "f1")) is None

"""Unit tests for schema validation."""
import pytest
from pydantic import ValidationError

from conftest import make_room
from discovery.models import LocationType, SessionStatus
from discovery.schemas import NearbySchoolsParams, Pagination, Room, SchoolRoomsParams


class TestRoomSchema:
    """Test room coercion rules."""

    def test_missing_location_type_defaults_to_school(self):
        room = Room.model_validate(make_room(location_type=None))

        assert room.location_type is LocationType.SCHOOL

    def test_counts_accept_strings_and_nulls(self):
        room = Room.model_validate(make_room(current_participants="4", max_participants=None))

        assert room.current_participants == 4
        assert room.max_participants == 0

    def test_known_status_becomes_enum(self):
        room = Room.model_validate(make_room(session_status="break"))

        assert room.session_status is SessionStatus.BREAK

    def test_unparseable_distance_becomes_none(self):
        room = Room.model_validate(make_room(distance_km="far"))

        assert room.distance_km is None

    def test_out_of_range_count_becomes_zero(self):
        room = Room.model_validate(make_room(current_participants="1e400"))

        assert room.current_participants == 0


class TestParameterObjects:
    def test_parameters_are_immutable(self):
        params = NearbySchoolsParams(latitude=37.5, longitude=127.0)

        with pytest.raises(ValidationError):
            params.radius_km = 3

    def test_school_rooms_rejects_unknown_status(self):
        with pytest.raises(ValidationError):
            SchoolRoomsParams(school_id="x", session_status="sleeping")

    def test_pagination_defaults(self):
        pagination = Pagination.model_validate({})

        assert pagination.total == 0
        assert pagination.has_more is False

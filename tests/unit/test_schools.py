"""Unit tests for school fetchers and observers."""
import pytest

from conftest import make_school, no_delay
from discovery.errors import RemoteError, ValidationError
from discovery.models import SchoolSortBy, SchoolType
from discovery.schemas import NearbySchoolsParams, SearchSchoolsParams
from discovery.schools import (
    fetch_all_schools_for_map,
    fetch_nearby_schools,
    search_schools,
    use_all_schools_for_map,
    use_nearby_schools,
    use_school_search_query,
)


class TestFetchNearbySchools:
    @pytest.mark.asyncio
    async def test_numeric_strings_are_coerced(self, backend):
        """Counts and distances arrive as strings from the RPC."""
        backend.rpc_results["get_nearby_schools"] = [make_school()]

        schools = await fetch_nearby_schools(
            backend, NearbySchoolsParams(latitude=37.5665, longitude=126.978, radius_km=10)
        )

        assert len(schools) == 1
        school = schools[0]
        assert school.distance_km == 1.2
        assert school.active_rooms_count == 3
        assert school.total_members == 120
        assert school.type is SchoolType.HIGH

    @pytest.mark.asyncio
    async def test_schools_keep_remote_order(self, backend):
        backend.rpc_results["get_nearby_schools"] = [
            make_school(id="school-near", distance_km="2.1"),
            make_school(id="school-far", distance_km="8.4"),
        ]

        schools = await fetch_nearby_schools(
            backend, NearbySchoolsParams(latitude=37.5665, longitude=126.978, radius_km=10)
        )

        assert [school.distance_km for school in schools] == [2.1, 8.4]
        assert [school.id for school in schools] == ["school-near", "school-far"]
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_unsorted_remote_order_is_not_reordered(self, backend):
        backend.rpc_results["get_nearby_schools"] = [
            make_school(id="school-far", distance_km="8.4"),
            make_school(id="school-near", distance_km="2.1"),
        ]

        schools = await fetch_nearby_schools(backend, NearbySchoolsParams(latitude=37.5665, longitude=126.978))

        assert [school.id for school in schools] == ["school-far", "school-near"]

    @pytest.mark.asyncio
    async def test_missing_counts_default_to_zero(self, backend):
        backend.rpc_results["get_nearby_schools"] = [
            make_school(active_rooms_count=None, total_students=None, distance_km=0)
        ]

        schools = await fetch_nearby_schools(backend, NearbySchoolsParams(latitude=37.5, longitude=127.0))

        assert schools[0].active_rooms_count == 0
        assert schools[0].total_members == 0
        assert schools[0].distance_km == 0.0

    @pytest.mark.asyncio
    async def test_radius_is_capped_and_type_forwarded(self, backend):
        backend.rpc_results["get_nearby_schools"] = []

        await fetch_nearby_schools(
            backend,
            NearbySchoolsParams(latitude=37.5, longitude=127.0, radius_km=200, type=SchoolType.MIDDLE),
        )

        _, name, params = backend.calls[0]
        assert name == "get_nearby_schools"
        assert params == {"user_lat": 37.5, "user_lng": 127.0, "radius_km": 50, "filter_type": "중학교"}

    @pytest.mark.asyncio
    async def test_invalid_latitude_makes_no_call(self, backend):
        with pytest.raises(ValidationError) as excinfo:
            await fetch_nearby_schools(backend, NearbySchoolsParams(latitude=91, longitude=127.0))

        assert excinfo.value.field == "latitude"
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_remote_message_is_preferred(self, backend):
        backend.rpc_results["get_nearby_schools"] = RemoteError("boom", details="function missing")

        with pytest.raises(RemoteError) as excinfo:
            await fetch_nearby_schools(backend, NearbySchoolsParams(latitude=37.5, longitude=127.0))

        assert excinfo.value.message == "function missing"

    @pytest.mark.asyncio
    async def test_fallback_message_without_remote_details(self, backend):
        backend.rpc_results["get_nearby_schools"] = RemoteError("boom")

        with pytest.raises(RemoteError) as excinfo:
            await fetch_nearby_schools(backend, NearbySchoolsParams(latitude=37.5, longitude=127.0))

        assert excinfo.value.message == "Failed to load nearby schools."


class TestFetchAllSchoolsForMap:
    @pytest.mark.asyncio
    async def test_defaults_to_secondary_and_university_types(self, backend):
        backend.tables["schools"] = [
            {"id": "1", "name": "A Middle", "type": "중학교", "latitude": 37.0, "longitude": 127.0},
            {"id": "2", "name": "B Elementary", "type": "초등학교", "latitude": 37.1, "longitude": 127.1},
            {"id": "3", "name": "C University", "type": "대학교", "latitude": 37.2, "longitude": 127.2},
        ]

        schools = await fetch_all_schools_for_map(backend)

        assert [school.id for school in schools] == ["1", "3"]
        assert schools[0].active_rooms_count == 0

    @pytest.mark.asyncio
    async def test_explicit_types(self, backend):
        backend.tables["schools"] = [
            {"id": "2", "name": "B Elementary", "type": "초등학교", "latitude": 37.1, "longitude": 127.1},
        ]

        schools = await fetch_all_schools_for_map(backend, [SchoolType.ELEMENTARY])

        assert [school.id for school in schools] == ["2"]


class TestSearchSchools:
    @pytest.mark.asyncio
    async def test_envelope_is_unwrapped(self, backend):
        backend.invoke_results["search-schools"] = {
            "success": True,
            "data": {
                "schools": [make_school(relevance_score="0.9")],
                "pagination": {"total": 1, "limit": 20, "offset": 0, "has_more": False},
            },
        }

        result = await search_schools(backend, SearchSchoolsParams(query="  seoul  "))

        assert result.schools[0].relevance_score == 0.9
        assert result.pagination.total == 1
        _, function, body = backend.calls[0]
        assert function == "search-schools"
        assert body["query"] == "seoul"
        assert body["sort_by"] == SchoolSortBy.RELEVANCE.value

    @pytest.mark.asyncio
    async def test_blank_query_is_sent_as_none_and_limit_capped(self, backend):
        backend.invoke_results["search-schools"] = {"success": True, "data": {"schools": [], "pagination": {}}}

        await search_schools(backend, SearchSchoolsParams(query="   ", limit=500))

        body = backend.calls[0][2]
        assert body["query"] is None
        assert body["limit"] == 100

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope_raises_remote_error(self, backend):
        backend.invoke_results["search-schools"] = {"success": False, "error": "index offline"}

        with pytest.raises(RemoteError) as excinfo:
            await search_schools(backend, SearchSchoolsParams(query="seoul"))

        assert excinfo.value.message == "index offline"

    @pytest.mark.asyncio
    async def test_coordinates_validated_only_when_both_given(self, backend):
        backend.invoke_results["search-schools"] = {"success": True, "data": {"schools": [], "pagination": {}}}

        await search_schools(backend, SearchSchoolsParams(query="x", latitude=120))
        with pytest.raises(ValidationError):
            await search_schools(backend, SearchSchoolsParams(query="x", latitude=120, longitude=0))

        assert len(backend.calls) == 1


class TestSchoolObservers:
    @pytest.mark.asyncio
    async def test_nearby_schools_without_params_is_idle(self, query_client, backend):
        observer = use_nearby_schools(query_client, backend, None)

        result = await observer.fetch()

        assert result.is_idle
        assert not observer.is_loading
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_nearby_schools_served_from_cache_while_fresh(self, query_client, backend):
        backend.rpc_results["get_nearby_schools"] = [make_school()]
        params = NearbySchoolsParams(latitude=37.5, longitude=127.0)

        await use_nearby_schools(query_client, backend, params).fetch()
        result = await use_nearby_schools(query_client, backend, params).fetch()

        assert result.is_success
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_all_schools_retry_once(self, query_client, backend):
        backend.tables["schools"] = RemoteError("down")

        result = await use_all_schools_for_map(query_client, backend, retry_delay=no_delay).fetch()

        assert result.is_error
        assert result.failure_count == 2
        assert result.error.message == "Failed to load the school list."

    @pytest.mark.asyncio
    async def test_search_query_observer_without_params_is_idle(self, query_client, backend):
        result = await use_school_search_query(query_client, backend, None).fetch()

        assert result.is_idle
        assert backend.calls == []

"""Room fetchers (map viewport, radius, per school) and their query observers."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError as SchemaError

from .backend import DiscoveryBackend, call_remote, unwrap_envelope
from .errors import RemoteError
from .keys import map_rooms_keys, school_rooms_keys
from .models import LocationType
from .query import QueryClient, QueryObserver, QueryOptions
from .schemas import (
    MapRoomsParams,
    MapRoomsResult,
    NearbyRoomsParams,
    NearbyRoomsResult,
    Pagination,
    Room,
    RoomDetail,
    School,
    SchoolRoomsParams,
    SchoolRoomsResult,
    SchoolRoomStatistics,
)
from .validation import MAX_RADIUS_KM, cap, validate_bounds, validate_coordinates, validate_uuid

logger = logging.getLogger(__name__)

MAX_NEARBY_LIMIT = 100
MAX_SCHOOL_ROOMS_LIMIT = 50

# Occupancy and session status change often.
ROOM_QUERY_OPTIONS = QueryOptions(stale_time=30, gc_time=5 * 60, refetch_on_window_focus=True)

_ROOM_FIELDS = (
    "id",
    "name",
    "description",
    "goal",
    "creator_id",
    "is_public",
    "max_participants",
    "current_participants",
    "session_status",
    "session_start_time",
    "school_id",
    "school_name",
    "latitude",
    "longitude",
    "location_type",
    "location_name",
    "distance_km",
    "created_at",
)


def room_from_record(record: Dict[str, Any]) -> Room:
    return Room.model_validate({field: record.get(field) for field in _ROOM_FIELDS})


async def fetch_map_rooms(backend: DiscoveryBackend, params: MapRoomsParams) -> MapRoomsResult:
    fallback = "Failed to load study rooms in this map area."
    bounds, filters = params.bounds, params.filters
    validate_bounds(bounds)
    if filters is not None and filters.school_id is not None:
        validate_uuid(filters.school_id, "school_id", "school")
    rows = await call_remote(
        backend.rpc(
            "get_rooms_in_bounds",
            {
                "north": bounds.north,
                "south": bounds.south,
                "east": bounds.east,
                "west": bounds.west,
                "filter_school_id": filters.school_id if filters else None,
                "filter_session_status": filters.session_status.value if filters and filters.session_status else None,
            },
        ),
        fallback,
        "fetching map rooms",
    )
    try:
        rooms = [room_from_record(row) for row in rows or []]
    except (SchemaError, AttributeError) as exc:
        logger.error("Unexpected map rooms payload: %s", exc)
        raise RemoteError(fallback) from exc
    return MapRoomsResult(rooms=rooms, total=len(rooms))


async def fetch_nearby_rooms(backend: DiscoveryBackend, params: NearbyRoomsParams) -> NearbyRoomsResult:
    fallback = "Failed to load nearby study rooms."
    validate_coordinates(params.latitude, params.longitude)
    if params.school_id is not None:
        validate_uuid(params.school_id, "school_id", "school")
    payload = await call_remote(
        backend.invoke(
            "get-nearby-rooms",
            {
                "latitude": params.latitude,
                "longitude": params.longitude,
                "radius_km": cap(params.radius_km, MAX_RADIUS_KM),
                "school_id": params.school_id,
                "session_status": params.session_status.value if params.session_status else None,
                "limit": min(params.limit, MAX_NEARBY_LIMIT),
                "offset": params.offset,
            },
        ),
        fallback,
        "fetching nearby rooms",
    )
    data = unwrap_envelope(payload, fallback)
    try:
        rooms = [room_from_record(row) for row in data.get("rooms") or []]
        pagination = Pagination.model_validate(data.get("pagination") or {})
    except (SchemaError, AttributeError) as exc:
        logger.error("Unexpected nearby rooms payload: %s", exc)
        raise RemoteError(fallback) from exc
    return NearbyRoomsResult(rooms=rooms, total=pagination.total, pagination=pagination)


def _school_room(record: Dict[str, Any], school: School) -> RoomDetail:
    # Rooms listed under a school are located at that school.
    return RoomDetail.model_validate(
        {
            **{field: record.get(field) for field in _ROOM_FIELDS},
            "creator_name": record.get("creator_name"),
            "creator_avatar_url": record.get("creator_avatar_url"),
            "thumbnail_url": record.get("thumbnail_url"),
            "tags": record.get("tags"),
            "school_id": school.id,
            "school_name": school.name,
            "latitude": school.latitude,
            "longitude": school.longitude,
            "location_type": LocationType.SCHOOL,
            "location_name": school.name,
            "distance_km": None,
        }
    )


async def fetch_school_rooms(backend: DiscoveryBackend, params: SchoolRoomsParams) -> SchoolRoomsResult:
    fallback = "Failed to load this school's study rooms."
    validate_uuid(params.school_id, "school_id", "school")
    status = params.session_status
    payload = await call_remote(
        backend.invoke(
            "get-rooms-by-school",
            {
                "school_id": params.school_id,
                "session_status": getattr(status, "value", status),
                "include_private": params.include_private,
                "sort_by": params.sort_by.value,
                "limit": min(params.limit, MAX_SCHOOL_ROOMS_LIMIT),
                "offset": params.offset,
            },
        ),
        fallback,
        "fetching school rooms",
    )
    data = unwrap_envelope(payload, fallback)
    try:
        raw_school = data.get("school") or {}
        school = School.model_validate(
            {
                "id": raw_school.get("id"),
                "name": raw_school.get("name"),
                "type": raw_school.get("type"),
                "region": raw_school.get("region"),
                "address": raw_school.get("address"),
                "latitude": raw_school.get("latitude"),
                "longitude": raw_school.get("longitude"),
                "active_rooms_count": raw_school.get("active_rooms_count"),
                "total_members": raw_school.get("total_members"),
            }
        )
        rooms = [_school_room(record, school) for record in data.get("rooms") or []]
        statistics = SchoolRoomStatistics.model_validate(data.get("statistics") or {})
        pagination = Pagination.model_validate(data.get("pagination") or {})
    except (SchemaError, AttributeError) as exc:
        logger.error("Unexpected school rooms payload: %s", exc)
        raise RemoteError(fallback) from exc
    return SchoolRoomsResult(school=school, rooms=rooms, statistics=statistics, pagination=pagination)


def use_map_rooms(
    client: QueryClient,
    backend: DiscoveryBackend,
    params: Optional[MapRoomsParams],
    **overrides: Any,
) -> QueryObserver[MapRoomsResult]:
    """
    Observe the rooms inside the visible map viewport.

    Example::

        bounds = MapBounds(north=37.6, south=37.5, east=127.1, west=126.9)
        async with use_map_rooms(client, backend, MapRoomsParams(bounds=bounds)) as rooms:
            render(rooms.data)
    """

    options = ROOM_QUERY_OPTIONS.replace(**overrides)
    if params is None:
        return QueryObserver(client, map_rooms_keys.all, None, options)
    return QueryObserver(
        client,
        map_rooms_keys.bounds(params.bounds, params.filters),
        lambda: fetch_map_rooms(backend, params),
        options,
    )


def use_nearby_rooms(
    client: QueryClient,
    backend: DiscoveryBackend,
    params: Optional[NearbyRoomsParams],
    **overrides: Any,
) -> QueryObserver[NearbyRoomsResult]:
    options = ROOM_QUERY_OPTIONS.replace(**overrides)
    if params is None:
        return QueryObserver(client, map_rooms_keys.all, None, options)
    return QueryObserver(
        client,
        map_rooms_keys.nearby(params),
        lambda: fetch_nearby_rooms(backend, params),
        options,
    )


def use_school_rooms(
    client: QueryClient,
    backend: DiscoveryBackend,
    school_id: Optional[str],
    *,
    session_status: Optional[Any] = None,
    include_private: Optional[bool] = None,
    sort_by: Optional[Any] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    **overrides: Any,
) -> QueryObserver[SchoolRoomsResult]:
    options = ROOM_QUERY_OPTIONS.replace(**overrides)
    if not school_id:
        return QueryObserver(client, school_rooms_keys.all, None, options)
    given = {
        "session_status": session_status,
        "include_private": include_private,
        "sort_by": sort_by,
        "limit": limit,
        "offset": offset,
    }
    params = SchoolRoomsParams(school_id=school_id, **{key: value for key, value in given.items() if value is not None})
    return QueryObserver(
        client,
        school_rooms_keys.list(params),
        lambda: fetch_school_rooms(backend, params),
        options,
    )

"""School fetchers and their query observers."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as SchemaError

from .backend import DiscoveryBackend, call_remote, in_, unwrap_envelope
from .errors import RemoteError
from .keys import all_schools_keys, nearby_schools_keys, search_schools_keys
from .models import MAP_SCHOOL_TYPES, SchoolType
from .query import QueryClient, QueryObserver, QueryOptions
from .schemas import (
    NearbySchoolsParams,
    Pagination,
    School,
    SchoolMapData,
    SchoolWithRelevance,
    SearchSchoolsParams,
    SearchSchoolsResult,
)
from .validation import MAX_RADIUS_KM, cap, validate_coordinates

logger = logging.getLogger(__name__)

MAX_SEARCH_LIMIT = 100

SCHOOL_QUERY_OPTIONS = QueryOptions(stale_time=5 * 60, gc_time=30 * 60, refetch_on_window_focus=False)
ALL_SCHOOLS_QUERY_OPTIONS = QueryOptions(
    stale_time=60 * 60,
    gc_time=24 * 60 * 60,
    retry=1,
    retry_delay=lambda _attempt: 1.0,
    refetch_on_window_focus=False,
)


def _school_from_record(record: Dict[str, Any]) -> School:
    return School.model_validate(
        {
            "id": record.get("id"),
            "name": record.get("name"),
            "type": record.get("type"),
            "region": record.get("region"),
            "address": record.get("address"),
            "latitude": record.get("latitude"),
            "longitude": record.get("longitude"),
            "distance_km": record.get("distance_km"),
            "active_rooms_count": record.get("active_rooms_count"),
            "total_members": record.get("total_students"),
        }
    )


async def fetch_nearby_schools(backend: DiscoveryBackend, params: NearbySchoolsParams) -> List[School]:
    """Schools within ``radius_km`` of a point, in the order the store ranks them."""

    validate_coordinates(params.latitude, params.longitude)
    rows = await call_remote(
        backend.rpc(
            "get_nearby_schools",
            {
                "user_lat": params.latitude,
                "user_lng": params.longitude,
                "radius_km": cap(params.radius_km, MAX_RADIUS_KM),
                "filter_type": params.type.value if params.type else None,
            },
        ),
        "Failed to load nearby schools.",
        "fetching nearby schools",
    )
    try:
        return [_school_from_record(row) for row in rows or []]
    except (SchemaError, AttributeError) as exc:
        logger.error("Unexpected nearby schools payload: %s", exc)
        raise RemoteError("Failed to load nearby schools.") from exc


async def fetch_all_schools_for_map(
    backend: DiscoveryBackend, types: Optional[Iterable[SchoolType]] = None
) -> List[SchoolMapData]:
    """Bulk load for map markers; a plain table read is faster than the RPC here."""

    school_types = [SchoolType(t).value for t in (types if types is not None else MAP_SCHOOL_TYPES)]
    rows = await call_remote(
        backend.select(
            "schools",
            "id, name, short_name, type, latitude, longitude, active_rooms_count",
            filters={"type": in_(school_types)},
            order="name",
        ),
        "Failed to load the school list.",
        "fetching all schools",
    )
    try:
        return [SchoolMapData.model_validate(row) for row in rows or []]
    except SchemaError as exc:
        logger.error("Unexpected school list payload: %s", exc)
        raise RemoteError("Failed to load the school list.") from exc


async def search_schools(backend: DiscoveryBackend, params: SearchSchoolsParams) -> SearchSchoolsResult:
    fallback = "School search failed."
    if params.latitude is not None and params.longitude is not None:
        validate_coordinates(params.latitude, params.longitude)
    query = (params.query or "").strip() or None
    payload = await call_remote(
        backend.invoke(
            "search-schools",
            {
                "query": query,
                "latitude": params.latitude,
                "longitude": params.longitude,
                "radius_km": params.radius_km,
                "type": params.type.value if params.type else None,
                "region": params.region,
                "sort_by": params.sort_by.value,
                "limit": min(params.limit, MAX_SEARCH_LIMIT),
                "offset": params.offset,
            },
        ),
        fallback,
        "searching schools",
    )
    data = unwrap_envelope(payload, fallback)
    try:
        schools = [
            SchoolWithRelevance.model_validate(
                {
                    **_school_from_record(record).model_dump(),
                    "relevance_score": record.get("relevance_score"),
                }
            )
            for record in data.get("schools") or []
        ]
        pagination = Pagination.model_validate(data.get("pagination") or {})
    except (SchemaError, AttributeError) as exc:
        logger.error("Unexpected school search payload: %s", exc)
        raise RemoteError(fallback) from exc
    return SearchSchoolsResult(schools=schools, pagination=pagination)


def use_nearby_schools(
    client: QueryClient,
    backend: DiscoveryBackend,
    params: Optional[NearbySchoolsParams],
    **overrides: Any,
) -> QueryObserver[List[School]]:
    """
    Observe schools near the user's location.

    Example::

        observer = use_nearby_schools(client, backend, NearbySchoolsParams(latitude=37.5665, longitude=126.978, radius_km=10))
        result = await observer.fetch()
    """

    options = SCHOOL_QUERY_OPTIONS.replace(**overrides)
    if params is None:
        return QueryObserver(client, nearby_schools_keys.all, None, options)
    return QueryObserver(
        client,
        nearby_schools_keys.list(params),
        lambda: fetch_nearby_schools(backend, params),
        options,
    )


def use_all_schools_for_map(
    client: QueryClient,
    backend: DiscoveryBackend,
    types: Optional[Iterable[SchoolType]] = None,
    **overrides: Any,
) -> QueryObserver[List[SchoolMapData]]:
    type_list = list(types) if types is not None else None
    return QueryObserver(
        client,
        all_schools_keys.for_map(type_list),
        lambda: fetch_all_schools_for_map(backend, type_list),
        ALL_SCHOOLS_QUERY_OPTIONS.replace(**overrides),
    )


def use_school_search_query(
    client: QueryClient,
    backend: DiscoveryBackend,
    params: Optional[SearchSchoolsParams],
    **overrides: Any,
) -> QueryObserver[SearchSchoolsResult]:
    """Non-debounced search driven by parameters the caller controls."""

    options = SCHOOL_QUERY_OPTIONS.replace(**overrides)
    if params is None:
        return QueryObserver(client, search_schools_keys.all, None, options)
    return QueryObserver(
        client,
        search_schools_keys.search(params),
        lambda: search_schools(backend, params),
        options,
    )

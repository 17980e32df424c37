from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from common.config import get_settings
from common.dependencies import get_backend, get_caller_backend, get_query_client
from common.logging_middleware import add_audit_middleware
from common.rate_limit import apply_rate_limiter, limiter
from discovery.backend import DiscoveryBackend, SupabaseBackend
from discovery.errors import DiscoveryError
from discovery.membership import use_join_room, use_leave_room
from discovery.models import RoomSortBy, SchoolSortBy, SchoolType, SessionStatus
from discovery.query import QueryClient, QueryResult
from discovery.rooms import use_map_rooms, use_nearby_rooms, use_school_rooms
from discovery.schemas import (
    JoinRoomParams,
    JoinRoomResult,
    LeaveRoomParams,
    LeaveRoomResult,
    MapBounds,
    MapFilters,
    MapRoomsParams,
    MapRoomsResult,
    NearbyRoomsParams,
    NearbyRoomsResult,
    NearbySchoolsParams,
    School,
    SchoolMapData,
    SchoolRoomsResult,
    SearchSchoolsParams,
    SearchSchoolsResult,
)
from discovery.schools import use_all_schools_for_map, use_nearby_schools, use_school_search_query

settings = get_settings()

# Browsers retry on their own; a gateway request should not sit in backoff.
GATEWAY_RETRY = 0

SCHOOL_ROOM_STATUS_PATTERN = "^(waiting|studying|break|ended|all)$"


def discovery_error_handler(_: Request, exc: DiscoveryError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def _data_or_raise(result: QueryResult[Any]) -> Any:
    # Stale data is still served when a background refresh failed.
    if result.data is None and result.error is not None:
        raise result.error
    return result.data


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    yield
    await fastapi_app.state.backend.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Study Map Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.state.backend = SupabaseBackend(settings)
    fastapi_app.state.query_client = QueryClient(maxsize=settings.query_cache_maxsize)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "study_map")
    fastapi_app.add_exception_handler(DiscoveryError, discovery_error_handler)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "study_map"}


@app.get("/schools/nearby", response_model=List[School], tags=["schools"])
@limiter.limit("60/minute")
async def nearby_schools(
    request: Request,
    latitude: float,
    longitude: float,
    radius_km: float = 15,
    type: Optional[SchoolType] = None,
    client: QueryClient = Depends(get_query_client),
    backend: DiscoveryBackend = Depends(get_backend),
) -> Any:
    params = NearbySchoolsParams(latitude=latitude, longitude=longitude, radius_km=radius_km, type=type)
    return _data_or_raise(await use_nearby_schools(client, backend, params, retry=GATEWAY_RETRY).fetch())


@app.get("/schools/map", response_model=List[SchoolMapData], tags=["schools"])
@limiter.limit("30/minute")
async def schools_for_map(
    request: Request,
    types: Optional[List[SchoolType]] = Query(default=None),
    client: QueryClient = Depends(get_query_client),
    backend: DiscoveryBackend = Depends(get_backend),
) -> Any:
    return _data_or_raise(await use_all_schools_for_map(client, backend, types, retry=GATEWAY_RETRY).fetch())


@app.get("/schools/search", response_model=SearchSchoolsResult, tags=["schools"])
@limiter.limit("120/minute")
async def search(
    request: Request,
    query: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_km: Optional[float] = None,
    type: Optional[SchoolType] = None,
    region: Optional[str] = None,
    sort_by: SchoolSortBy = SchoolSortBy.RELEVANCE,
    limit: int = 20,
    offset: int = 0,
    client: QueryClient = Depends(get_query_client),
    backend: DiscoveryBackend = Depends(get_backend),
) -> Any:
    params = SearchSchoolsParams(
        query=query,
        latitude=latitude,
        longitude=longitude,
        radius_km=radius_km,
        type=type,
        region=region,
        sort_by=sort_by,
        limit=limit,
        offset=offset,
    )
    return _data_or_raise(await use_school_search_query(client, backend, params, retry=GATEWAY_RETRY).fetch())


@app.get("/schools/{school_id}/rooms", response_model=SchoolRoomsResult, tags=["rooms"])
@limiter.limit("60/minute")
async def school_rooms(
    request: Request,
    school_id: str,
    session_status: Optional[str] = Query(default=None, pattern=SCHOOL_ROOM_STATUS_PATTERN),
    include_private: bool = False,
    sort_by: RoomSortBy = RoomSortBy.STATUS,
    limit: int = 20,
    offset: int = 0,
    client: QueryClient = Depends(get_query_client),
    backend: DiscoveryBackend = Depends(get_backend),
) -> Any:
    observer = use_school_rooms(
        client,
        backend,
        school_id,
        session_status=session_status,
        include_private=include_private,
        sort_by=sort_by,
        limit=limit,
        offset=offset,
        retry=GATEWAY_RETRY,
    )
    return _data_or_raise(await observer.fetch())


@app.get("/rooms/in-bounds", response_model=MapRoomsResult, tags=["rooms"])
@limiter.limit("120/minute")
async def rooms_in_bounds(
    request: Request,
    north: float,
    south: float,
    east: float,
    west: float,
    school_id: Optional[str] = None,
    session_status: Optional[SessionStatus] = None,
    client: QueryClient = Depends(get_query_client),
    backend: DiscoveryBackend = Depends(get_backend),
) -> Any:
    filters = None
    if school_id or session_status:
        filters = MapFilters(school_id=school_id, session_status=session_status)
    params = MapRoomsParams(bounds=MapBounds(north=north, south=south, east=east, west=west), filters=filters)
    return _data_or_raise(await use_map_rooms(client, backend, params, retry=GATEWAY_RETRY).fetch())


@app.get("/rooms/nearby", response_model=NearbyRoomsResult, tags=["rooms"])
@limiter.limit("120/minute")
async def nearby_rooms(
    request: Request,
    latitude: float,
    longitude: float,
    radius_km: float = 5,
    school_id: Optional[str] = None,
    session_status: Optional[SessionStatus] = None,
    limit: int = 50,
    offset: int = 0,
    client: QueryClient = Depends(get_query_client),
    backend: DiscoveryBackend = Depends(get_backend),
) -> Any:
    params = NearbyRoomsParams(
        latitude=latitude,
        longitude=longitude,
        radius_km=radius_km,
        school_id=school_id,
        session_status=session_status,
        limit=limit,
        offset=offset,
    )
    return _data_or_raise(await use_nearby_rooms(client, backend, params, retry=GATEWAY_RETRY).fetch())


@app.post("/rooms/{room_id}/join", response_model=JoinRoomResult, tags=["rooms"])
@limiter.limit("20/minute")
async def join(
    request: Request,
    room_id: str,
    client: QueryClient = Depends(get_query_client),
    backend: DiscoveryBackend = Depends(get_caller_backend),
) -> JoinRoomResult:
    return await use_join_room(client, backend).mutate(JoinRoomParams(room_id=room_id))


@app.post("/rooms/{room_id}/leave", response_model=LeaveRoomResult, tags=["rooms"])
@limiter.limit("20/minute")
async def leave(
    request: Request,
    room_id: str,
    client: QueryClient = Depends(get_query_client),
    backend: DiscoveryBackend = Depends(get_caller_backend),
) -> LeaveRoomResult:
    return await use_leave_room(client, backend).mutate(LeaveRoomParams(room_id=room_id))

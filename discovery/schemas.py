"""Pydantic schemas for the discovery layer: entities, parameter objects and results."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from .models import LocationType, RoomSortBy, SchoolSortBy, SchoolType, SessionStatus


def _to_count(value: object) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return 0


def _to_optional_float(value: object) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _to_location_type(value: object) -> object:
    return value or LocationType.SCHOOL


Count = Annotated[int, BeforeValidator(_to_count)]
OptionalFloat = Annotated[Optional[float], BeforeValidator(_to_optional_float)]
RoomStatus = Annotated[Union[SessionStatus, str], Field(union_mode="left_to_right")]


# Entities


class School(BaseModel):
    id: str
    name: str
    short_name: Optional[str] = None
    type: SchoolType
    region: Optional[str] = None
    district: Optional[str] = None
    address: Optional[str] = None
    latitude: float
    longitude: float
    logo_url: Optional[str] = None
    distance_km: OptionalFloat = None
    active_rooms_count: Count = 0
    total_members: Count = 0


class SchoolWithRelevance(School):
    relevance_score: OptionalFloat = None


class SchoolMapData(BaseModel):
    """Minimal school projection used to pre-load map markers."""

    id: str
    name: str
    short_name: Optional[str] = None
    type: SchoolType
    latitude: float
    longitude: float
    active_rooms_count: Count = 0


class Room(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    goal: Optional[str] = None
    creator_id: str
    is_public: bool = True
    max_participants: Count = 0
    current_participants: Count = 0
    session_status: RoomStatus
    session_start_time: Optional[datetime] = None
    school_id: Optional[str] = None
    school_name: Optional[str] = None
    latitude: float
    longitude: float
    location_type: Annotated[LocationType, BeforeValidator(_to_location_type)] = LocationType.SCHOOL
    location_name: Optional[str] = None
    distance_km: OptionalFloat = None
    created_at: datetime


class RoomDetail(Room):
    creator_name: Optional[str] = None
    creator_avatar_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    tags: Optional[List[str]] = None


class Pagination(BaseModel):
    total: Count = 0
    limit: Count = 0
    offset: Count = 0
    has_more: bool = False


class SchoolRoomStatistics(BaseModel):
    total_rooms: Count = 0
    studying_rooms: Count = 0
    waiting_rooms: Count = 0
    break_rooms: Count = 0
    total_participants: Count = 0


class AuthUser(BaseModel):
    id: str
    email: Optional[str] = None


# Parameter objects. Range checks live in the fetchers, not here, so that bad
# coordinates surface as the layer's own ValidationError before any call.


class _Params(BaseModel):
    model_config = ConfigDict(frozen=True)


class NearbySchoolsParams(_Params):
    latitude: float
    longitude: float
    radius_km: float = 15
    type: Optional[SchoolType] = None


class SearchSchoolsParams(_Params):
    query: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_km: Optional[float] = None
    type: Optional[SchoolType] = None
    region: Optional[str] = None
    sort_by: SchoolSortBy = SchoolSortBy.RELEVANCE
    limit: int = 20
    offset: int = 0


class SchoolRoomsParams(_Params):
    school_id: str
    session_status: Union[SessionStatus, Literal["all"]] = "all"
    include_private: bool = False
    sort_by: RoomSortBy = RoomSortBy.STATUS
    limit: int = 20
    offset: int = 0


class MapBounds(_Params):
    north: float
    south: float
    east: float
    west: float


class MapFilters(_Params):
    school_id: Optional[str] = None
    session_status: Optional[SessionStatus] = None


class MapRoomsParams(_Params):
    bounds: MapBounds
    filters: Optional[MapFilters] = None


class NearbyRoomsParams(_Params):
    latitude: float
    longitude: float
    radius_km: float = 5
    school_id: Optional[str] = None
    session_status: Optional[SessionStatus] = None
    limit: int = 50
    offset: int = 0


class JoinRoomParams(_Params):
    room_id: str


class LeaveRoomParams(_Params):
    room_id: str


# Results


class MapRoomsResult(BaseModel):
    rooms: List[Room]
    total: int


class NearbyRoomsResult(MapRoomsResult):
    pagination: Pagination


class SchoolRoomsResult(BaseModel):
    school: School
    rooms: List[RoomDetail]
    statistics: SchoolRoomStatistics
    pagination: Pagination


class SearchSchoolsResult(BaseModel):
    schools: List[SchoolWithRelevance]
    pagination: Pagination


class JoinRoomResult(BaseModel):
    success: bool = True
    room: RoomDetail
    message: str


class LeaveRoomResult(BaseModel):
    success: bool = True
    message: str

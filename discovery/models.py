"""Closed value sets shared across the discovery layer."""
from __future__ import annotations

from enum import Enum
from typing import FrozenSet


class SchoolType(str, Enum):
    # Values are the labels stored in the schools table.
    ELEMENTARY = "초등학교"
    MIDDLE = "중학교"
    HIGH = "고등학교"
    UNIVERSITY = "대학교"
    OTHER = "기타"


class SessionStatus(str, Enum):
    WAITING = "waiting"
    STUDYING = "studying"
    BREAK = "break"
    ENDED = "ended"


ACTIVE_SESSION_STATUSES: FrozenSet[SessionStatus] = frozenset(
    {SessionStatus.WAITING, SessionStatus.STUDYING, SessionStatus.BREAK}
)

MAP_SCHOOL_TYPES = (SchoolType.MIDDLE, SchoolType.HIGH, SchoolType.UNIVERSITY)


class LocationType(str, Enum):
    SCHOOL = "school"
    HOME = "home"
    CUSTOM = "custom"


class SchoolSortBy(str, Enum):
    NAME = "name"
    DISTANCE = "distance"
    ACTIVE_ROOMS = "active_rooms"
    RELEVANCE = "relevance"


class RoomSortBy(str, Enum):
    CREATED_AT = "created_at"
    PARTICIPANTS = "participants"
    STATUS = "status"

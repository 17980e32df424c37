"""Join/leave study rooms.

The store is the system of record. By default the participant count is
adjusted by reading the current count and then writing the new one, so two
clients joining at the same moment can both read 4 and both write 5.
``AtomicRpcCounter`` moves the adjustment into a single RPC with a server-side
floor and ceiling; it is opt-in because it changes what callers observe under
concurrent load.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Generic, Optional, Protocol, TypeVar

from pydantic import ValidationError as SchemaError

from common.config import Settings, get_settings

from .backend import DiscoveryBackend, call_remote, eq
from .errors import (
    AuthRequiredError,
    NotFoundError,
    PrivateRoomError,
    RemoteError,
    RoomFullError,
    RoomUnavailableError,
)
from .keys import map_rooms_keys, school_rooms_keys
from .models import ACTIVE_SESSION_STATUSES
from .query import QueryClient
from .schemas import JoinRoomParams, JoinRoomResult, LeaveRoomParams, LeaveRoomResult, RoomDetail
from .validation import validate_uuid

logger = logging.getLogger(__name__)

ROOMS_TABLE = "study_with_me_rooms"
ROOM_COLUMNS = (
    "id, name, description, goal, creator_id, is_public, max_participants, current_participants, "
    "session_status, session_start_time, school_id, latitude, longitude, location_type, location_name, "
    "thumbnail_url, tags, created_at"
)
JOIN_FAILED = "Failed to join the room."
LEAVE_FAILED = "Failed to leave the room."
ROOM_NOT_FOUND = "Room not found."


class ParticipantCounter(Protocol):
    async def increment(self, backend: DiscoveryBackend, room_id: str, current: int) -> int: ...

    async def decrement(self, backend: DiscoveryBackend, room_id: str, current: int) -> int: ...


class ReadModifyWriteCounter:
    """Writes ``current ± 1`` computed from the count the caller just read."""

    async def _write(self, backend: DiscoveryBackend, room_id: str, value: int, fallback: str, operation: str) -> int:
        await call_remote(
            backend.update(ROOMS_TABLE, {"current_participants": value}, filters={"id": eq(room_id)}),
            fallback,
            operation,
        )
        return value

    async def increment(self, backend: DiscoveryBackend, room_id: str, current: int) -> int:
        return await self._write(backend, room_id, current + 1, JOIN_FAILED, "joining room")

    async def decrement(self, backend: DiscoveryBackend, room_id: str, current: int) -> int:
        return await self._write(backend, room_id, max(0, current - 1), LEAVE_FAILED, "leaving room")


class AtomicRpcCounter:
    """Adjusts the count inside the store; the RPC clamps to [0, max_participants]."""

    def __init__(self, rpc_name: str = "adjust_room_participants") -> None:
        self.rpc_name = rpc_name

    async def _adjust(self, backend: DiscoveryBackend, room_id: str, delta: int, fallback: str, operation: str) -> int:
        value = await call_remote(
            backend.rpc(self.rpc_name, {"room_id": room_id, "delta": delta}),
            fallback,
            operation,
        )
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise RemoteError(fallback) from exc

    async def increment(self, backend: DiscoveryBackend, room_id: str, current: int) -> int:
        return await self._adjust(backend, room_id, 1, JOIN_FAILED, "joining room")

    async def decrement(self, backend: DiscoveryBackend, room_id: str, current: int) -> int:
        return await self._adjust(backend, room_id, -1, LEAVE_FAILED, "leaving room")


def counter_for(settings: Optional[Settings] = None) -> ParticipantCounter:
    settings = settings or get_settings()
    if settings.participant_counter == "atomic":
        return AtomicRpcCounter()
    return ReadModifyWriteCounter()


async def _require_user(backend: DiscoveryBackend):
    user = await backend.get_user()
    if user is None:
        raise AuthRequiredError()
    return user


async def _school_name(backend: DiscoveryBackend, school_id: str) -> Optional[str]:
    try:
        row = await backend.select_one("schools", "name", filters={"id": eq(school_id)})
    except RemoteError as exc:
        logger.warning("Could not resolve school %s for joined room: %s", school_id, exc.message)
        return None
    return row.get("name") if row else None


async def join_room(
    backend: DiscoveryBackend,
    params: JoinRoomParams,
    counter: Optional[ParticipantCounter] = None,
) -> JoinRoomResult:
    validate_uuid(params.room_id, "room_id", "room")
    user = await _require_user(backend)

    row = await call_remote(
        backend.select_one(ROOMS_TABLE, ROOM_COLUMNS, filters={"id": eq(params.room_id)}),
        JOIN_FAILED,
        "loading room to join",
    )
    if not row:
        raise NotFoundError(ROOM_NOT_FOUND)
    try:
        room = RoomDetail.model_validate(row)
    except SchemaError as exc:
        logger.error("Unexpected room payload for %s: %s", params.room_id, exc)
        raise RemoteError(JOIN_FAILED) from exc

    if room.session_status not in ACTIVE_SESSION_STATUSES:
        raise RoomUnavailableError()
    if room.current_participants >= room.max_participants:
        raise RoomFullError()
    if not room.is_public and room.creator_id != user.id:
        raise PrivateRoomError()

    counter = counter or counter_for()
    participants = await counter.increment(backend, room.id, room.current_participants)
    school_name = await _school_name(backend, room.school_id) if room.school_id else None
    logger.info("User %s joined room %s (%d/%d)", user.id, room.id, participants, room.max_participants)
    return JoinRoomResult(
        room=room.model_copy(update={"current_participants": participants, "school_name": school_name}),
        message="You joined the room.",
    )


async def leave_room(
    backend: DiscoveryBackend,
    params: LeaveRoomParams,
    counter: Optional[ParticipantCounter] = None,
) -> LeaveRoomResult:
    validate_uuid(params.room_id, "room_id", "room")
    user = await _require_user(backend)

    row = await call_remote(
        backend.select_one(ROOMS_TABLE, "current_participants", filters={"id": eq(params.room_id)}),
        LEAVE_FAILED,
        "loading room to leave",
    )
    if not row:
        raise NotFoundError(ROOM_NOT_FOUND)
    try:
        count = int(row.get("current_participants") or 0)
    except (TypeError, ValueError):
        count = 0

    counter = counter or counter_for()
    participants = await counter.decrement(backend, params.room_id, count)
    logger.info("User %s left room %s (%d remaining)", user.id, params.room_id, participants)
    return LeaveRoomResult(message="You left the room.")


P = TypeVar("P")
R = TypeVar("R")


class RoomMutation(Generic[P, R]):
    """Mutation state around a join/leave call plus cache invalidation.

    The mutation reflects confirmed remote state only. Callers that want an
    optimistic UI apply their change first and roll it back from ``on_error``.
    """

    operation: Callable[..., Awaitable[Any]]

    def __init__(
        self,
        client: QueryClient,
        backend: DiscoveryBackend,
        *,
        counter: Optional[ParticipantCounter] = None,
        on_success: Optional[Callable[[R], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self.client = client
        self.backend = backend
        self.counter = counter
        self.on_success = on_success
        self.on_error = on_error
        self.reset()

    def reset(self) -> None:
        self.data: Optional[R] = None
        self.error: Optional[BaseException] = None
        self.status = "idle"

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def is_success(self) -> bool:
        return self.status == "success"

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    async def invalidate(self, result: R) -> None:
        raise NotImplementedError

    async def mutate(self, params: P) -> R:
        self.status = "pending"
        self.error = None
        try:
            result = await self.operation(self.backend, params, self.counter)
        except Exception as exc:
            self.error = exc
            self.status = "error"
            if self.on_error is not None:
                self.on_error(exc)
            raise
        self.data = result
        self.status = "success"
        await self.invalidate(result)
        if self.on_success is not None:
            self.on_success(result)
        return result


class JoinRoomMutation(RoomMutation[JoinRoomParams, JoinRoomResult]):
    operation = staticmethod(join_room)

    async def invalidate(self, result: JoinRoomResult) -> None:
        await self.client.invalidate_queries(map_rooms_keys.all)
        if result.room.school_id:
            await self.client.invalidate_queries(school_rooms_keys.by_school(result.room.school_id))


class LeaveRoomMutation(RoomMutation[LeaveRoomParams, LeaveRoomResult]):
    operation = staticmethod(leave_room)

    async def invalidate(self, result: LeaveRoomResult) -> None:
        # The affected school is unknown here, so every school's room list goes.
        await self.client.invalidate_queries(map_rooms_keys.all)
        await self.client.invalidate_queries(school_rooms_keys.all)


def use_join_room(client: QueryClient, backend: DiscoveryBackend, **kwargs: Any) -> JoinRoomMutation:
    return JoinRoomMutation(client, backend, **kwargs)


def use_leave_room(client: QueryClient, backend: DiscoveryBackend, **kwargs: Any) -> LeaveRoomMutation:
    return LeaveRoomMutation(client, backend, **kwargs)

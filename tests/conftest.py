import copy
import os
from typing import Any, Dict, Generator, List, Optional

import pytest
from fastapi import Security
from fastapi.security import HTTPAuthorizationCredentials
from fastapi.testclient import TestClient

os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("SUPABASE_URL", "http://supabase.test")

from common.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from common.dependencies import bearer_scheme, get_backend, get_caller_backend, get_query_client  # noqa: E402
from discovery.query import QueryClient  # noqa: E402
from discovery.schemas import AuthUser  # noqa: E402
from services.study_map.app import app as study_map_app  # noqa: E402

SCHOOL_ID = "2b1e6c1a-6a0e-4c4f-9d51-0c7b7d1e0a11"
ROOM_ID = "7f3a9d2e-1b4c-4e5f-8a6b-9c0d1e2f3a4b"
USER_ID = "user-1"
TOKEN = "user-token"


def _matches(row: Dict[str, Any], filters: Optional[Dict[str, str]]) -> bool:
    for column, condition in (filters or {}).items():
        operator, _, operand = condition.partition(".")
        value = str(row.get(column))
        if operator == "eq" and value != operand:
            return False
        if operator == "in" and value not in operand.strip("()").split(","):
            return False
    return True


class FakeBackend:
    """In-memory stand-in for the managed backend.

    ``rpc_results``/``invoke_results`` map a name to a value, an exception to
    raise, or a callable receiving the request payload. Clones made by
    ``with_access_token`` share all state with their source.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.rpc_results: Dict[str, Any] = {}
        self.invoke_results: Dict[str, Any] = {}
        self.tables: Dict[str, Any] = {}
        self.users: Dict[str, AuthUser] = {}
        self.access_token: Optional[str] = None

    @staticmethod
    def _answer(results: Dict[str, Any], name: str, payload: Dict[str, Any]) -> Any:
        result = results[name]
        if callable(result):
            result = result(payload)
        if isinstance(result, BaseException):
            raise result
        return result

    def calls_of(self, kind: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == kind]

    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        self.calls.append(("rpc", name, params))
        return self._answer(self.rpc_results, name, params)

    async def invoke(self, function: str, body: Dict[str, Any]) -> Any:
        self.calls.append(("invoke", function, body))
        return self._answer(self.invoke_results, function, body)

    async def select(self, table, columns, *, filters=None, order=None, limit=None):
        self.calls.append(("select", table, dict(filters or {})))
        rows = self.tables.get(table, [])
        if isinstance(rows, BaseException):
            raise rows
        matched = [row for row in rows if _matches(row, filters)]
        return matched[:limit] if limit else matched

    async def select_one(self, table, columns, *, filters):
        rows = await self.select(table, columns, filters=filters, limit=1)
        return rows[0] if rows else None

    async def update(self, table, values, *, filters):
        self.calls.append(("update", table, dict(values), dict(filters)))
        for row in self.tables.get(table, []):
            if _matches(row, filters):
                row.update(values)

    async def get_user(self) -> Optional[AuthUser]:
        if not self.access_token:
            return None
        return self.users.get(self.access_token)

    def with_access_token(self, access_token: Optional[str]) -> "FakeBackend":
        clone = copy.copy(self)
        clone.access_token = access_token
        return clone

    async def aclose(self) -> None:
        return None


def make_room(**overrides: Any) -> Dict[str, Any]:
    room = {
        "id": ROOM_ID,
        "name": "Late night math",
        "description": None,
        "goal": "Finish chapter 3",
        "creator_id": "creator-1",
        "is_public": True,
        "max_participants": 10,
        "current_participants": 4,
        "session_status": "studying",
        "session_start_time": "2024-03-01T12:00:00+00:00",
        "school_id": SCHOOL_ID,
        "latitude": 37.5665,
        "longitude": 126.978,
        "location_type": "school",
        "location_name": "Seoul High",
        "thumbnail_url": None,
        "tags": ["math"],
        "created_at": "2024-03-01T11:00:00+00:00",
    }
    room.update(overrides)
    return room


def make_school(**overrides: Any) -> Dict[str, Any]:
    school = {
        "id": SCHOOL_ID,
        "name": "Seoul High",
        "type": "고등학교",
        "region": "Seoul",
        "address": "1 Sejong-daero",
        "latitude": 37.5665,
        "longitude": 126.978,
        "distance_km": "1.2",
        "active_rooms_count": "3",
        "total_students": "120",
    }
    school.update(overrides)
    return school


def no_delay(_attempt: int) -> float:
    return 0.0


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def signed_in_backend(backend: FakeBackend) -> FakeBackend:
    backend.users[TOKEN] = AuthUser(id=USER_ID, email="student@example.com")
    return backend.with_access_token(TOKEN)


@pytest.fixture()
def query_client() -> QueryClient:
    return QueryClient()


@pytest.fixture()
def study_map_client(backend: FakeBackend, query_client: QueryClient) -> Generator[TestClient, None, None]:
    def caller_backend(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> FakeBackend:
        return backend.with_access_token(credentials.credentials if credentials else None)

    study_map_app.dependency_overrides[get_backend] = lambda: backend
    study_map_app.dependency_overrides[get_query_client] = lambda: query_client
    study_map_app.dependency_overrides[get_caller_backend] = caller_backend
    try:
        with TestClient(study_map_app) as client:
            yield client
    finally:
        study_map_app.dependency_overrides.clear()

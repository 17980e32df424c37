"""Managed-backend boundary: RPCs, Edge Functions, table reads/updates and auth.

``DiscoveryBackend`` is what fetchers and mutations talk to. ``SupabaseBackend``
implements it against a Supabase project over httpx; tests substitute an
in-memory fake.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Dict, Iterable, List, Mapping, Optional, Protocol

import httpx

from common.config import Settings, get_settings

from .errors import RemoteError
from .schemas import AuthUser

logger = logging.getLogger(__name__)

Filters = Mapping[str, str]

_ERROR_FIELDS = ("message", "error_description", "msg", "error")


def eq(value: object) -> str:
    return f"eq.{value}"


def in_(values: Iterable[object]) -> str:
    return "in.(" + ",".join(str(value) for value in values) + ")"


class DiscoveryBackend(Protocol):
    async def rpc(self, name: str, params: Dict[str, Any]) -> Any: ...

    async def invoke(self, function: str, body: Dict[str, Any]) -> Any: ...

    async def select(
        self,
        table: str,
        columns: str,
        *,
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    async def select_one(self, table: str, columns: str, *, filters: Filters) -> Optional[Dict[str, Any]]: ...

    async def update(self, table: str, values: Dict[str, Any], *, filters: Filters) -> None: ...

    async def get_user(self) -> Optional[AuthUser]: ...

    def with_access_token(self, access_token: Optional[str]) -> "DiscoveryBackend": ...


async def call_remote(awaitable: Awaitable[Any], fallback: str, operation: str) -> Any:
    """Await a backend call, re-raising failures with the operation's fallback message."""

    try:
        return await awaitable
    except RemoteError as exc:
        logger.error("Error %s: %s", operation, exc.details or exc.message)
        raise RemoteError.from_remote(exc.details, fallback, remote_status=exc.remote_status) from exc


def unwrap_envelope(payload: Any, fallback: str) -> Dict[str, Any]:
    """Return ``data`` from a ``{success, data, error}`` Edge Function envelope.

    ``success: false`` is a failure even when the HTTP status was 200.
    """

    if not isinstance(payload, dict) or not payload.get("success"):
        remote_message = payload.get("error") if isinstance(payload, dict) else None
        raise RemoteError.from_remote(remote_message, fallback, details=remote_message)
    data = payload.get("data")
    if not isinstance(data, dict):
        raise RemoteError(fallback)
    return data


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        for field in _ERROR_FIELDS:
            value = body.get(field)
            if isinstance(value, str) and value:
                return value
    return None


class SupabaseBackend:
    """Supabase REST (PostgREST), Edge Functions and Auth over a shared httpx client."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        access_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._base_url = self._settings.supabase_url.rstrip("/")
        self._access_token = access_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(self._settings.request_timeout_seconds))

    def with_access_token(self, access_token: Optional[str]) -> "SupabaseBackend":
        """Return a backend acting on behalf of a signed-in caller, sharing this client."""

        return SupabaseBackend(self._settings, access_token=access_token, client=self._client)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._settings.supabase_anon_key,
            "Authorization": f"Bearer {self._access_token or self._settings.supabase_anon_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json,
                headers=self._headers(headers),
            )
        except httpx.HTTPError as exc:
            logger.warning("Backend request %s %s failed: %s", method, path, exc)
            raise RemoteError("The service could not be reached. Please try again.") from exc
        if response.is_error:
            detail = _error_detail(response)
            raise RemoteError(
                detail or "The service returned an error.",
                details=detail,
                remote_status=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteError("The service returned an unreadable response.") from exc

    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        response = await self._request("POST", f"/rest/v1/rpc/{name}", json=params)
        return self._json(response)

    async def invoke(self, function: str, body: Dict[str, Any]) -> Any:
        response = await self._request("POST", f"/functions/v1/{function}", json=body)
        return self._json(response)

    async def select(
        self,
        table: str,
        columns: str,
        *,
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order if "." in order else f"{order}.asc"
        if limit is not None:
            params["limit"] = limit
        response = await self._request("GET", f"/rest/v1/{table}", params=params)
        return self._json(response) or []

    async def select_one(self, table: str, columns: str, *, filters: Filters) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, columns, filters=filters, limit=1)
        return rows[0] if rows else None

    async def update(self, table: str, values: Dict[str, Any], *, filters: Filters) -> None:
        await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=dict(filters),
            json=values,
            headers={"Prefer": "return=minimal"},
        )

    async def get_user(self) -> Optional[AuthUser]:
        if not self._access_token:
            return None
        try:
            response = await self._request("GET", "/auth/v1/user")
        except RemoteError as exc:
            if exc.remote_status in (401, 403):
                return None
            raise
        payload = self._json(response)
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        return AuthUser(id=str(payload["id"]), email=payload.get("email"))

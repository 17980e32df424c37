"""Reusable FastAPI dependencies for the query cache and backend access."""
from typing import Optional

from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from discovery.backend import DiscoveryBackend
from discovery.query import QueryClient

bearer_scheme = HTTPBearer(auto_error=False)


def get_query_client(request: Request) -> QueryClient:
    return request.app.state.query_client


def get_backend(request: Request) -> DiscoveryBackend:
    """Anonymous backend used for public reads."""

    return request.app.state.backend


def get_caller_backend(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> DiscoveryBackend:
    """Backend acting as the caller; without a bearer token the mutation will ask for sign-in."""

    token = credentials.credentials if credentials else None
    return request.app.state.backend.with_access_token(token)

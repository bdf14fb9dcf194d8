"""HTTP client for the Aura social backend.

This module provides the SocialApiClient class that handles all REST
communication between the sync core and the backend. It includes:

- Lazily created httpx client with bearer-token authentication
- Mapping of HTTP failures onto a small exception hierarchy
- Fetch endpoints used for hydration and polling
- Mutation endpoints used by the optimistic pipeline
- Awaited identity endpoints (register, login, email, password)
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from aura_sync.core.settings import settings

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_NO_CONTENT = 204
HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_CONFLICT = 409


class ApiError(RuntimeError):
    """Base exception raised for backend failures.

    ``status_code`` is None for transport-level errors (timeouts, refused
    connections, undecodable bodies).
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApiDisabledError(ApiError):
    """Raised when a request is attempted without a configured backend URL."""


class ApiUnauthorizedError(ApiError):
    """Raised when the backend rejects the session token."""


class ConflictError(ApiError):
    """Raised on HTTP 409 from a revision-guarded write.

    Carries the authoritative server state and its revision so the caller
    can force-merge it.
    """

    def __init__(self, message: str, *, state: Any = None, revision: int = 0) -> None:
        super().__init__(message, status_code=HTTP_CONFLICT)
        self.state = state
        self.revision = revision


def _revision_number(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return int(value)


@dataclass(frozen=True)
class ApiConfig:
    """Immutable configuration for backend requests."""

    base_url: str
    timeout_seconds: float

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)


def load_api_config() -> ApiConfig:
    """Build configuration object from global settings."""

    return ApiConfig(
        base_url=settings.api_url.strip().rstrip("/"),
        timeout_seconds=float(settings.http_timeout_seconds),
    )


class SocialApiClient:
    """HTTP client wrapper for the social backend."""

    def __init__(
        self,
        config: ApiConfig | None = None,
        *,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_api_config()
        self.token = token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise ApiDisabledError("Backend URL is not configured")

        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                    headers={"Accept": "application/json"},
                )

        return self._client

    def _build_auth_headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""
        method: str
        path: str
        json_data: Any | None = None
        params: Mapping[str, Any] | None = None

    async def _request(self, params: RequestParams) -> Any:
        client = await self._ensure_client()

        try:
            response = await client.request(
                params.method,
                params.path,
                json=params.json_data,
                params=params.params,
                headers=self._build_auth_headers(),
            )
        except httpx.HTTPError as exc:
            raise ApiError(f"Request {params.method} {params.path} failed: {exc}") from exc

        return self._decode(params, response)

    def _decode(self, params: RequestParams, response: httpx.Response) -> Any:
        status = response.status_code
        if status == HTTP_NO_CONTENT or not response.content:
            body: Any = None
        else:
            try:
                body = response.json()
            except ValueError as exc:
                if status < HTTP_BAD_REQUEST:
                    raise ApiError(
                        f"Malformed response for {params.method} {params.path}",
                        status_code=status,
                    ) from exc
                body = None

        if status == HTTP_CONFLICT:
            payload = body if isinstance(body, Mapping) else {}
            raise ConflictError(
                f"Conflict on {params.method} {params.path}",
                state=payload.get("state", payload),
                revision=_revision_number(payload.get("revision")),
            )
        if status == HTTP_UNAUTHORIZED:
            raise ApiUnauthorizedError("Session expired. Please login again.", status_code=status)
        if status >= HTTP_BAD_REQUEST:
            message = None
            if isinstance(body, Mapping):
                message = body.get("message") or body.get("error")
            raise ApiError(
                str(message or f"Backend responded with {status}"),
                status_code=status,
            )
        return body

    async def get(self, path: str, *, params: Mapping[str, Any] | None = None) -> Any:
        return await self._request(self.RequestParams(method="GET", path=path, params=params))

    async def post(self, path: str, payload: Any | None = None) -> Any:
        return await self._request(self.RequestParams(method="POST", path=path, json_data=payload))

    async def put(self, path: str, payload: Any | None = None) -> Any:
        return await self._request(self.RequestParams(method="PUT", path=path, json_data=payload))

    async def patch(self, path: str, payload: Any | None = None) -> Any:
        return await self._request(self.RequestParams(method="PATCH", path=path, json_data=payload))

    async def delete(self, path: str) -> Any:
        return await self._request(self.RequestParams(method="DELETE", path=path))

    # Fetch endpoints

    async def fetch_users(self) -> Any:
        return await self.get("/api/users")

    async def fetch_follows(self) -> Any:
        return await self.get("/api/follows")

    async def fetch_feed(self, *, limit: int | None = None) -> Any:
        """Fetch feed posts together with their comments and embedded authors."""
        params = {"limit": limit} if limit else None
        return await self.get("/api/posts", params=params)

    async def fetch_stories(self) -> Any:
        return await self.get("/api/stories")

    async def fetch_groups(self) -> Any:
        """Fetch groups with their members, posts and post comments."""
        return await self.get("/api/groups")

    async def fetch_messages(self, *, since: str | None = None) -> Any:
        params = {"since": since} if since else None
        return await self.get("/api/messages", params=params)

    async def fetch_notifications(self) -> Any:
        return await self.get("/api/notifications")

    async def touch_presence(self) -> Any:
        return await self.post("/api/presence")

    # Identity endpoints

    async def register(self, payload: Mapping[str, Any]) -> Any:
        return await self.post("/api/auth/register", dict(payload))

    async def login(self, payload: Mapping[str, Any]) -> Any:
        return await self.post("/api/auth/login", dict(payload))

    async def me(self) -> Any:
        return await self.get("/api/auth/me")

    async def verify_email(self, code: str) -> Any:
        return await self.post("/api/auth/verify-email", {"code": code})

    async def change_password(self, current_password: str, new_password: str) -> Any:
        return await self.post(
            "/api/auth/change-password",
            {"currentPassword": current_password, "newPassword": new_password},
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "ApiConfig",
    "ApiDisabledError",
    "ApiError",
    "ApiUnauthorizedError",
    "ConflictError",
    "SocialApiClient",
    "load_api_config",
]

"""Async HTTP client for the viberater API.

Every call returns the decoded JSON envelope the server sends back
(``{"idea": {...}}``, ``{"project": {...}, "tasks": [...]}``, ...). Failures
are raised as ``RemoteError`` subclasses so callers can tell a dropped
connection (queue and retry) from a rejected request (report, do not retry)
and from a garbage response (report as a generic server error).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .auth import CredentialStore

logger = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh"
LOGIN_PATH = "/auth/login"
LOGOUT_PATH = "/auth/logout"
TRANSIENT_STATUS_CODES = frozenset({408, 429})


class RemoteError(Exception):
    """Base class for failures talking to the server."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return False


class ConnectivityError(RemoteError):
    """The server could not be reached (DNS, refused connection, timeout)."""

    @property
    def retryable(self) -> bool:
        return True


class ServerError(RemoteError):
    """The server answered with a transient failure (5xx, 408, 429)."""

    @property
    def retryable(self) -> bool:
        return True


class ApplicationError(RemoteError):
    """The server rejected the request (validation failed, not found, ...)."""


class AuthenticationError(ApplicationError):
    """The request was unauthorized and the token could not be refreshed."""


class MalformedResponseError(RemoteError):
    """The response body was not JSON or could not be parsed."""

    @property
    def retryable(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


def _is_transient(status_code: int) -> bool:
    return status_code >= 500 or status_code in TRANSIENT_STATUS_CODES


def unwrap(envelope: dict[str, Any], key: str) -> Any:
    """Return ``envelope[key]`` or raise ``MalformedResponseError``."""
    if key not in envelope:
        raise MalformedResponseError(f"Response missing '{key}'")
    return envelope[key]


class RemoteClient:
    """Typed access to the viberater REST API.

    Args:
        server_url: Server origin, e.g. ``https://viberater.example.com``.
            API routes live under ``/api``; the health check at ``/health``.
        credentials: Source of the bearer token. When a request comes back
            401 the stored refresh token is exchanged once and the request
            retried.
        timeout: Transport timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        server_url: str,
        credentials: Optional[CredentialStore] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.credentials = credentials
        self._client = httpx.AsyncClient(
            base_url=f"{self.server_url}/api",
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ── Transport ─────────────────────────────────────────────────

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self.credentials.get_access_token() if self.credentials is not None else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Optional[dict[str, Any]] = None,
        retry_auth: bool = True,
    ) -> dict[str, Any]:
        logger.debug("%s %s", method, path)
        try:
            response = await self._client.request(
                method,
                path,
                json=json_body,
                params=params or None,
                headers=self._headers(),
            )
        except httpx.TransportError as exc:
            raise ConnectivityError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 401 and path not in (REFRESH_PATH, LOGIN_PATH):
            if retry_auth and await self._refresh_access_token():
                return await self._request(
                    method, path, json_body=json_body, params=params, retry_auth=False
                )
            raise AuthenticationError("Authentication required", status_code=401)

        return self._decode(response)

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        status = response.status_code
        text = response.text
        content_type = response.headers.get("content-type", "")

        if "application/json" not in content_type:
            logger.warning("Non-JSON response (%s, %s): %s", status, content_type or "no content-type", text[:200])
            raise MalformedResponseError(f"Server error ({status}): {text[:100]}", status_code=status)

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"Invalid JSON: {text[:100]}", status_code=status) from exc

        if not response.is_success:
            message = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("error")
            message = str(message) if message else f"Request failed with status {status}"
            if _is_transient(status):
                raise ServerError(message, status_code=status)
            raise ApplicationError(message, status_code=status)

        if not isinstance(data, dict):
            raise MalformedResponseError("Expected a JSON object", status_code=status)
        return data

    async def _refresh_access_token(self) -> bool:
        if self.credentials is None:
            return False
        refresh_token = self.credentials.get_refresh_token()
        if not refresh_token:
            return False
        try:
            data = await self._request(
                "POST", REFRESH_PATH, json_body={"refreshToken": refresh_token}, retry_auth=False
            )
        except RemoteError as exc:
            logger.warning("Token refresh failed: %s", exc)
            return False
        access_token = data.get("accessToken")
        if not access_token:
            return False
        self.credentials.set_access_token(str(access_token))
        return True

    # ── Session ───────────────────────────────────────────────────

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """Exchange credentials for tokens and store them.

        Returns the server's ``user`` object.
        """
        data = await self._request(
            "POST", LOGIN_PATH, json_body={"email": email, "password": password}, retry_auth=False
        )
        access_token = data.get("accessToken")
        if not access_token:
            raise MalformedResponseError("Response missing 'accessToken'")
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        if self.credentials is not None:
            self.credentials.save(
                str(access_token),
                refresh_token=data.get("refreshToken"),
                username=user.get("email") or email,
            )
        return user

    async def logout(self) -> None:
        """Revoke the refresh token on the server and forget stored tokens."""
        if self.credentials is None:
            return
        refresh_token = self.credentials.get_refresh_token()
        try:
            if refresh_token:
                await self._request(
                    "POST", LOGOUT_PATH, json_body={"refreshToken": refresh_token}, retry_auth=False
                )
        finally:
            self.credentials.clear()

    # ── Health ────────────────────────────────────────────────────

    async def health(self) -> bool:
        """Quick reachability check against ``<server>/health``."""
        try:
            response = await self._client.get(f"{self.server_url}/health")
        except httpx.TransportError:
            return False
        return response.status_code == 200

    # ── Ideas ─────────────────────────────────────────────────────

    async def get_ideas(self, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        return await self._request("GET", "/ideas", params=params)

    async def get_idea(self, idea_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/ideas/{idea_id}")

    async def create_idea(self, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/ideas", json_body=data)

    async def update_idea(self, idea_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/ideas/{idea_id}", json_body=data)

    async def delete_idea(self, idea_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/ideas/{idea_id}")

    async def promote_idea(self, idea_id: str, project_plan: dict[str, Any]) -> dict[str, Any]:
        """Server-side transaction: creates the project and its tasks, marks the idea promoted."""
        return await self._request("POST", f"/ideas/{idea_id}/promote", json_body=project_plan)

    async def save_refined_idea(
        self,
        idea_id: str,
        conversation: list[dict[str, Any]],
        refined_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH",
            f"/ideas/{idea_id}/refine",
            json_body={"conversation": conversation, "refinedData": refined_data or {}},
        )

    # ── Projects ──────────────────────────────────────────────────

    async def get_projects(self, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        return await self._request("GET", "/projects", params=params)

    async def get_project(self, project_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/projects/{project_id}")

    async def create_project(self, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/projects", json_body=data)

    async def update_project(self, project_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/projects/{project_id}", json_body=data)

    async def delete_project(self, project_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/projects/{project_id}")

    async def demote_project(self, project_id: str) -> dict[str, Any]:
        """Server-side transaction: removes the project and restores its idea."""
        return await self._request("POST", f"/projects/{project_id}/demote")

    # ── Tasks ─────────────────────────────────────────────────────

    async def get_project_tasks(self, project_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/tasks/project/{project_id}")

    async def create_task(self, project_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/tasks/project/{project_id}", json_body=data)

    async def update_task(self, task_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/tasks/{task_id}", json_body=data)

    async def delete_task(self, task_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/tasks/{task_id}")

    async def complete_task(self, task_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/tasks/{task_id}/complete")

    # ── AI ────────────────────────────────────────────────────────

    async def chat(self, messages: list[dict[str, str]], **options: Any) -> dict[str, Any]:
        """Send a conversation to the server's LLM endpoint.

        Returns ``{"content", "provider", "model", "usage"}``.
        """
        return await self._request("POST", "/ai/chat", json_body={"messages": messages, **options})

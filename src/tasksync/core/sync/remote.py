"""
Remote authority client.

The remote authority is the system of record. The queue and the engine talk
to it through the small ``RemoteAuthority`` protocol; ``HttpRemoteAuthority``
implements that protocol over the JSON HTTP API with httpx.

Failures are translated into a small taxonomy:

- TransientDeliveryError: network errors, timeouts, 5xx, 408 and 429.
  Retried by the queue with backoff.
- PermanentRejectionError: any other 4xx. Never retried; the optimistic
  change is rolled back and the server reason is shown to the user.
- OrderingConflictError: a 409 answer to a manual-order write.

Example:
    >>> async with HttpRemoteAuthority("https://tasks.example.com", token="...") as remote:
    ...     tasks = await remote.fetch_collection(EntityKind.TASK)
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from tasksync.core.entities import EntityKind

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

COLLECTION_PATHS: dict[EntityKind, str] = {
    EntityKind.TASK: "/api/tasks",
    EntityKind.LIST: "/api/lists",
}

# Keys a wrapped collection response may use
COLLECTION_KEYS: dict[EntityKind, str] = {
    EntityKind.TASK: "tasks",
    EntityKind.LIST: "lists",
    EntityKind.MEMBER: "members",
}


class RemoteError(Exception):
    """Base exception for remote authority failures."""


class TransientDeliveryError(RemoteError):
    """The request may succeed if retried later."""


class PermanentRejectionError(RemoteError):
    """The authority refused the request; retrying will not help."""

    def __init__(self, status_code: int, reason: str | None = None) -> None:
        self.status_code = status_code
        self.reason = reason
        message = f"Rejected with HTTP {status_code}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class OrderingConflictError(PermanentRejectionError):
    """A manual-order write no longer matches server-side membership."""


class RemoteAuthority(Protocol):
    """What the sync core needs from the system of record."""

    async def fetch_collection(self, kind: EntityKind) -> list[dict[str, Any]]: ...

    async def send(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]: ...


def entity_path(
    kind: EntityKind,
    entity_id: str | None = None,
    *,
    list_id: str | None = None,
) -> str:
    """
    Per-entity endpoint for a kind.

    Members live under their list, so ``list_id`` is required for them.
    """
    if kind == EntityKind.MEMBER:
        if not list_id:
            raise ValueError("list_id is required for member endpoints")
        base = f"/api/lists/{list_id}/members"
    else:
        base = COLLECTION_PATHS[kind]
    return f"{base}/{entity_id}" if entity_id else base


# The "my tasks" manual order lives in the user's preferences
MY_TASKS_PREFERENCES_PATH = "/api/user/my-tasks-preferences"


def order_path(list_id: str) -> str:
    return f"/api/lists/{list_id}/manual-order"


def is_order_path(path: str) -> bool:
    return path.rstrip("/").endswith("/manual-order")


def classify_http_error(
    status_code: int,
    reason: str | None = None,
    *,
    ordering: bool = False,
) -> RemoteError:
    """
    Map an HTTP error status to the error taxonomy.

    Args:
        status_code: HTTP status of the failed response
        reason: Machine-readable reason from the response body, if any
        ordering: True when the request was a manual-order write

    Returns:
        The exception to raise (not raised here)
    """
    if 500 <= status_code < 600 or status_code in (408, 429):
        return TransientDeliveryError(f"HTTP {status_code}" + (f": {reason}" if reason else ""))
    if status_code == 409 and ordering:
        return OrderingConflictError(status_code, reason)
    return PermanentRejectionError(status_code, reason)


def extract_reason(response: httpx.Response) -> str | None:
    """Pull the server-provided reason out of an error response."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text or response.reason_phrase or None
    if isinstance(body, dict):
        for key in ("error", "message", "detail", "reason"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return response.reason_phrase or None


def unwrap_collection(kind: EntityKind, body: Any) -> list[dict[str, Any]]:
    """Accept both bare arrays and ``{"tasks": [...]}`` style responses."""
    if isinstance(body, dict):
        body = body.get(COLLECTION_KEYS[kind], body.get("items", []))
    if not isinstance(body, list):
        return []
    return [item for item in body if isinstance(item, dict)]


class HttpRemoteAuthority:
    """
    RemoteAuthority over the HTTP API.

    Args:
        base_url: API origin, e.g. ``https://tasks.example.com``
        token: Optional bearer token
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> HttpRemoteAuthority:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Timed out: {method} {path}") from e
        except httpx.RequestError as e:
            raise TransientDeliveryError(f"Network error: {e}") from e

        if response.is_error:
            reason = extract_reason(response)
            logger.debug("%s %s -> %d (%s)", method, path, response.status_code, reason)
            raise classify_http_error(
                response.status_code, reason, ordering=is_order_path(path)
            )

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise TransientDeliveryError(f"Invalid JSON from {method} {path}") from e

    async def fetch_collection(self, kind: EntityKind) -> list[dict[str, Any]]:
        if kind not in COLLECTION_PATHS:
            raise ValueError(f"No collection endpoint for {kind.value}")
        body = await self._request("GET", COLLECTION_PATHS[kind])
        return unwrap_collection(kind, body)

    async def send(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body = await self._request(method.upper(), path, payload)
        if isinstance(body, dict):
            return body
        return {"items": body}

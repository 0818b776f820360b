"""Store backed by the REST API of another undangan server.

Handles network calls with bounded retries and exponential backoff.
"""

import asyncio
import logging
from typing import Any

import httpx

from ..errors import Conflict, NotFound, StorageError, ValidationError
from ..models import (
    Comment,
    Guest,
    Page,
    Presence,
    validate_comment_input,
    validate_comment_patch,
    validate_page,
)
from .base import Store

logger = logging.getLogger(__name__)


class RemoteStore(Store):
    """Store that proxies every operation to a remote server.

    Client errors map back to the store error types (400 ValidationError,
    404 NotFound, 409 Conflict). Connection failures, timeouts and server
    errors are retried and then raised as StorageError.
    """

    def __init__(
        self,
        base_url: str,
        max_retries: int = 3,
        timeout: float = 10.0,
        backoff_seconds: float = 1.0,
        min_name_length: int = 2,
        min_body_length: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the remote store.

        Args:
            base_url: Server URL (e.g., "http://localhost:3001").
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            backoff_seconds: Delay before the first retry; doubles each time.
            min_name_length: Minimum author name length checked before sending.
            min_body_length: Minimum comment length checked before sending.
            transport: Optional httpx transport (used by tests).
        """
        super().__init__(min_name_length, min_body_length)
        self.base_url = base_url
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds
        self._transport = transport
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url.rstrip("/"),
            timeout=self.timeout,
            transport=self._transport,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("error") or response.text
        except ValueError:
            return response.text

    def _client_error(self, response: httpx.Response) -> Exception:
        message = self._error_message(response)
        if response.status_code == 404:
            return NotFound(message)
        if response.status_code == 409:
            return Conflict(message)
        if response.status_code in (400, 422):
            return ValidationError(message)
        return StorageError(f"HTTP {response.status_code}: {message}")

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an HTTP request with exponential backoff retry.

        Args:
            method: HTTP method.
            path: URL path below base_url.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Decoded response body.

        Raises:
            ValidationError, NotFound, Conflict: The server rejected the request.
            StorageError: The server could not be reached or kept failing.
        """
        backoff = self.backoff_seconds
        last_error = "no attempts made"

        async with self._client() as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.request(
                        method, path, json=json_data, params=params
                    )

                    if response.status_code < 400:
                        self._consecutive_failures = 0
                        return response.json()

                    if response.status_code >= 500:
                        last_error = (
                            f"HTTP {response.status_code}: {self._error_message(response)}"
                        )
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        raise self._client_error(response)

                except httpx.ConnectError as e:
                    last_error = f"Connection failed: {e}"
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    last_error = "Request timeout"
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Request error: {e}")
                    raise StorageError(f"Request error: {e}") from e
                except ValueError as e:
                    raise StorageError(f"Invalid response from {path}: {e}") from e

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        raise StorageError(f"Max retries ({self.max_retries}) exceeded: {last_error}")

    async def check_connection(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get("/api/health")
                return response.status_code == 200
        except httpx.HTTPError:
            return False

    @staticmethod
    def _page(body: dict[str, Any], parse) -> Page:
        pagination = body.get("pagination") or {}
        items = [parse(item) for item in body.get("data") or []]
        return Page(
            items=items,
            total=int(pagination.get("total", len(items))),
            page=int(pagination.get("page", 1)),
            per_page=int(pagination.get("per_page", max(len(items), 1))),
        )

    # ==================== Comments ====================

    async def _list(self, params: dict[str, Any]) -> Page:
        validate_page(params["page"], params["per_page"])
        body = await self._request_with_retry("GET", "/api/comments", params=params)
        return self._page(body, Comment.from_dict)

    async def list_comments(self, page: int = 1, page_size: int = 10) -> Page:
        return await self._list({"page": page, "per_page": page_size})

    async def list_comments_by_presence(
        self, presence: Presence | str, page: int = 1, page_size: int = 10
    ) -> Page:
        return await self._list(
            {"page": page, "per_page": page_size, "presence": Presence.parse(presence).value}
        )

    async def search_comments(
        self, query: str, page: int = 1, page_size: int = 10
    ) -> Page:
        return await self._list({"page": page, "per_page": page_size, "q": query})

    async def add_comment(
        self,
        author_name: str,
        presence: Presence | str | bool | int,
        body: str,
        gif_url: str | None = None,
        parent_id: int | None = None,
    ) -> Comment:
        author_name, body, presence = validate_comment_input(
            author_name, body, presence, self.min_name_length, self.min_body_length
        )
        payload: dict[str, Any] = {
            "name": author_name,
            "presence": presence.value,
            "comment": body,
            "gif_url": gif_url,
        }
        if parent_id is not None:
            payload["parent_id"] = parent_id

        data = await self._request_with_retry("POST", "/api/comments", payload)
        return Comment.from_dict(data["data"])

    async def like_comment(self, ref: str | int) -> Comment:
        data = await self._request_with_retry("PUT", f"/api/comments/{ref}/like")
        return Comment.from_dict(data["data"])

    async def delete_comment(self, ref: str | int) -> Comment:
        data = await self._request_with_retry("DELETE", f"/api/comments/{ref}")
        return Comment.from_dict(data["data"])

    async def update_comment(self, ref: str | int, patch: dict[str, Any]) -> Comment:
        payload = validate_comment_patch(patch, self.min_body_length)
        if "body" in payload:
            payload["comment"] = payload.pop("body")
        if "presence" in payload:
            payload["presence"] = payload["presence"].value

        data = await self._request_with_retry("PUT", f"/api/comments/{ref}", payload)
        return Comment.from_dict(data["data"])

    # ==================== Guests ====================

    async def add_guest(self, name: str, guest_type: str, category: str) -> Guest:
        data = await self._request_with_retry(
            "POST",
            "/api/guests",
            {"name": name, "type": guest_type, "category": category},
        )
        return Guest.from_dict(data["data"])

    async def list_guests(self, page: int = 1, page_size: int = 10) -> Page:
        validate_page(page, page_size)
        body = await self._request_with_retry(
            "GET", "/api/guests", params={"page": page, "per_page": page_size}
        )
        return self._page(body, Guest.from_dict)

    async def delete_guest(self, guest_id: int) -> Guest:
        data = await self._request_with_retry("DELETE", f"/api/guests/{guest_id}")
        return Guest.from_dict(data["data"])

    async def clear_guests(self) -> int:
        data = await self._request_with_retry("DELETE", "/api/guests")
        return int(data["data"]["deleted_count"])

    # ==================== Settings & stats ====================

    async def get_settings(self) -> dict[str, Any]:
        data = await self._request_with_retry("GET", "/api/settings")
        return data["data"]

    async def update_settings(self, partial: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(partial, dict):
            raise ValidationError("Settings update must be an object")
        data = await self._request_with_retry("PUT", "/api/settings", partial)
        return data["data"]

    async def increment_view_count(self) -> None:
        await self._request_with_retry("POST", "/api/stats/views")

    async def get_stats(self) -> dict[str, Any]:
        data = await self._request_with_retry("GET", "/api/stats")
        return data["data"]

"""
PostgREST-style HTTP client used by the remote stores.

Handles retries with exponential backoff on timeouts, transport errors and
5xx responses. 4xx responses fail immediately. Every failure surfaces as
RemoteStoreError so callers can fall back to local state.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from funnel.core.errors import RemoteStoreError


class RestClient:
    """Async HTTP client for a PostgREST-compatible API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_ms: int = 10000,
        retry_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ):
        """
        Initialize the REST client.

        Args:
            base_url: REST root, e.g. https://project.example.co/rest/v1
            api_key: Sent as both apikey and bearer token when non-empty
            timeout_ms: Request timeout in milliseconds
            retry_attempts: Number of attempts per request
            backoff_seconds: First retry delay (doubles each attempt)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_ms / 1000.0
        self.retry_attempts = max(1, retry_attempts)
        self.backoff_seconds = backoff_seconds

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds),
            follow_redirects=True,
            headers=headers,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request with retry logic."""
        last_error: Exception | None = None
        send = getattr(self.client, method.lower())

        for attempt in range(self.retry_attempts):
            wait_time = self.backoff_seconds * (2 ** attempt)
            try:
                response = await send(url, **kwargs)
                response.raise_for_status()
                return response

            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(
                    f"Remote store timeout on attempt {attempt + 1}/{self.retry_attempts} "
                    f"({method} {url})"
                )

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    logger.error(f"Remote store client error {e.response.status_code} ({method} {url})")
                    raise RemoteStoreError(
                        f"{method} {url} rejected with {e.response.status_code}"
                    ) from e
                logger.warning(
                    f"Remote store server error {e.response.status_code} on attempt "
                    f"{attempt + 1}/{self.retry_attempts}"
                )

            except httpx.RequestError as e:
                last_error = e
                logger.warning(
                    f"Remote store request error on attempt {attempt + 1}/{self.retry_attempts}: {e}"
                )

            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(wait_time)

        raise RemoteStoreError(
            f"{method} {url} failed after {self.retry_attempts} attempts: {last_error}"
        ) from last_error

    async def select(
        self,
        table: str,
        filters: dict[str, str] | None = None,
        columns: str = "*",
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Read rows with equality filters.

        Args:
            table: Table name
            filters: Column -> value, sent as PostgREST eq filters
            columns: Select list
            order: Optional order clause, e.g. "created_at.desc"

        Returns:
            Row dicts
        """
        params = {"select": columns}
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"
        if order:
            params["order"] = order

        response = await self._send("GET", f"{self.base_url}/{table}", params=params)
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteStoreError(f"Non-JSON payload from {table}: {e}") from e
        if not isinstance(data, list):
            raise RemoteStoreError(f"Unexpected payload from {table}: {type(data).__name__}")
        return data

    async def upsert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> None:
        """Insert rows, merging (or ignoring) conflicts on the given columns."""
        if not rows:
            return
        resolution = "ignore-duplicates" if ignore_duplicates else "merge-duplicates"
        await self._send(
            "POST",
            f"{self.base_url}/{table}",
            params={"on_conflict": on_conflict},
            json=rows,
            headers={"Prefer": f"resolution={resolution},return=minimal"},
        )

    async def health_check(self) -> bool:
        """
        Check if the REST API answers.

        Returns:
            True if API is healthy, False otherwise
        """
        try:
            response = await self.client.get(f"{self.base_url}/", timeout=5.0)
            return response.status_code < 500
        except httpx.HTTPError:
            return False

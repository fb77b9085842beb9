"""
Async REST clients with pagination, throttling, retry, and safety enforcement.
The retry core is shared by the Graph client (identity lookups) and the
Exchange admin client (mailbox and permission cmdlets).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    REQUEST_TIMEOUT_SECONDS,
)
from ..safety.guardian import SafetyGuardian, SafetyViolation

logger = logging.getLogger("mailbox_audit.graph")


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


class RestClient:
    """
    Async bearer-token REST client.
    Features:
      - Safety-validated requests (read-only enforcement)
      - Exponential backoff on 429/503/504, honoring Retry-After
      - Retries on timeouts and connection errors
    Subclasses set error_class and default headers.
    """

    error_class: type[Exception] = GraphAPIError

    def __init__(
        self,
        access_token: str,
        guardian: SafetyGuardian,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self._transport = transport
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    def _default_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS, connect=30.0),
            headers=self._default_headers(),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._execute_raw(
                    method, url, params=params, json_body=json_body
                )
                self._request_count += 1

                if response.status_code == 200:
                    if not response.content or not response.content.strip():
                        return {"value": []}
                    return response.json()

                if response.status_code == 204:
                    return {}

                if response.status_code == 404:
                    logger.debug(f"404 Not Found: {url}")
                    return {"value": [], "_not_found": True}

                if response.status_code in (429, 503, 504) and attempt < MAX_RETRIES:
                    self._throttle_count += 1
                    retry_after = float(
                        response.headers.get("Retry-After", backoff)
                    )
                    wait_time = max(retry_after, backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {url}. "
                        f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                    )
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                raise self.error_class(
                    response.status_code, _error_message(response), url
                )

            except httpx.TimeoutException:
                logger.warning(f"Timeout on {url}, attempt {attempt + 1}/{MAX_RETRIES}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

            except httpx.ConnectError as e:
                logger.warning(f"Connection error on {url}: {e}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise self.error_class(0, "Maximum retries exceeded", url)

    async def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        """Execute raw HTTP request."""
        if not self._client:
            raise RuntimeError(f"{type(self).__name__} not initialized. Use 'async with' context.")

        if method == "GET":
            return await self._client.get(url, params=params)
        elif method == "POST":
            return await self._client.post(url, json=json_body, params=params)
        else:
            raise SafetyViolation(f"Unsupported method at raw level: {method}")

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json() if response.content else {}
    except ValueError:
        return response.text[:200]
    error = body.get("error", {}) if isinstance(body, dict) else {}
    if isinstance(error, dict):
        return error.get("message") or response.text[:200]
    return str(error)


class GraphClient(RestClient):
    """
    Async Microsoft Graph client for directory lookups.
    Single-page lookups only; identity filters return at most one object.
    """

    def _default_headers(self) -> dict:
        headers = super()._default_headers()
        headers["ConsistencyLevel"] = "eventual"  # Required for advanced $filter
        return headers

    def _build_url(self, endpoint: str) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/{endpoint}"

    async def get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """Execute a single GET request with retry/throttle handling."""
        url = self._build_url(endpoint)
        self.guardian.validate_request("GET", url)
        return await self._execute_with_retry("GET", url, params=params)

"""Throttled client for the Readwise v2 API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from ..config import ReadwiseConfig
from ..errors import ReadwiseAPIError
from .ratelimit import LIST, OTHER, RateLimitState

logger = logging.getLogger(__name__)

LIST_PATHS = ("/api/v2/books", "/api/v2/highlights")
AUTH_PATH = "/api/v2/auth/"
DEFAULT_RETRY_AFTER = 10.0
RETRY_BUFFER = 0.5


@dataclass
class AuthProbeResult:
    ok: bool
    error: Optional[str] = None


def endpoint_class(url: str) -> str:
    return LIST if any(path in url for path in LIST_PATHS) else OTHER


def _retry_after(response: httpx.Response) -> float:
    header = response.headers.get("Retry-After")
    if header is None:
        return DEFAULT_RETRY_AFTER
    try:
        seconds = float(header)
    except ValueError:
        return DEFAULT_RETRY_AFTER
    logger.info(f"Received Retry-After header: {seconds} seconds")
    return seconds


class ReadwiseClient:
    """Read books, highlights and auth status from Readwise.

    All requests go through one ``RateLimitState``. Pass the same state to
    every client instance talking to Readwise so they share one rate limit.
    """

    def __init__(
        self,
        config: Optional[ReadwiseConfig] = None,
        state: Optional[RateLimitState] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or ReadwiseConfig()
        self.state = state or RateLimitState(
            floors={LIST: self.config.list_delay, OTHER: self.config.other_delay},
            max_delay=self.config.max_delay,
        )
        self._http = http or httpx.AsyncClient(timeout=30.0)

    def url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _send(
        self, url: str, credential: str, endpoint: str, json_body: bool = True
    ) -> httpx.Response:
        """GET ``url`` under the throttle, retrying on 429 until accepted."""
        headers = {"Authorization": f"Token {credential}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        while True:
            await self.state.acquire(endpoint)
            try:
                response = await self._http.get(url, headers=headers)
            except httpx.TransportError:
                self.state.network_error()
                raise

            self.state.observe_remaining(response.headers.get("X-RateLimit-Remaining"))
            if response.status_code != 429:
                return response

            wait = _retry_after(response) + RETRY_BUFFER
            self.state.rate_limited(endpoint)
            logger.error(f"Hit Readwise rate limit, waiting {wait}s before retry")
            await self.state.sleep(wait)

    async def fetch_page(self, url: str, credential: str) -> Dict[str, Any]:
        """Fetch one JSON page from Readwise."""
        endpoint = endpoint_class(url)
        response = await self._send(url, credential, endpoint)
        if not response.is_success:
            raise ReadwiseAPIError(response.status_code, response.text)
        self.state.relax(endpoint)
        return response.json()

    async def iterate_pages(
        self, url: str, credential: str, max_pages: Optional[int] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield pages by following ``next`` until it is empty."""
        limit = max_pages or self.config.max_pages
        next_url: Optional[str] = url
        pages = 0
        while next_url:
            if pages >= limit:
                logger.warning(f"Stopped after {limit} pages of {url}")
                return
            page = await self.fetch_page(next_url, credential)
            pages += 1
            yield page
            next_url = page.get("next")

    async def fetch_all(
        self, path: str, credential: str, max_pages: Optional[int] = None
    ) -> list[Dict[str, Any]]:
        """Collect ``results`` of every page under ``path``."""
        results: list[Dict[str, Any]] = []
        page_number = 0
        async for page in self.iterate_pages(self.url(path), credential, max_pages):
            page_number += 1
            batch = page.get("results") or []
            results.extend(batch)
            logger.info(
                f"Fetched page {page_number} of {path}: {len(batch)} items "
                f"(running total {len(results)})"
            )
        return results

    async def count_books(self, credential: str) -> int:
        total = 0
        async for page in self.iterate_pages(self.url("/api/v2/books/"), credential):
            total += len(page.get("results") or [])
        return total

    async def probe_auth(self, credential: str) -> AuthProbeResult:
        """Check a Readwise token. Network failures are reported, not raised."""
        try:
            response = await self._send(
                self.url(AUTH_PATH), credential, OTHER, json_body=False
            )
        except httpx.TransportError as exc:
            return AuthProbeResult(ok=False, error=str(exc) or "Connection failed")

        if response.status_code == 204:
            return AuthProbeResult(ok=True)
        try:
            detail = response.json().get("detail")
        except (ValueError, AttributeError):
            detail = None
        return AuthProbeResult(ok=False, error=detail or "Invalid API key")

"""GitHub API client for the repository and commit graph.

Every fetch method except ``rate_limit_remaining`` is one billable call; the
caller is responsible for charging its budget before invoking them.

GitHub Rate Limits:
- Core API: 5000 requests/hour per token (``/rate_limit`` itself is free)
- Secondary limits: Undocumented, can trigger 403/429 for rapid requests
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from commitcrawl.crawler.errors import PlatformError

logger = logging.getLogger(__name__)

# Commit listings answer these for empty, deleted or blocked repositories.
EMPTY_REPOSITORY_STATUSES = (404, 409, 451)
MISSING_REPOSITORY_STATUSES = (404, 451)
MISSING_COMMIT_STATUSES = (404, 409, 422, 451)


class GitHubClient:
    """Async GitHub REST client with local retries.

    Features:
    - Bearer token authentication
    - Retry on secondary rate limits and transport errors with backoff
    - Conversion of every unrecoverable failure into ``PlatformError``
    """

    SECONDARY_RATE_LIMIT_BACKOFF = [60, 120, 300]  # seconds

    def __init__(
        self,
        base_url: str = "https://api.github.com",
        token: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "GitHubClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._client is None:
            headers = {
                "Accept": "application/vnd.github.v3+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _is_secondary_rate_limit(self, response: httpx.Response) -> bool:
        """Detect secondary rate limit (abuse detection)."""
        if response.status_code not in (403, 429):
            return False
        if response.headers.get("Retry-After"):
            return True
        try:
            message = response.json().get("message", "").lower()
        except (ValueError, AttributeError):
            return False
        return "abuse" in message or "secondary rate" in message

    def _backoff(self, response: Optional[httpx.Response], attempt: int) -> float:
        if response is None:
            return self.retry_delay * (2 ** attempt)
        backoff = self.SECONDARY_RATE_LIMIT_BACKOFF[
            min(attempt, len(self.SECONDARY_RATE_LIMIT_BACKOFF) - 1)
        ]
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                backoff = int(retry_after)
            except ValueError:
                pass
        return backoff

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        allow_statuses: tuple = (),
        **kwargs,
    ) -> httpx.Response:
        """Make an API request, retrying transient failures locally.

        Raises:
            PlatformError: on a non-success status outside ``allow_statuses``,
                on any httpx failure, or once retries are exhausted.
        """
        client = await self._ensure_client()
        attempt = 0

        while True:
            try:
                response = await client.request(method, endpoint, params=params, **kwargs)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise PlatformError(f"{method} {endpoint} failed: {e}") from e
                delay = self._backoff(None, attempt)
                logger.warning(
                    "Transport error on %s (%s); retrying in %.1fs (attempt %d/%d)",
                    endpoint, e, delay, attempt + 1, self.max_retries,
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue
            except httpx.HTTPError as e:
                # Decoding errors, redirect loops: retrying will not help
                raise PlatformError(f"{method} {endpoint} failed: {type(e).__name__}: {e}") from e

            if self._is_secondary_rate_limit(response) or response.status_code >= 500:
                if attempt >= self.max_retries:
                    raise PlatformError(
                        f"{method} {endpoint}: max retries exceeded (HTTP {response.status_code})",
                        status_code=response.status_code,
                    )
                delay = (
                    self._backoff(response, attempt)
                    if response.status_code < 500
                    else self._backoff(None, attempt)
                )
                logger.warning(
                    "HTTP %d on %s; backing off for %.1fs (attempt %d/%d)",
                    response.status_code, endpoint, delay, attempt + 1, self.max_retries,
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            if response.is_success or response.status_code in allow_statuses:
                return response

            raise PlatformError(
                f"{method} {endpoint} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

    @staticmethod
    def _decode(response: httpx.Response, endpoint: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise PlatformError(f"GET {endpoint} returned malformed JSON") from e

    async def get_json(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """GET request returning JSON."""
        response = await self.request("GET", endpoint, params=params)
        return self._decode(response, endpoint)

    async def rate_limit_remaining(self) -> int:
        """Remaining core API calls for the current token."""
        data = await self.get_json("/rate_limit")
        try:
            return int(data["rate"]["remaining"])
        except (KeyError, TypeError, ValueError) as e:
            raise PlatformError(f"Malformed /rate_limit response: {data!r}") from e

    async def list_repositories(self, since: int, per_page: int = 100) -> List[Dict[str, Any]]:
        """One page of public repositories with ids greater than ``since``.

        Listing items are summaries: identity and owner, no counters.
        """
        data = await self.get_json(
            "/repositories", params={"since": since, "per_page": per_page}
        )
        if not isinstance(data, list):
            raise PlatformError(f"Malformed /repositories response: {type(data).__name__}")
        return data

    async def get_repository(self, full_name: str) -> Optional[Dict[str, Any]]:
        """Full repository object, or None if it is gone or blocked."""
        endpoint = f"/repos/{full_name}"
        response = await self.request("GET", endpoint, allow_statuses=MISSING_REPOSITORY_STATUSES)
        if response.status_code in MISSING_REPOSITORY_STATUSES:
            logger.info("Repository %s unavailable (HTTP %d)", full_name, response.status_code)
            return None
        data = self._decode(response, endpoint)
        if not isinstance(data, dict):
            raise PlatformError(f"Malformed repository object for {full_name}")
        return data

    async def list_commits(
        self, full_name: str, page: int = 1, per_page: int = 100
    ) -> List[Dict[str, Any]]:
        """One page of a repository's commits in platform-default order.

        Empty, deleted and blocked repositories yield an empty page.
        """
        endpoint = f"/repos/{full_name}/commits"
        response = await self.request(
            "GET",
            endpoint,
            params={"page": page, "per_page": per_page},
            allow_statuses=EMPTY_REPOSITORY_STATUSES,
        )
        if response.status_code in EMPTY_REPOSITORY_STATUSES:
            logger.info("No commits for %s (HTTP %d)", full_name, response.status_code)
            return []
        data = self._decode(response, endpoint)
        if not isinstance(data, list):
            raise PlatformError(f"Malformed commit listing for {full_name}")
        return data

    async def get_commit(self, full_name: str, sha: str) -> Optional[Dict[str, Any]]:
        """One commit with ``stats`` and ``files``, or None if it vanished."""
        endpoint = f"/repos/{full_name}/commits/{sha}"
        response = await self.request(
            "GET", endpoint, allow_statuses=MISSING_COMMIT_STATUSES
        )
        if response.status_code in MISSING_COMMIT_STATUSES:
            logger.info("Commit %s of %s unavailable (HTTP %d)", sha, full_name, response.status_code)
            return None
        data = self._decode(response, endpoint)
        if not isinstance(data, dict):
            raise PlatformError(f"Malformed commit object {sha} of {full_name}")
        return data

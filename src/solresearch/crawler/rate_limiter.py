"""GitHub API client with rate-limit awareness.

GitHub Rate Limits:
- Core API: 5000 requests/hour per token (60/hour unauthenticated)
- Search API: 30 requests/minute (separate limit)
- Secondary limits: Undocumented, can trigger 403/429 for rapid requests

The client tracks the X-RateLimit headers and sleeps until the reset time
when the quota is exhausted. It does not retry failed calls: every public
method returns an ApiResult and the caller owns the retry policy.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

import httpx

from solresearch.crawler.ledger import TreeEntry
from solresearch.errors import ApiError, TruncatedTreeError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ApiResult(Generic[T]):
    """Success-or-error result of an API call."""

    success: bool
    value: Optional[T] = None
    error: Optional[ApiError] = None

    @classmethod
    def ok(cls, value: T) -> "ApiResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: ApiError) -> "ApiResult[T]":
        return cls(success=False, error=error)

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


@dataclass
class SearchPage:
    """One page of repository search results."""

    total_count: int
    items: List[Dict[str, Any]] = field(default_factory=list)


def _matches_name(path: str, names: List[str]) -> bool:
    return any(path == name or path.endswith("/" + name) for name in names)


def _has_segment(path: str, segment: str) -> bool:
    return segment in path.split("/")


class RateLimitedClient:
    """GitHub API client with rate limit tracking.

    Usage:
        async with RateLimitedClient(token) as client:
            result = await client.search_repos("Solidity", page=1)
    """

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        token: Optional[str] = None,
        timeout: float = 30.0,
        base_url: str = BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._last_commit_cache: Dict[Tuple[str, str], str] = {}
        self.rate_remaining: Optional[int] = None
        self.rate_reset_at: Optional[datetime] = None

    async def __aenter__(self) -> "RateLimitedClient":
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

    async def _wait_for_quota(self) -> None:
        """Sleep until the rate-limit window resets when the quota is exhausted."""
        if self.rate_remaining != 0 or self.rate_reset_at is None:
            return
        wait_seconds = (self.rate_reset_at - datetime.now(timezone.utc)).total_seconds()
        if wait_seconds > 0:
            logger.warning(f"Rate limited. Waiting {wait_seconds:.0f}s until reset.")
            await asyncio.sleep(wait_seconds + 1)
        self.rate_remaining = None

    def _update_limits(self, response: httpx.Response) -> None:
        """Update rate limit state from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        try:
            if remaining is not None:
                self.rate_remaining = int(remaining)
            if reset is not None:
                self.rate_reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc)
        except ValueError:
            logger.debug(f"Unparseable rate limit headers: {remaining!r} {reset!r}")

    async def get_json(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET request returning decoded JSON.

        Raises:
            ApiError: On network failure, a non-2xx status or an undecodable body.
        """
        client = await self._ensure_client()
        await self._wait_for_quota()

        try:
            response = await client.get(endpoint, params=params)
        except httpx.HTTPError as e:
            raise ApiError(f"GET {endpoint} failed: {e!r}") from e

        self._update_limits(response)

        if response.status_code >= 400:
            message = ""
            try:
                message = response.json().get("message", "")
            except ValueError:
                pass
            raise ApiError(
                f"GET {endpoint} returned {response.status_code}: {message}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"GET {endpoint} returned invalid JSON", retryable=True) from e

    async def search_repos(
        self,
        language: str,
        sort: str = "stars",
        order: str = "desc",
        per_page: int = 100,
        page: int = 1,
        extra_filter: Optional[str] = None,
    ) -> ApiResult[SearchPage]:
        """Fetch one page of public repositories in a language."""
        qualifiers = [f"language:{language}", "is:public"]
        if extra_filter:
            qualifiers.append(extra_filter)
        params = {
            "q": " ".join(qualifiers),
            "sort": sort,
            "order": order,
            "per_page": per_page,
            "page": page,
        }
        try:
            data = await self.get_json("/search/repositories", params=params)
        except ApiError as e:
            return ApiResult.fail(e)
        return ApiResult.ok(
            SearchPage(total_count=data.get("total_count", 0), items=data.get("items") or [])
        )

    async def get_last_commit(self, owner: str, repo: str) -> ApiResult[str]:
        """SHA of the latest commit on the default branch (cached per repository)."""
        key = (owner, repo)
        if key in self._last_commit_cache:
            return ApiResult.ok(self._last_commit_cache[key])
        try:
            data = await self.get_json(f"/repos/{owner}/{repo}/commits", params={"per_page": 1})
        except ApiError as e:
            return ApiResult.fail(e)
        if not data:
            return ApiResult.fail(
                ApiError(f"{owner}/{repo} has no commits", retryable=False)
            )
        sha = data[0]["sha"]
        self._last_commit_cache[key] = sha
        return ApiResult.ok(sha)

    async def get_tree(
        self, owner: str, repo: str, sha: str, recursive: bool = True
    ) -> ApiResult[List[TreeEntry]]:
        """List a tree, recursively by default.

        Paths of the returned entries are relative to the tree itself. A
        listing the API truncated fails with TruncatedTreeError.
        """
        params = {"recursive": 1} if recursive else None
        try:
            data = await self.get_json(f"/repos/{owner}/{repo}/git/trees/{sha}", params=params)
        except ApiError as e:
            return ApiResult.fail(e)
        if data.get("truncated"):
            return ApiResult.fail(
                TruncatedTreeError(f"Tree listing of {owner}/{repo}@{sha} was truncated")
            )
        return ApiResult.ok([TreeEntry.from_api(e) for e in data.get("tree") or []])

    async def find_entries(
        self,
        owner: str,
        repo: str,
        names: List[str],
        entry_type: str = "tree",
        exclude_segment: Optional[str] = "node_modules",
    ) -> ApiResult[List[TreeEntry]]:
        """Entries of a type whose basename is one of `names`, at any depth.

        Matches under a path segment equal to `exclude_segment` are dropped.
        """
        commit = await self.get_last_commit(owner, repo)
        if not commit.success:
            return ApiResult.fail(commit.error)

        tree = await self.get_tree(owner, repo, commit.value)
        if not tree.success:
            return ApiResult.fail(tree.error)

        found = [
            entry
            for entry in tree.value
            if entry.type == entry_type
            and _matches_name(entry.path, names)
            and not (exclude_segment and _has_segment(entry.path, exclude_segment))
        ]
        return ApiResult.ok(found)

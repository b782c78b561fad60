"""Repository discovery and classification via the GitHub API.

Pages through the repository search for one language and classifies every
result by looking for test directories and build-config files in its tree.
The ledger is written after every repository, so an interrupted crawl
resumes where it stopped: repositories whose trees were already searched
are not searched again.

Rate-limit avoidance is a fixed policy: a pause before every search call,
and a single retry after a longer pause when a call fails with a retryable
error. A repository whose search still fails is logged and left unsearched.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from solresearch.crawler.config import CrawlerConfig
from solresearch.crawler.ledger import (
    Ledger,
    RepositoryRecord,
    RepoSnapshot,
    TreeEntry,
    utc_now,
)
from solresearch.crawler.rate_limiter import ApiResult, RateLimitedClient


@dataclass
class CrawlStats:
    """Statistics from a crawl run."""

    pages: int = 0
    seen: int = 0
    skipped_low_stars: int = 0
    new: int = 0
    stars_updated: int = 0
    test_searches: int = 0
    config_searches: int = 0
    failures: int = 0
    total_count: Optional[int] = None

    def merge(self, other: "CrawlStats") -> None:
        self.pages += other.pages
        self.seen += other.seen
        self.skipped_low_stars += other.skipped_low_stars
        self.new += other.new
        self.stars_updated += other.stars_updated
        self.test_searches += other.test_searches
        self.config_searches += other.config_searches
        self.failures += other.failures
        if other.total_count is not None:
            self.total_count = (self.total_count or 0) + other.total_count


class CrawlEngine:
    """Crawls repository search results into the ledger."""

    def __init__(
        self,
        client: RateLimitedClient,
        ledger: Ledger,
        config: CrawlerConfig,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.ledger = ledger
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    async def _call_with_retry(
        self,
        description: str,
        call: Callable[[], Awaitable[ApiResult]],
    ) -> ApiResult:
        """Pause, call, and retry once after a longer pause on a retryable failure."""
        await asyncio.sleep(self.config.search_delay_seconds)
        result = await call()

        if not result.success and result.retryable:
            self.logger.warning(
                f"{description} failed ({result.error}), "
                f"retrying in {self.config.retry_delay_seconds:.0f}s"
            )
            await asyncio.sleep(self.config.retry_delay_seconds)
            result = await call()

        if not result.success:
            self.logger.warning(f"{description} failed, skipping: {result.error}")
        return result

    async def crawl(
        self,
        language: Optional[str] = None,
        star_threshold: Optional[int] = None,
        force_refresh: bool = False,
        extra_filter: Optional[str] = None,
    ) -> CrawlStats:
        """Crawl all search result pages for one query.

        Args:
            language: Language to search (default from config).
            star_threshold: Repositories below this are ignored (default from config).
            force_refresh: Search test directories again for known repositories.
            extra_filter: Additional search qualifier, e.g. "created:<2019-01-01".

        Returns:
            CrawlStats for this query.
        """
        language = language or self.config.language
        if star_threshold is None:
            star_threshold = self.config.min_stars
        per_page = self.config.per_page

        stats = CrawlStats()
        label = f"{language}" + (f" [{extra_filter}]" if extra_filter else "")
        page = 1

        while True:
            result = await self._call_with_retry(
                f"Search {label} page {page}",
                lambda: self.client.search_repos(
                    language,
                    per_page=per_page,
                    page=page,
                    extra_filter=extra_filter,
                ),
            )

            if result.success:
                stats.pages += 1
                stats.total_count = result.value.total_count
                self.logger.info(
                    f"Search {label} page {page}: {len(result.value.items)} of "
                    f"{result.value.total_count} repositories"
                )
                for item in result.value.items:
                    await self.process_repository(item, star_threshold, force_refresh, stats)
                if not result.value.items:
                    break
            else:
                stats.failures += 1
                if stats.total_count is None:
                    self.logger.error(f"Search {label} failed on first page, stopping")
                    break

            limit = min(stats.total_count, self.config.max_search_results)
            if page * per_page >= limit:
                break
            page += 1

        self.logger.info(
            f"Crawl {label} done: {stats.seen} seen, {stats.new} new, "
            f"{stats.skipped_low_stars} below threshold, {stats.failures} failures"
        )
        return stats

    async def crawl_all(
        self,
        language: Optional[str] = None,
        star_threshold: Optional[int] = None,
        force_refresh: bool = False,
    ) -> CrawlStats:
        """Crawl once per configured extra filter, into the same ledger."""
        total = CrawlStats()
        for extra_filter in self.config.extra_filters or [None]:
            stats = await self.crawl(language, star_threshold, force_refresh, extra_filter)
            total.merge(stats)
        return total

    async def process_repository(
        self,
        item: Dict[str, Any],
        star_threshold: int,
        force_refresh: bool,
        stats: CrawlStats,
    ) -> None:
        """Record and classify one search result, then persist the ledger."""
        snapshot = RepoSnapshot.from_api(item)
        if snapshot.stars < star_threshold:
            stats.skipped_low_stars += 1
            return
        stats.seen += 1

        record = self.ledger.get(snapshot.full_name)
        if record is None:
            record = RepositoryRecord(repo=snapshot)
            self.ledger.add(record)
            stats.new += 1
            self.logger.info(f"New repository {snapshot.full_name} ({snapshot.stars} stars)")
        elif record.repo.stars != snapshot.stars:
            self.logger.info(
                f"{snapshot.full_name}: stars {record.repo.stars} -> {snapshot.stars}"
            )
            record.repo.stars = snapshot.stars
            stats.stars_updated += 1
            self.ledger.save()

        if record.test_trees is None or force_refresh:
            stats.test_searches += 1
            test_trees = await self._find_test_trees(record.repo)
            if test_trees is None:
                stats.failures += 1
            else:
                record.test_trees = test_trees

        if record.truffle_trees is None:
            stats.config_searches += 1
            config_trees = await self._find_config_files(record.repo)
            if config_trees is None:
                stats.failures += 1
            else:
                record.truffle_trees = config_trees
                record.retrieved_at = utc_now()

        self.ledger.save()

    async def _find_test_trees(self, repo: RepoSnapshot) -> Optional[List[TreeEntry]]:
        result = await self._call_with_retry(
            f"Test directory search in {repo.full_name}",
            lambda: self.client.find_entries(
                repo.owner,
                repo.name,
                self.config.test_dir_names,
                entry_type="tree",
                exclude_segment=self.config.vendor_dir,
            ),
        )
        if not result.success:
            return None

        for entry in result.value:
            subtree = await self.client.get_tree(repo.owner, repo.name, entry.sha)
            if subtree.success:
                # Directories come back with size 0
                entry.children = [c for c in subtree.value if c.size > 0]
            else:
                self.logger.warning(
                    f"Could not list {repo.full_name}/{entry.path}: {subtree.error}"
                )
                entry.children = []
        return result.value

    async def _find_config_files(self, repo: RepoSnapshot) -> Optional[List[TreeEntry]]:
        result = await self._call_with_retry(
            f"Build-config search in {repo.full_name}",
            lambda: self.client.find_entries(
                repo.owner,
                repo.name,
                self.config.config_file_names,
                entry_type="blob",
                exclude_segment=self.config.vendor_dir,
            ),
        )
        if not result.success:
            return None
        return result.value

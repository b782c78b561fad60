"""GitHub repository crawler and clone/install stage."""

from solresearch.crawler.config import CrawlerConfig
from solresearch.crawler.ledger import (
    Ledger,
    ProjectRecord,
    RepositoryRecord,
    RepoSnapshot,
    StageRun,
    TreeEntry,
)
from solresearch.crawler.rate_limiter import ApiResult, RateLimitedClient, SearchPage
from solresearch.crawler.discovery import CrawlEngine, CrawlStats
from solresearch.crawler.downloader import CloneInstaller, InstallResult

__all__ = [
    "CrawlerConfig",
    "Ledger",
    "ProjectRecord",
    "RepositoryRecord",
    "RepoSnapshot",
    "StageRun",
    "TreeEntry",
    "ApiResult",
    "RateLimitedClient",
    "SearchPage",
    "CrawlEngine",
    "CrawlStats",
    "CloneInstaller",
    "InstallResult",
]

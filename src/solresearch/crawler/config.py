"""Configuration for the repository crawler."""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class CrawlerConfig:
    """Configuration for crawling the repository search API.

    Attributes:
        language: Repository language to search for.
        min_stars: Repositories below this star count are skipped entirely.
        per_page: Search page size (API maximum is 100).
        max_search_results: The search API never serves more than this many results per query.
        search_delay_seconds: Fixed delay before every search call.
        retry_delay_seconds: Fixed delay before the single retry of a failed call.
        test_dir_names: Directory names that mark a repository as tested.
        config_file_names: Build-config file names that mark a buildable project.
        vendor_dir: Path segment whose matches are never recorded.
        extra_filters: Additional search qualifiers; each one is crawled separately.
        github_token: API token (None for unauthenticated access).
        api_timeout_seconds: HTTP timeout per request.
    """

    language: str = "Solidity"
    min_stars: int = 0
    per_page: int = 100
    max_search_results: int = 1000
    search_delay_seconds: float = 2.0
    retry_delay_seconds: float = 10.0
    test_dir_names: List[str] = field(default_factory=lambda: ["test", "tests"])
    config_file_names: List[str] = field(
        default_factory=lambda: ["truffle.js", "truffle-config.js"]
    )
    vendor_dir: str = "node_modules"
    extra_filters: List[Optional[str]] = field(default_factory=lambda: [None])
    github_token: Optional[str] = None
    api_timeout_seconds: float = 30.0

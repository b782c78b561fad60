"""Main research orchestration.

Wires the API client, the ledger and the stage runners together:
- crawl: search and classify repositories
- clone: clone qualifying repositories and install their dependencies
- compile / migrate / test: precondition-gated build-tool stages
- scan and dev-dependency install over the projects whose tests passed
- rollback, statistics, error causes and CSV export
"""

import logging
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional

from solresearch import report
from solresearch.config import ResearchConfig
from solresearch.crawler.discovery import CrawlEngine, CrawlStats
from solresearch.crawler.downloader import CloneInstaller, CompletionCallback, InstallResult
from solresearch.crawler.ledger import Ledger
from solresearch.crawler.rate_limiter import RateLimitedClient
from solresearch.pipeline.process import ProcessRunner
from solresearch.pipeline.runner import SCANNER_STAGE, BuildPipeline, StageResult

# Filters that split the crawl below the search cap
SPLIT_FILTERS = ["created:<2019-01-01", "created:>=2019-01-01"]


class ResearchOrchestrator:
    """Main orchestrator for a research run.

    Usage:
        async with ResearchOrchestrator(config) as orchestrator:
            await orchestrator.crawl()
            await orchestrator.compile()
    """

    def __init__(
        self,
        config: ResearchConfig,
        client: Optional[RateLimitedClient] = None,
        runner: Optional[ProcessRunner] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.runner = runner or ProcessRunner()
        self._client = client
        self._owns_client = client is None
        self.ledger: Optional[Ledger] = None
        self.pipeline: Optional[BuildPipeline] = None
        self.installer: Optional[CloneInstaller] = None

    async def init(self) -> None:
        """Load the ledger and build the stage runners."""
        self.ledger = Ledger.load(self.config.ledger_path)
        self.installer = CloneInstaller(
            self.ledger, self.config.pipeline, runner=self.runner, logger=self.logger
        )
        self.pipeline = BuildPipeline(
            self.ledger, self.config.pipeline, runner=self.runner, logger=self.logger
        )

    async def close(self) -> None:
        """Clean up resources."""
        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> "ResearchOrchestrator":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def client(self) -> RateLimitedClient:
        if self._client is None:
            if not self.config.crawler.github_token:
                self.logger.warning(
                    "No GITHUB_TOKEN set, using unauthenticated API access (60 requests/hour)"
                )
            self._client = RateLimitedClient(
                self.config.crawler.github_token,
                timeout=self.config.crawler.api_timeout_seconds,
            )
        return self._client

    async def crawl(
        self,
        star_threshold: Optional[int] = None,
        force_refresh: bool = False,
        split: bool = False,
    ) -> CrawlStats:
        """Crawl repository search results into the ledger.

        Args:
            star_threshold: Minimum stars (default from config).
            force_refresh: Search test directories again for known repositories.
            split: Crawl once per creation-date filter to get past the search cap.
        """
        crawler_config = self.config.crawler
        if split:
            crawler_config = replace(crawler_config, extra_filters=list(SPLIT_FILTERS))
        engine = CrawlEngine(self.client, self.ledger, crawler_config, logger=self.logger)
        return await engine.crawl_all(
            star_threshold=star_threshold, force_refresh=force_refresh
        )

    async def clone_and_install(
        self,
        start_index: int = 0,
        continue_to_next: bool = True,
        on_complete: Optional[CompletionCallback] = None,
    ) -> List[InstallResult]:
        return await self.installer.clone_and_install(start_index, continue_to_next, on_complete)

    async def compile(
        self,
        start_index: int = 0,
        continue_to_next: bool = True,
        only_if_has_test_dir: bool = True,
        dont_rerun_if_already_succeeded: bool = False,
        forced_solc_version: Optional[str] = None,
    ) -> List[StageResult]:
        """Register the cloned projects and compile them."""
        self.pipeline.register_projects()
        return await self.pipeline.run_stage(
            "compile",
            start_index=start_index,
            continue_to_next=continue_to_next,
            dont_rerun_if_already_succeeded=dont_rerun_if_already_succeeded,
            forced_solc_version=forced_solc_version,
            require_test_dir=only_if_has_test_dir,
        )

    async def migrate(
        self,
        start_index: int = 0,
        continue_to_next: bool = True,
        dont_rerun_if_already_succeeded: bool = False,
    ) -> List[StageResult]:
        return await self.pipeline.run_stage(
            "migrate",
            start_index=start_index,
            continue_to_next=continue_to_next,
            dont_rerun_if_already_succeeded=dont_rerun_if_already_succeeded,
        )

    async def test(
        self,
        start_index: int = 0,
        continue_to_next: bool = True,
        dont_rerun_if_already_succeeded: bool = False,
    ) -> List[StageResult]:
        return await self.pipeline.run_stage(
            "test",
            start_index=start_index,
            continue_to_next=continue_to_next,
            dont_rerun_if_already_succeeded=dont_rerun_if_already_succeeded,
        )

    async def recompile_failures(self) -> List[StageResult]:
        return await self.compile(dont_rerun_if_already_succeeded=True)

    async def remigrate_failures(self) -> List[StageResult]:
        return await self.migrate(dont_rerun_if_already_succeeded=True)

    async def retest_not_executed(self) -> List[StageResult]:
        return await self.test(dont_rerun_if_already_succeeded=True)

    async def scan(
        self, start_index: int = 0, continue_to_next: bool = True
    ) -> List[StageResult]:
        """Run the sonar scanner on projects whose test run exited with 0."""
        return await self.pipeline.run_stage(
            SCANNER_STAGE, start_index=start_index, continue_to_next=continue_to_next
        )

    async def install_package(
        self, package: str, indexes: Optional[List[int]] = None
    ) -> List[StageResult]:
        """Add a dev dependency to the listed projects (default: every fully passing one)."""
        if indexes is None:
            indexes = self.pipeline.research_scope()
        self.logger.info(f"Installing {package} in {len(indexes)} projects")
        return await self.pipeline.install_package(package, indexes)

    def error_causes(self, stage: str) -> Dict[str, List[str]]:
        root = str(self.config.pipeline.repos_path.resolve())
        return report.error_causes(self.ledger, stage, project_root=root)

    def rollback(self) -> int:
        """Restore every patched build config from its backup."""
        return self.pipeline.rollback_all()

    def project_index(self, key: str) -> int:
        """Position of a project in ledger order (for single-project runs)."""
        try:
            return list(self.ledger.projects).index(key)
        except ValueError:
            raise KeyError(f"Unknown project '{key}'") from None

    def summary(self) -> str:
        return report.format_summary(self.ledger, self.config.pipeline.zero_tests_policy)

    def print_progress(self) -> None:
        """Print formatted statistics."""
        print("\n" + self.summary() + "\n")

    def export_csv(self, path: Optional[Path] = None) -> Path:
        """Write the CSV report next to the ledger unless a path is given."""
        if path is None:
            path = self.config.ledger_path.parent / f"{date.today().isoformat()}-summary.csv"
        written = report.export_csv(
            self.ledger, path, self.config.pipeline.zero_tests_policy
        )
        self.logger.info(f"{written} written")
        return written

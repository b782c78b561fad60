"""Configuration management for the research harness.

Values come from dataclass defaults, overridden by environment variables
(a `.env` file in the working directory is loaded first).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from solresearch.crawler.config import CrawlerConfig
from solresearch.pipeline.config import PipelineConfig


@dataclass
class ResearchConfig:
    """Main configuration aggregating all sub-configs."""

    ledger_path: Path = field(default_factory=lambda: Path("./data/ledger.json"))
    log_dir: Path = field(default_factory=lambda: Path("./logs"))
    log_level: str = "INFO"
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    def __post_init__(self):
        """Ensure paths are Path objects."""
        if isinstance(self.ledger_path, str):
            self.ledger_path = Path(self.ledger_path)
        if isinstance(self.log_dir, str):
            self.log_dir = Path(self.log_dir)

    @classmethod
    def from_env(cls, ledger_path: Optional[str] = None) -> "ResearchConfig":
        """Build a config from the environment.

        Environment Variables:
            GITHUB_TOKEN             - API token
            SOLRESEARCH_LEDGER_PATH  - Ledger JSON file (default: ./data/ledger.json)
            SOLIDITY_REPOS_DIRECTORY - Clone directory (default: ./data/repos)
            SOLRESEARCH_LOG_DIR      - Log directory (default: ./logs)
            SOLRESEARCH_LOG_LEVEL    - Log level (default: INFO)

        Args:
            ledger_path: Explicit ledger path, takes precedence over the environment.
        """
        load_dotenv(find_dotenv(usecwd=True))

        token = os.environ.get("GITHUB_TOKEN", "").strip() or None

        return cls(
            ledger_path=Path(
                ledger_path
                or os.environ.get("SOLRESEARCH_LEDGER_PATH", "./data/ledger.json")
            ),
            log_dir=Path(os.environ.get("SOLRESEARCH_LOG_DIR", "./logs")),
            log_level=os.environ.get("SOLRESEARCH_LOG_LEVEL", "INFO"),
            crawler=CrawlerConfig(github_token=token),
            pipeline=PipelineConfig(
                repos_path=Path(
                    os.environ.get("SOLIDITY_REPOS_DIRECTORY", "./data/repos")
                ),
            ),
        )

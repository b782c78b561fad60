"""
solresearch: crawl, build and test Solidity repositories at scale.

Crawls the GitHub search API into a JSON ledger, clones the repositories
that have both tests and a build config, then drives the build tool's
compile / migrate / test stages across them.
"""

__version__ = "0.1.0"

from solresearch.config import ResearchConfig
from solresearch.crawler.ledger import Ledger
from solresearch.orchestrator import ResearchOrchestrator

__all__ = [
    "ResearchConfig",
    "Ledger",
    "ResearchOrchestrator",
]

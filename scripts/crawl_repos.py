#!/usr/bin/env python3
"""Script to run the whole research pipeline in one go.

Crawls the repository search, clones and installs the qualifying
repositories, then compiles, migrates and tests every project.
For single stages and more options, use: solresearch --help

Environment Variables:
    GITHUB_TOKEN: GitHub API token
    SOLRESEARCH_LEDGER_PATH: Ledger JSON file
    SOLIDITY_REPOS_DIRECTORY: Directory to clone repositories into

Examples:
    # Crawl repositories with at least 5 stars and build them all
    python scripts/crawl_repos.py --min-stars 5 --split

    # Skip the crawl and only rerun the build stages on the existing ledger
    python scripts/crawl_repos.py --skip-crawl
"""

import argparse
import asyncio
import sys

from solresearch.config import ResearchConfig
from solresearch.logs import LoggingContext
from solresearch.orchestrator import ResearchOrchestrator


async def main():
    parser = argparse.ArgumentParser(
        description="Crawl, clone, compile, migrate and test Solidity repositories"
    )
    parser.add_argument(
        "--min-stars",
        type=int,
        default=0,
        help="Minimum star count (default: 0)",
    )
    parser.add_argument(
        "--ledger",
        default=None,
        help="Ledger path (default: ./data/ledger.json)",
    )
    parser.add_argument(
        "--split",
        action="store_true",
        help="Crawl before/after 2019-01-01 separately",
    )
    parser.add_argument(
        "--skip-crawl",
        action="store_true",
        help="Use the existing ledger without crawling",
    )

    args = parser.parse_args()

    config = ResearchConfig.from_env(args.ledger)

    print(f"Configuration:")
    print(f"  Ledger:          {config.ledger_path}")
    print(f"  Repositories:    {config.pipeline.repos_path}")
    print(f"  Min stars:       {args.min_stars}")
    print(f"  GitHub token:    {'set' if config.crawler.github_token else 'not set'}")
    print()

    with LoggingContext(config.log_dir, config.log_level):
        async with ResearchOrchestrator(config) as orchestrator:
            if not args.skip_crawl:
                await orchestrator.crawl(star_threshold=args.min_stars, split=args.split)
            await orchestrator.clone_and_install()
            await orchestrator.compile()
            await orchestrator.migrate()
            await orchestrator.test()

            orchestrator.print_progress()

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

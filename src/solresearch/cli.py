"""Command-line interface for the research harness.

Usage:
    solresearch crawl --min-stars 1 --split
    solresearch clone
    solresearch compile [--start N] [--single] [--retry-failed] [--solc 0.4.24]
    solresearch migrate [--retry-failed]
    solresearch test [--retry-not-executed]
    solresearch scan [--start N] [--single]
    solresearch add-package solidity-coverage [--index N ...]
    solresearch errors --stage compile
    solresearch rollback
    solresearch stats
    solresearch export --output ./data/summary.csv
    solresearch menu [ledger.json]

Environment Variables (can be set in .env file):
    GITHUB_TOKEN             - GitHub personal access token
    SOLRESEARCH_LEDGER_PATH  - Ledger JSON file (default: ./data/ledger.json)
    SOLIDITY_REPOS_DIRECTORY - Path to clone repos (default: ./data/repos)
    SOLRESEARCH_LOG_DIR      - Log directory (default: ./logs)
    SOLRESEARCH_LOG_LEVEL    - Log level (default: INFO)
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Callable, Optional

from solresearch import report
from solresearch.config import ResearchConfig
from solresearch.crawler.ledger import STAGES
from solresearch.errors import LedgerError
from solresearch.logs import LoggingContext
from solresearch.orchestrator import ResearchOrchestrator

MENU_OPTIONS = [
    (1, "Crawl repositories"),
    (2, "Show statistics"),
    (4, "Clone and install"),
    (5, "Compile all"),
    (6, "Compile one"),
    (7, "Recompile failures"),
    (8, "Migrate all"),
    (9, "Migrate one"),
    (10, "Re-migrate failures"),
    (50, "Test all"),
    (51, "Test one"),
    (52, "Retest not executed"),
    (80, "Install a dev package on passing projects"),
    (81, "Sonar scan passing projects"),
    (99, "Rollback build configs"),
    (100, "Export CSV results"),
    (101, "Failures by error cause"),
    (0, "Exit"),
]


def _print_results(results) -> None:
    ran = [r for r in results if r.ran]
    ok = [r for r in ran if r.succeeded]
    print(f"\n{len(results)} visited, {len(ran)} run, {len(ok)} succeeded")


async def cmd_crawl(args, config: ResearchConfig) -> int:
    """Crawl the repository search into the ledger."""
    async with ResearchOrchestrator(config) as orchestrator:
        print(f"Crawling {config.crawler.language} repositories into {config.ledger_path}")
        print(
            f"Note: {config.crawler.search_delay_seconds:.0f}s delay before each "
            "search request for rate limit compliance"
        )
        stats = await orchestrator.crawl(
            star_threshold=args.min_stars,
            force_refresh=args.force_refresh,
            split=args.split,
        )
        print(f"\nCrawl complete:")
        print(f"  Pages:          {stats.pages}")
        print(f"  Repositories:   {stats.seen} ({stats.new} new)")
        print(f"  Below stars:    {stats.skipped_low_stars}")
        print(f"  Failures:       {stats.failures}")
    return 0


async def cmd_clone(args, config: ResearchConfig) -> int:
    """Clone qualifying repositories and install dependencies."""
    async with ResearchOrchestrator(config) as orchestrator:
        results = await orchestrator.clone_and_install(
            start_index=args.start, continue_to_next=not args.single
        )
        installed = sum(len(r.installed) for r in results)
        failed = sum(len(r.failed) for r in results)
        print(f"\n{len(results)} repositories processed: {installed} installs, {failed} failed")
    return 0


async def cmd_compile(args, config: ResearchConfig) -> int:
    async with ResearchOrchestrator(config) as orchestrator:
        results = await orchestrator.compile(
            start_index=args.start,
            continue_to_next=not args.single,
            only_if_has_test_dir=not args.all_projects,
            dont_rerun_if_already_succeeded=args.retry_failed,
            forced_solc_version=args.solc,
        )
        _print_results(results)
    return 0


async def cmd_migrate(args, config: ResearchConfig) -> int:
    async with ResearchOrchestrator(config) as orchestrator:
        results = await orchestrator.migrate(
            start_index=args.start,
            continue_to_next=not args.single,
            dont_rerun_if_already_succeeded=args.retry_failed,
        )
        _print_results(results)
    return 0


async def cmd_test(args, config: ResearchConfig) -> int:
    async with ResearchOrchestrator(config) as orchestrator:
        results = await orchestrator.test(
            start_index=args.start,
            continue_to_next=not args.single,
            dont_rerun_if_already_succeeded=args.retry_not_executed,
        )
        _print_results(results)
    return 0


async def cmd_scan(args, config: ResearchConfig) -> int:
    """Run the sonar scanner on projects whose tests all passed."""
    async with ResearchOrchestrator(config) as orchestrator:
        results = await orchestrator.scan(
            start_index=args.start, continue_to_next=not args.single
        )
        _print_results(results)
    return 0


async def cmd_add_package(args, config: ResearchConfig) -> int:
    async with ResearchOrchestrator(config) as orchestrator:
        results = await orchestrator.install_package(args.package, args.index or None)
        _print_results(results)
    return 0


async def cmd_errors(args, config: ResearchConfig) -> int:
    async with ResearchOrchestrator(config) as orchestrator:
        print(report.format_error_causes(orchestrator.error_causes(args.stage), args.stage))
    return 0


async def cmd_rollback(args, config: ResearchConfig) -> int:
    """Restore every patched build config from its backup."""
    async with ResearchOrchestrator(config) as orchestrator:
        restored = orchestrator.rollback()
        print(f"{restored} build configs restored")
    return 0


async def cmd_stats(args, config: ResearchConfig) -> int:
    async with ResearchOrchestrator(config) as orchestrator:
        orchestrator.print_progress()
    return 0


async def cmd_export(args, config: ResearchConfig) -> int:
    async with ResearchOrchestrator(config) as orchestrator:
        path = orchestrator.export_csv(Path(args.output) if args.output else None)
        print(f"{path} written")
    return 0


def _ask_index(
    orchestrator: ResearchOrchestrator, input_func: Callable[[str], str]
) -> Optional[int]:
    """Read a ledger position or a project key."""
    answer = input_func("Project index or key: ").strip()
    if answer.isdigit():
        return int(answer)
    try:
        return orchestrator.project_index(answer)
    except KeyError:
        print("Invalid index")
        return None


async def run_menu(
    orchestrator: ResearchOrchestrator,
    input_func: Callable[[str], str] = input,
) -> None:
    """Numbered interactive menu; returns when the operator picks 0."""
    while True:
        print("\n" + "=" * 40)
        for number, label in MENU_OPTIONS:
            print(f"{number:>4}  {label}")
        print("=" * 40)

        choice = input_func("Option: ").strip()
        if not choice.isdigit():
            print(f"Unknown option '{choice}'")
            continue
        option = int(choice)

        if option == 0:
            return
        elif option == 1:
            await orchestrator.crawl()
        elif option == 2:
            orchestrator.print_progress()
        elif option == 4:
            await orchestrator.clone_and_install()
        elif option == 5:
            _print_results(await orchestrator.compile())
        elif option == 6:
            index = _ask_index(orchestrator, input_func)
            if index is not None:
                solc = input_func("Forced solc version (empty for discovered): ").strip()
                _print_results(
                    await orchestrator.compile(
                        start_index=index,
                        continue_to_next=False,
                        forced_solc_version=solc or None,
                    )
                )
        elif option == 7:
            _print_results(await orchestrator.recompile_failures())
        elif option == 8:
            _print_results(await orchestrator.migrate())
        elif option == 9:
            index = _ask_index(orchestrator, input_func)
            if index is not None:
                _print_results(
                    await orchestrator.migrate(start_index=index, continue_to_next=False)
                )
        elif option == 10:
            _print_results(await orchestrator.remigrate_failures())
        elif option == 50:
            _print_results(await orchestrator.test())
        elif option == 51:
            index = _ask_index(orchestrator, input_func)
            if index is not None:
                _print_results(await orchestrator.test(start_index=index, continue_to_next=False))
        elif option == 52:
            _print_results(await orchestrator.retest_not_executed())
        elif option == 80:
            package = input_func("Package: ").strip()
            if package:
                _print_results(await orchestrator.install_package(package))
        elif option == 81:
            _print_results(await orchestrator.scan())
        elif option == 99:
            print(f"{orchestrator.rollback()} build configs restored")
        elif option == 100:
            print(f"{orchestrator.export_csv()} written")
        elif option == 101:
            stage = input_func(f"Stage ({', '.join(STAGES)}): ").strip() or "compile"
            if stage in STAGES:
                print(report.format_error_causes(orchestrator.error_causes(stage), stage))
            else:
                print(f"Unknown stage '{stage}'")
        else:
            print(f"Unknown option '{choice}'")


async def cmd_menu(args, config: ResearchConfig) -> int:
    async with ResearchOrchestrator(config) as orchestrator:
        await run_menu(orchestrator)
    return 0


COMMANDS = {
    "crawl": cmd_crawl,
    "clone": cmd_clone,
    "compile": cmd_compile,
    "migrate": cmd_migrate,
    "test": cmd_test,
    "scan": cmd_scan,
    "add-package": cmd_add_package,
    "errors": cmd_errors,
    "rollback": cmd_rollback,
    "stats": cmd_stats,
    "export": cmd_export,
    "menu": cmd_menu,
}


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {number}")
    return number


def _add_cursor_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--start", type=_non_negative_int, default=0, help="Index to start at (default: 0)"
    )
    parser.add_argument(
        "--single", action="store_true", help="Process only the item at --start"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Solidity repository research harness",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--ledger",
        default=None,
        help="Ledger JSON file (env: SOLRESEARCH_LEDGER_PATH, default: ./data/ledger.json)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Crawl command
    crawl_parser = subparsers.add_parser("crawl", help="Crawl repository search results")
    crawl_parser.add_argument(
        "--min-stars", type=int, default=None, help="Minimum star count (default: 0)"
    )
    crawl_parser.add_argument(
        "--force-refresh", action="store_true",
        help="Search test directories again for known repositories"
    )
    crawl_parser.add_argument(
        "--split", action="store_true",
        help="Crawl before/after 2019-01-01 separately to get past the 1000-result cap"
    )

    # Clone command
    clone_parser = subparsers.add_parser("clone", help="Clone and install qualifying repositories")
    _add_cursor_args(clone_parser)

    # Compile command
    compile_parser = subparsers.add_parser("compile", help="Compile projects")
    _add_cursor_args(compile_parser)
    compile_parser.add_argument(
        "--retry-failed", action="store_true", help="Skip projects that already compiled"
    )
    compile_parser.add_argument(
        "--all-projects", action="store_true",
        help="Also compile projects without a test directory"
    )
    compile_parser.add_argument(
        "--solc", default=None, help="Force this compiler version"
    )

    # Migrate command
    migrate_parser = subparsers.add_parser("migrate", help="Migrate compiled projects")
    _add_cursor_args(migrate_parser)
    migrate_parser.add_argument(
        "--retry-failed", action="store_true", help="Skip projects that already migrated"
    )

    # Test command
    test_parser = subparsers.add_parser("test", help="Test migrated projects")
    _add_cursor_args(test_parser)
    test_parser.add_argument(
        "--retry-not-executed", action="store_true",
        help="Skip projects whose test suite already ran"
    )

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="Sonar scan projects whose tests passed")
    _add_cursor_args(scan_parser)

    add_package_parser = subparsers.add_parser(
        "add-package", help="npm install --save-dev a package in passing projects"
    )
    add_package_parser.add_argument("package", help="Package to install")
    add_package_parser.add_argument(
        "--index", type=_non_negative_int, action="append", default=None,
        help="Project index (repeatable, default: every project whose tests all passed)"
    )

    errors_parser = subparsers.add_parser("errors", help="Group failed projects by error cause")
    errors_parser.add_argument(
        "--stage", choices=list(STAGES),
        default="compile", help="Stage to inspect (default: compile)"
    )

    subparsers.add_parser("rollback", help="Restore build configs from their backups")
    subparsers.add_parser("stats", help="Show statistics")

    export_parser = subparsers.add_parser("export", help="Export results as CSV")
    export_parser.add_argument(
        "--output", default=None,
        help="CSV path (default: <ledger dir>/<date>-summary.csv)"
    )

    # Menu command
    menu_parser = subparsers.add_parser("menu", help="Interactive numbered menu")
    menu_parser.add_argument(
        "ledger_file", nargs="?", default=None, help="Ledger JSON file"
    )

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    ledger_path = getattr(args, "ledger_file", None) or args.ledger
    config = ResearchConfig.from_env(ledger_path)

    logging_context = LoggingContext(config.log_dir, config.log_level)
    try:
        logger = logging_context.init()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(COMMANDS[args.command](args, config))
    except LedgerError as e:
        logger.critical(f"{e}")
        return 1
    except Exception:
        logger.critical("Fatal error, stopping", exc_info=True)
        raise
    finally:
        logging_context.close()


if __name__ == "__main__":
    sys.exit(main())

"""Tests for the research orchestrator wiring."""

from datetime import date

import pytest

from solresearch.config import ResearchConfig
from solresearch.crawler.config import CrawlerConfig
from solresearch.orchestrator import SPLIT_FILTERS, ResearchOrchestrator

from conftest import FakeRunner, Scripted, make_item, make_project_dir, qualifying_record


@pytest.fixture
def config(tmp_path, pipeline_config):
    return ResearchConfig(
        ledger_path=tmp_path / "data" / "ledger.json",
        crawler=CrawlerConfig(search_delay_seconds=0, retry_delay_seconds=0),
        pipeline=pipeline_config,
    )


@pytest.mark.asyncio
async def test_split_crawl_uses_date_filters(config, fake_client):
    for extra_filter in SPLIT_FILTERS:
        fake_client.add_page(1, 1, [make_item(f"a/{len(extra_filter)}")], extra_filter=extra_filter)

    async with ResearchOrchestrator(config, client=fake_client) as orchestrator:
        stats = await orchestrator.crawl(split=True)

    assert [f for _, f in fake_client.search_calls] == SPLIT_FILTERS
    assert stats.seen == 2
    # The shared config is left alone
    assert config.crawler.extra_filters == [None]


@pytest.mark.asyncio
async def test_full_run_over_cloned_project(config):
    runner = FakeRunner()
    async with ResearchOrchestrator(config, runner=runner) as orchestrator:
        orchestrator.ledger.add(qualifying_record("alice/token"))
        make_project_dir(config.pipeline.repos_path / "alice" / "token")

        await orchestrator.clone_and_install()
        await orchestrator.compile()
        await orchestrator.migrate()
        await orchestrator.test()

        assert orchestrator.project_index("alice/token/truffle.js") == 0
        with pytest.raises(KeyError):
            orchestrator.project_index("nobody/none/truffle.js")

    assert runner.commands() == ["truffle compile", "truffle migrate", "truffle test"]


@pytest.mark.asyncio
async def test_export_csv_defaults_next_to_ledger(config):
    async with ResearchOrchestrator(config, runner=FakeRunner()) as orchestrator:
        orchestrator.ledger.add(qualifying_record("alice/token"))
        orchestrator.ledger.ensure_project("alice/token", "truffle.js")
        path = orchestrator.export_csv()

    assert path == config.ledger_path.parent / f"{date.today().isoformat()}-summary.csv"
    assert path.read_text().startswith("Project;repoPushed;")


@pytest.mark.asyncio
async def test_supplied_client_is_not_closed(config, fake_client):
    orchestrator = ResearchOrchestrator(config, client=fake_client)
    await orchestrator.init()
    await orchestrator.close()
    assert orchestrator.client is fake_client


@pytest.mark.asyncio
async def test_scan_and_package_install_follow_passing_tests(config):
    runner = FakeRunner({"test": Scripted(stdout=["  4 passing (1s)\n"])})
    async with ResearchOrchestrator(config, runner=runner) as orchestrator:
        orchestrator.ledger.add(qualifying_record("alice/token"))
        make_project_dir(config.pipeline.repos_path / "alice" / "token")

        await orchestrator.compile()
        await orchestrator.migrate()
        await orchestrator.test()
        await orchestrator.scan()
        await orchestrator.install_package("solidity-coverage")

    assert runner.commands()[3:] == ["sonar-scanner", "npm install --save-dev solidity-coverage"]


@pytest.mark.asyncio
async def test_error_causes_hide_clone_root(config):
    root = config.pipeline.repos_path.resolve()
    runner = FakeRunner(
        {"compile": Scripted(stdout=[f"Error: {root}/alice/token/contracts/A.sol: File not found\n"], exit_code=1)}
    )
    async with ResearchOrchestrator(config, runner=runner) as orchestrator:
        orchestrator.ledger.add(qualifying_record("alice/token"))
        make_project_dir(config.pipeline.repos_path / "alice" / "token")
        await orchestrator.compile()

        causes = orchestrator.error_causes("compile")

    assert causes == {"PRJ_HOME/alice/token/contracts/A.sol: File not found": ["alice/token/truffle.js"]}

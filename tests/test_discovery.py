"""Tests for the crawl engine with a scripted API client."""

from dataclasses import replace

import pytest

from solresearch.crawler.discovery import CrawlEngine, CrawlStats
from solresearch.crawler.ledger import Ledger, TreeEntry
from solresearch.crawler.rate_limiter import ApiResult

from conftest import make_item, permanent, transient


def tree_entry(sha="t1", path="test"):
    return TreeEntry(path=path, sha=sha, type="tree")


def config_blob(path="truffle.js"):
    return TreeEntry(path=path, sha="cfg", type="blob", size=300)


def script_qualifying(client, full_name, sha="t1"):
    client.entries[(full_name, "tree")] = [ApiResult.ok([tree_entry(sha)])]
    client.entries[(full_name, "blob")] = [ApiResult.ok([config_blob()])]
    client.trees[sha] = [
        ApiResult.ok(
            [
                TreeEntry("token.test.js", "a", "blob", 512),
                TreeEntry("helpers", "b", "tree", 0),
                TreeEntry("empty.js", "c", "blob", 0),
            ]
        )
    ]


@pytest.fixture
def engine(fake_client, ledger, crawler_config):
    return CrawlEngine(fake_client, ledger, crawler_config)


# ---------------------------------------------------------------------------
# Paging
# ---------------------------------------------------------------------------

class TestPaging:

    @pytest.mark.asyncio
    async def test_stops_at_total_count(self, engine, fake_client):
        engine.config.per_page = 2
        fake_client.add_page(1, 3, [make_item("a/one"), make_item("a/two")])
        fake_client.add_page(2, 3, [make_item("a/three")])

        stats = await engine.crawl()

        assert [page for page, _ in fake_client.search_calls] == [1, 2]
        assert stats.pages == 2
        assert stats.seen == 3
        assert list(engine.ledger.repositories) == ["a/one", "a/two", "a/three"]

    @pytest.mark.asyncio
    async def test_stops_at_search_cap(self, engine, fake_client):
        engine.config.per_page = 1
        engine.config.max_search_results = 2
        for page in range(1, 5):
            fake_client.add_page(page, 4000, [make_item(f"a/r{page}", repo_id=page)])

        await engine.crawl()

        assert [page for page, _ in fake_client.search_calls] == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_page_stops(self, engine, fake_client):
        engine.config.per_page = 1
        fake_client.add_page(1, 10, [make_item("a/one")])
        fake_client.add_page(2, 10, [])

        await engine.crawl()

        assert [page for page, _ in fake_client.search_calls] == [1, 2]

    @pytest.mark.asyncio
    async def test_first_page_failure_stops(self, engine, fake_client):
        fake_client.pages[(None, 1)] = [permanent()]

        stats = await engine.crawl()

        assert stats.failures == 1
        assert fake_client.search_calls == [(1, None)]
        assert len(engine.ledger) == 0

    @pytest.mark.asyncio
    async def test_later_page_failure_moves_on(self, engine, fake_client):
        engine.config.per_page = 1
        fake_client.add_page(1, 3, [make_item("a/one")])
        fake_client.pages[(None, 2)] = [permanent()]
        fake_client.add_page(3, 3, [make_item("a/three")])

        stats = await engine.crawl()

        assert [page for page, _ in fake_client.search_calls] == [1, 2, 3]
        assert stats.failures == 1
        assert list(engine.ledger.repositories) == ["a/one", "a/three"]

    @pytest.mark.asyncio
    async def test_crawl_all_runs_each_filter(self, engine, fake_client):
        engine.config.extra_filters = ["created:<2019-01-01", "created:>=2019-01-01"]
        fake_client.add_page(1, 1, [make_item("a/old")], extra_filter="created:<2019-01-01")
        fake_client.add_page(1, 1, [make_item("a/new")], extra_filter="created:>=2019-01-01")

        stats = await engine.crawl_all()

        assert fake_client.search_calls == [
            (1, "created:<2019-01-01"),
            (1, "created:>=2019-01-01"),
        ]
        assert stats.seen == 2
        assert stats.total_count == 2
        assert list(engine.ledger.repositories) == ["a/old", "a/new"]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class TestClassification:

    @pytest.mark.asyncio
    async def test_records_trees_and_children(self, engine, fake_client):
        script_qualifying(fake_client, "a/token")
        fake_client.add_page(1, 1, [make_item("a/token")])

        await engine.crawl()

        record = engine.ledger.get("a/token")
        assert record.qualifies
        assert [c.path for c in record.test_trees[0].children] == ["token.test.js"]
        assert record.truffle_trees[0].path == "truffle.js"
        assert record.retrieved_at is not None

        # Persisted after the repository was processed
        assert Ledger.load(engine.ledger.path).get("a/token").qualifies

    @pytest.mark.asyncio
    async def test_below_threshold_is_not_recorded(self, engine, fake_client):
        fake_client.add_page(1, 2, [make_item("a/popular", stars=50), make_item("a/quiet", stars=3)])

        stats = await engine.crawl(star_threshold=10)

        assert list(engine.ledger.repositories) == ["a/popular"]
        assert stats.skipped_low_stars == 1
        assert ("a/quiet", "tree") not in fake_client.find_calls

    @pytest.mark.asyncio
    async def test_no_match_is_empty_list(self, engine, fake_client):
        fake_client.add_page(1, 1, [make_item("a/plain")])

        await engine.crawl()

        record = engine.ledger.get("a/plain")
        assert record.test_trees == []
        assert record.truffle_trees == []
        assert not record.qualifies

    @pytest.mark.asyncio
    async def test_retries_once_on_transient_error(self, engine, fake_client):
        fake_client.entries[("a/flaky", "tree")] = [transient(), ApiResult.ok([tree_entry()])]
        fake_client.add_page(1, 1, [make_item("a/flaky")])

        await engine.crawl()

        assert fake_client.find_calls.count(("a/flaky", "tree")) == 2
        assert len(engine.ledger.get("a/flaky").test_trees) == 1

    @pytest.mark.asyncio
    async def test_persistent_failure_leaves_field_unsearched(self, engine, fake_client):
        fake_client.entries[("a/down", "tree")] = [transient()]
        fake_client.add_page(1, 1, [make_item("a/down")])

        stats = await engine.crawl()

        assert fake_client.find_calls.count(("a/down", "tree")) == 2
        record = engine.ledger.get("a/down")
        assert record.test_trees is None
        assert record.truffle_trees == []
        assert stats.failures == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, engine, fake_client):
        fake_client.entries[("a/gone", "blob")] = [permanent()]
        fake_client.add_page(1, 1, [make_item("a/gone")])

        await engine.crawl()

        assert fake_client.find_calls.count(("a/gone", "blob")) == 1
        assert engine.ledger.get("a/gone").truffle_trees is None

    @pytest.mark.asyncio
    async def test_unlisted_subtree_has_no_children(self, engine, fake_client):
        script_qualifying(fake_client, "a/token")
        fake_client.trees["t1"] = [permanent()]
        fake_client.add_page(1, 1, [make_item("a/token")])

        await engine.crawl()

        assert engine.ledger.get("a/token").test_trees[0].children == []


# ---------------------------------------------------------------------------
# Resuming
# ---------------------------------------------------------------------------

class TestResume:

    @pytest.mark.asyncio
    async def test_recrawl_is_idempotent(self, engine, fake_client):
        script_qualifying(fake_client, "a/token")
        fake_client.add_page(1, 1, [make_item("a/token")])
        await engine.crawl()
        first = engine.ledger.path.read_bytes()
        searched = len(fake_client.find_calls)

        await engine.crawl()

        assert len(fake_client.find_calls) == searched
        assert engine.ledger.path.read_bytes() == first

    @pytest.mark.asyncio
    async def test_star_change_is_recorded(self, engine, fake_client):
        script_qualifying(fake_client, "a/token")
        fake_client.add_page(1, 1, [make_item("a/token", stars=10)])
        await engine.crawl()

        fake_client.add_page(1, 1, [make_item("a/token", stars=25)])
        stats = await engine.crawl()

        assert stats.stars_updated == 1
        assert stats.new == 0
        assert engine.ledger.get("a/token").repo.stars == 25
        assert Ledger.load(engine.ledger.path).get("a/token").repo.stars == 25

    @pytest.mark.asyncio
    async def test_force_refresh_searches_tests_again(self, engine, fake_client):
        script_qualifying(fake_client, "a/token")
        fake_client.add_page(1, 1, [make_item("a/token")])
        await engine.crawl()

        await engine.crawl(force_refresh=True)

        assert fake_client.find_calls.count(("a/token", "tree")) == 2
        # Build-config search is never repeated once recorded
        assert fake_client.find_calls.count(("a/token", "blob")) == 1

    @pytest.mark.asyncio
    async def test_resumes_only_unsearched(self, tmp_path, fake_client, crawler_config):
        ledger = Ledger(tmp_path / "ledger.json")
        first = CrawlEngine(fake_client, ledger, crawler_config)
        fake_client.entries[("a/down", "tree")] = [transient()]
        fake_client.add_page(1, 1, [make_item("a/down")])
        await first.crawl()

        fake_client.entries[("a/down", "tree")] = [ApiResult.ok([tree_entry()])]
        fake_client.find_calls.clear()
        resumed = CrawlEngine(fake_client, Ledger.load(ledger.path), replace(crawler_config))
        await resumed.crawl()

        assert fake_client.find_calls == [("a/down", "tree")]
        assert resumed.ledger.get("a/down").test_trees[0].path == "test"


def test_stats_merge():
    total = CrawlStats(seen=2, total_count=None)
    total.merge(CrawlStats(seen=3, new=1, total_count=40))
    total.merge(CrawlStats(seen=1, total_count=5))
    assert total.seen == 6
    assert total.new == 1
    assert total.total_count == 45

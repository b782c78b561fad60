"""Shared fakes and fixtures."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from solresearch.crawler.config import CrawlerConfig
from solresearch.crawler.ledger import Ledger, RepositoryRecord, RepoSnapshot, TreeEntry
from solresearch.crawler.rate_limiter import ApiResult, SearchPage
from solresearch.errors import ApiError
from solresearch.pipeline.config import PipelineConfig
from solresearch.pipeline.process import ProcessOutcome


# ---------------------------------------------------------------------------
# API client fake
# ---------------------------------------------------------------------------

def make_item(full_name: str, stars: int = 10, repo_id: int = 1) -> dict:
    owner, name = full_name.split("/")
    return {
        "id": repo_id,
        "full_name": full_name,
        "name": name,
        "owner": {"login": owner},
        "clone_url": f"https://github.com/{full_name}.git",
        "stargazers_count": stars,
        "size": 120,
        "pushed_at": "2019-05-01T10:00:00Z",
    }


def transient(message: str = "rate limited") -> ApiResult:
    return ApiResult.fail(ApiError(message, status_code=403))


def permanent(message: str = "not found") -> ApiResult:
    return ApiResult.fail(ApiError(message, status_code=404))


class FakeClient:
    """Scripted stand-in for RateLimitedClient.

    Each scripted value is a list of results returned in order; the last one
    is repeated once the list is exhausted.
    """

    def __init__(self):
        self.pages: Dict[Tuple[Optional[str], int], List[ApiResult]] = {}
        self.entries: Dict[Tuple[str, str], List[ApiResult]] = {}
        self.trees: Dict[str, List[ApiResult]] = {}
        self.search_calls: List[Tuple[int, Optional[str]]] = []
        self.find_calls: List[Tuple[str, str]] = []
        self.tree_calls: List[str] = []

    def add_page(self, page: int, total: int, items: list, extra_filter: Optional[str] = None):
        self.pages[(extra_filter, page)] = [ApiResult.ok(SearchPage(total, items))]

    @staticmethod
    def _next(results: List[ApiResult]) -> ApiResult:
        return results.pop(0) if len(results) > 1 else results[0]

    async def search_repos(self, language, sort="stars", order="desc", per_page=100, page=1, extra_filter=None):
        self.search_calls.append((page, extra_filter))
        results = self.pages.get((extra_filter, page))
        if results is None:
            return ApiResult.ok(SearchPage(0, []))
        return self._next(results)

    async def find_entries(self, owner, repo, names, entry_type="tree", exclude_segment="node_modules"):
        full_name = f"{owner}/{repo}"
        self.find_calls.append((full_name, entry_type))
        results = self.entries.get((full_name, entry_type))
        if results is None:
            return ApiResult.ok([])
        return self._next(results)

    async def get_tree(self, owner, repo, sha, recursive=True):
        self.tree_calls.append(sha)
        results = self.trees.get(sha)
        if results is None:
            return ApiResult.ok([])
        return self._next(results)


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def crawler_config():
    return CrawlerConfig(search_delay_seconds=0, retry_delay_seconds=0)


# ---------------------------------------------------------------------------
# Process runner fake
# ---------------------------------------------------------------------------

@dataclass
class Scripted:
    """Scripted output of one command."""

    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)
    exit_code: Optional[int] = 0
    signal: Optional[str] = None
    effect: Optional[Callable[[List[str], Optional[Path]], None]] = None


class FakeRunner:
    """Records commands and replays scripted output, keyed by the command's second word (or its only one)."""

    def __init__(self, responses: Optional[Dict[str, Scripted]] = None):
        self.responses = responses or {}
        self.calls: List[Tuple[List[str], Optional[Path]]] = []

    def commands(self) -> List[str]:
        return [" ".join(cmd) for cmd, _ in self.calls]

    async def run(self, cmd, cwd=None, on_stdout=None, on_stderr=None, timeout=None):
        cwd = Path(cwd) if cwd is not None else None
        self.calls.append((list(cmd), cwd))
        scripted = self.responses.get(cmd[1] if len(cmd) > 1 else cmd[0], Scripted())
        if scripted.effect is not None:
            scripted.effect(list(cmd), cwd)
        for chunk in scripted.stdout:
            if on_stdout is not None:
                on_stdout(chunk)
        for chunk in scripted.stderr:
            if on_stderr is not None:
                on_stderr(chunk)
        return ProcessOutcome(exit_code=scripted.exit_code, signal=scripted.signal)


@pytest.fixture
def pipeline_config(tmp_path):
    return PipelineConfig(repos_path=tmp_path / "repos", settle_delay_seconds=0)


# ---------------------------------------------------------------------------
# Ledger helpers
# ---------------------------------------------------------------------------

def qualifying_record(full_name: str, config_paths=("truffle.js",), stars: int = 10) -> RepositoryRecord:
    return RepositoryRecord(
        repo=RepoSnapshot.from_api(make_item(full_name, stars)),
        test_trees=[TreeEntry(path="test", sha="t1", type="tree")],
        truffle_trees=[TreeEntry(path=p, sha=f"c{i}", type="blob", size=100) for i, p in enumerate(config_paths)],
    )


@pytest.fixture
def ledger(tmp_path):
    return Ledger(tmp_path / "ledger.json")


TRUFFLE_JS = """module.exports = {
  networks: {
    development: {
      host: "127.0.0.1",
      port: 7545,
      network_id: 5777
    }
  }
};
"""


def make_project_dir(
    root: Path,
    config_name: str = "truffle.js",
    test_files=("token.test.js",),
    package_json: Optional[str] = None,
    contracts: Optional[Dict[str, str]] = None,
) -> Path:
    """Lay out a cloned project on disk."""
    root.mkdir(parents=True, exist_ok=True)
    (root / config_name).write_text(TRUFFLE_JS)
    if test_files is not None:
        (root / "test").mkdir(exist_ok=True)
        for name in test_files:
            (root / "test" / name).write_text("// test\n")
    if package_json is not None:
        (root / "package.json").write_text(package_json)
    if contracts:
        (root / "contracts").mkdir(exist_ok=True)
        for name, source in contracts.items():
            (root / "contracts" / name).write_text(source)
    return root

"""JSON ledger holding crawl progress and per-project stage results.

The ledger is one JSON document:

    {
      "repositories": {"owner/name": RepositoryRecord, ...},
      "projects": {"owner/name/path/truffle.js": ProjectRecord, ...}
    }

Both maps keep insertion order, which is the processing order of every
stage. The whole document is rewritten atomically after each unit of work
(temp file, fsync, rename), so an interrupted run never leaves a partially
written ledger behind.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from solresearch.errors import LedgerError

logger = logging.getLogger(__name__)

STAGES = ("install", "compile", "migrate", "test", "sonarScanner")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TreeEntry:
    """A node of a repository listing (directory or file)."""

    path: str
    sha: str
    type: str = "tree"
    size: int = 0
    children: List["TreeEntry"] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def parent(self) -> str:
        """Directory holding this entry ("" at the repository root)."""
        return self.path.rsplit("/", 1)[0] if "/" in self.path else ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TreeEntry":
        return cls(
            path=data["path"],
            sha=data.get("sha", ""),
            type=data.get("type", "blob"),
            size=data.get("size") or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {"path": self.path, "sha": self.sha, "type": self.type, "size": self.size}
        if self.type == "tree":
            result["children"] = [c.to_dict() for c in self.children]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TreeEntry":
        return cls(
            path=data["path"],
            sha=data.get("sha", ""),
            type=data.get("type", "tree"),
            size=data.get("size") or 0,
            children=[cls.from_dict(c) for c in data.get("children") or []],
        )


@dataclass
class RepoSnapshot:
    """Upstream repository metadata as seen on first sighting."""

    id: int
    full_name: str
    name: str
    owner: str
    clone_url: str
    stars: int
    size_kb: int = 0
    pushed_at: Optional[str] = None

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "RepoSnapshot":
        """Build a snapshot from a search result item."""
        owner = (item.get("owner") or {}).get("login") or item["full_name"].split("/")[0]
        return cls(
            id=item.get("id", 0),
            full_name=item["full_name"],
            name=item.get("name") or item["full_name"].split("/")[-1],
            owner=owner,
            clone_url=item.get("clone_url") or f"https://github.com/{item['full_name']}.git",
            stars=item.get("stargazers_count", 0),
            size_kb=item.get("size", 0),
            pushed_at=item.get("pushed_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "name": self.name,
            "owner": {"login": self.owner},
            "clone_url": self.clone_url,
            "stargazers_count": self.stars,
            "size": self.size_kb,
            "pushed_at": self.pushed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepoSnapshot":
        return cls.from_api(data)


def _entries_to_dict(entries: Optional[List[TreeEntry]]) -> Optional[List[Dict[str, Any]]]:
    if entries is None:
        return None
    return [e.to_dict() for e in entries]


def _entries_from_dict(data: Optional[List[Dict[str, Any]]]) -> Optional[List[TreeEntry]]:
    if data is None:
        return None
    return [TreeEntry.from_dict(e) for e in data]


@dataclass
class RepositoryRecord:
    """Crawl state of one repository.

    `test_trees` / `truffle_trees` are None until searched successfully and
    an empty list when searched with no match.
    """

    repo: RepoSnapshot
    test_trees: Optional[List[TreeEntry]] = None
    truffle_trees: Optional[List[TreeEntry]] = None
    retrieved_at: Optional[str] = None

    @property
    def full_name(self) -> str:
        return self.repo.full_name

    @property
    def qualifies(self) -> bool:
        """Has at least one test directory and one build-config file."""
        return bool(self.test_trees) and bool(self.truffle_trees)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo": self.repo.to_dict(),
            "testTrees": _entries_to_dict(self.test_trees),
            "truffleTrees": _entries_to_dict(self.truffle_trees),
            "retrieveDate": self.retrieved_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepositoryRecord":
        return cls(
            repo=RepoSnapshot.from_dict(data["repo"]),
            test_trees=_entries_from_dict(data.get("testTrees")),
            truffle_trees=_entries_from_dict(data.get("truffleTrees")),
            retrieved_at=data.get("retrieveDate"),
        )


@dataclass
class StageRun:
    """Latest execution of one stage for a project."""

    start: Optional[str] = None
    finish: Optional[str] = None
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    stdout_events: List[str] = field(default_factory=list)
    stderr_events: List[str] = field(default_factory=list)

    def to_dict(self, stage: str) -> Dict[str, Any]:
        return {
            f"{stage}Start": self.start,
            f"{stage}Finish": self.finish,
            f"{stage}ExitCode": self.exit_code,
            f"{stage}ExitSignal": self.exit_signal,
            f"{stage}Errors": list(self.errors),
            f"{stage}StdOutEvents": list(self.stdout_events),
            f"{stage}StdErrorEvents": list(self.stderr_events),
        }

    @classmethod
    def from_dict(cls, stage: str, data: Dict[str, Any]) -> Optional["StageRun"]:
        """Read a stage's flattened fields; None if the stage never ran."""
        if f"{stage}Start" not in data and f"{stage}ExitCode" not in data:
            return None
        return cls(
            start=data.get(f"{stage}Start"),
            finish=data.get(f"{stage}Finish"),
            exit_code=data.get(f"{stage}ExitCode"),
            exit_signal=data.get(f"{stage}ExitSignal"),
            errors=list(data.get(f"{stage}Errors") or []),
            stdout_events=list(data.get(f"{stage}StdOutEvents") or []),
            stderr_events=list(data.get(f"{stage}StdErrorEvents") or []),
        )


@dataclass
class ProjectRecord:
    """One buildable sub-project: a build-config file inside a repository."""

    key: str
    full_name: str
    path: str
    has_package_json: bool = False
    has_test_dir: bool = False
    has_test_script: bool = False
    solc_version: Optional[str] = None
    solc_searched: bool = False
    ignore: bool = False
    stages: Dict[str, StageRun] = field(default_factory=dict)

    @staticmethod
    def make_key(full_name: str, config_path: str) -> str:
        return f"{full_name}/{config_path}"

    def stage(self, name: str) -> Optional[StageRun]:
        return self.stages.get(name)

    def exit_code(self, name: str) -> Optional[int]:
        run = self.stages.get(name)
        return run.exit_code if run else None

    def start_stage(self, name: str) -> StageRun:
        """Discard the previous run of a stage and open a new one."""
        run = StageRun(start=utc_now())
        self.stages[name] = run
        return run

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "key": self.key,
            "full_name": self.full_name,
            "path": self.path,
            "hasPackageJSON": self.has_package_json,
            "hasTestDir": self.has_test_dir,
            "hasTestScript": self.has_test_script,
            "solcVersion": self.solc_version,
            "solcVersionSearched": self.solc_searched,
            "ignore": self.ignore,
        }
        for stage in STAGES:
            run = self.stages.get(stage)
            if run is not None:
                result.update(run.to_dict(stage))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectRecord":
        stages = {}
        for stage in STAGES:
            run = StageRun.from_dict(stage, data)
            if run is not None:
                stages[stage] = run
        return cls(
            key=data["key"],
            full_name=data["full_name"],
            path=data["path"],
            has_package_json=bool(data.get("hasPackageJSON")),
            has_test_dir=data.get("hasTestDir") is True,
            has_test_script=bool(data.get("hasTestScript")),
            solc_version=data.get("solcVersion"),
            solc_searched=bool(data.get("solcVersionSearched")),
            ignore=bool(data.get("ignore")),
            stages=stages,
        )


class Ledger:
    """In-memory ledger bound to a JSON file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.repositories: Dict[str, RepositoryRecord] = {}
        self.projects: Dict[str, ProjectRecord] = {}

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Ledger":
        """Load a ledger, starting empty if the file does not exist.

        Raises:
            LedgerError: The file exists but is not a valid ledger document.
        """
        ledger = cls(path)
        if not ledger.path.exists():
            logger.info(f"No ledger at {ledger.path}, starting empty")
            return ledger

        try:
            with open(ledger.path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise LedgerError(f"Ledger {ledger.path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise LedgerError(f"Ledger {ledger.path} must hold a JSON object")

        try:
            for name, record in (data.get("repositories") or {}).items():
                ledger.repositories[name] = RepositoryRecord.from_dict(record)
            for key, record in (data.get("projects") or {}).items():
                ledger.projects[key] = ProjectRecord.from_dict(record)
        except (KeyError, TypeError, AttributeError) as e:
            raise LedgerError(f"Malformed record in {ledger.path}: {e!r}") from e

        logger.debug(
            f"Loaded ledger {ledger.path}: {len(ledger.repositories)} repositories, "
            f"{len(ledger.projects)} projects"
        )
        return ledger

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repositories": {k: v.to_dict() for k, v in self.repositories.items()},
            "projects": {k: v.to_dict() for k, v in self.projects.items()},
        }

    def save(self) -> None:
        """Atomically rewrite the ledger file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, full_name: str) -> Optional[RepositoryRecord]:
        return self.repositories.get(full_name)

    def add(self, record: RepositoryRecord) -> None:
        self.repositories[record.full_name] = record

    def qualifying_repositories(self) -> List[RepositoryRecord]:
        """Repositories with both test directories and build-config files, in ledger order."""
        return [r for r in self.repositories.values() if r.qualifies]

    def add_project(self, project: ProjectRecord) -> None:
        self.projects[project.key] = project

    def ensure_project(self, full_name: str, config_path: str) -> ProjectRecord:
        """The project record for a build-config file, created on first use."""
        key = ProjectRecord.make_key(full_name, config_path)
        project = self.projects.get(key)
        if project is None:
            project = ProjectRecord(key=key, full_name=full_name, path=config_path)
            self.projects[key] = project
        return project

    def __len__(self) -> int:
        return len(self.repositories)

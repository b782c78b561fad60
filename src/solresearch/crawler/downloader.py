"""Clone and dependency install for qualifying repositories.

Repositories are processed strictly one after another, in ledger order:

- the repository is cloned unless its directory already exists
- every build-config location inside it is a sub-project whose
  dependencies are installed unless it has no package.json or
  node_modules is already present

Child-process output is forwarded to the log line by line, tagged with the
repository name. Failures are logged and recorded, never fatal to the run.
"""

import inspect
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union

from solresearch.crawler.ledger import (
    Ledger,
    RepositoryRecord,
    StageRun,
    TreeEntry,
    utc_now,
)
from solresearch.pipeline.config import PipelineConfig
from solresearch.pipeline.process import LogForwarder, ProcessOutcome, ProcessRunner

VENDOR_DIR = "node_modules"
MANIFEST = "package.json"

CompletionCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class InstallResult:
    """Result of processing one repository."""

    full_name: str
    cloned: bool = False
    clone_outcome: Optional[ProcessOutcome] = None
    installed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class CloneInstaller:
    """Clones qualifying repositories and installs their sub-projects."""

    def __init__(
        self,
        ledger: Ledger,
        config: PipelineConfig,
        runner: Optional[ProcessRunner] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.ledger = ledger
        self.config = config
        self.runner = runner or ProcessRunner()
        self.logger = logger or logging.getLogger(__name__)

    def repo_path(self, record: RepositoryRecord) -> Path:
        """Generate storage path: /base/owner/repo/"""
        return self.config.repos_path / record.repo.owner / record.repo.name

    def project_dir(self, record: RepositoryRecord, entry: TreeEntry) -> Path:
        """Directory holding a build-config file."""
        return self.repo_path(record) / entry.parent

    async def _run_logged(
        self,
        tag: str,
        cmd: List[str],
        cwd: Optional[Path] = None,
        run: Optional[StageRun] = None,
    ) -> ProcessOutcome:
        out = LogForwarder(self.logger, tag, logging.INFO)
        err = LogForwarder(self.logger, tag, logging.WARNING)

        def on_stdout(chunk: str) -> None:
            if run is not None:
                run.stdout_events.append(chunk)
            out(chunk)

        def on_stderr(chunk: str) -> None:
            if run is not None:
                run.stderr_events.append(chunk)
            err(chunk)

        outcome = await self.runner.run(
            cmd,
            cwd=cwd,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            timeout=self.config.process_timeout_seconds,
        )
        out.flush()
        err.flush()
        return outcome

    async def clone(self, record: RepositoryRecord) -> Optional[ProcessOutcome]:
        """Clone a repository unless its directory exists.

        Returns:
            The clone outcome, or None if skipped.
        """
        dest = self.repo_path(record)
        if dest.exists():
            self.logger.debug(f"{record.full_name} already cloned at {dest}")
            return None

        dest.parent.mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Cloning {record.full_name} into {dest}")
        outcome = await self._run_logged(
            record.full_name,
            [self.config.git_cmd, "clone", record.repo.clone_url, str(dest)],
        )

        if outcome.success:
            self.logger.info(f"Cloned {record.full_name}")
        else:
            self.logger.warning(
                f"Clone of {record.full_name} failed "
                f"(code={outcome.exit_code}, signal={outcome.signal}, error={outcome.error})"
            )
            # Remove partial clone so the next run retries
            if dest.exists():
                shutil.rmtree(dest, ignore_errors=True)
        return outcome

    async def install(self, record: RepositoryRecord, entry: TreeEntry) -> Optional[ProcessOutcome]:
        """Install the dependencies of one sub-project.

        Returns:
            The install outcome, or None if skipped.
        """
        cwd = self.project_dir(record, entry)
        if not cwd.is_dir():
            self.logger.info(f"{record.full_name}/{entry.path}: {cwd} not found, skipping")
            return None

        project = self.ledger.ensure_project(record.full_name, entry.path)
        project.has_package_json = (cwd / MANIFEST).is_file()

        if not project.has_package_json:
            self.logger.info(f"{project.key}: no {MANIFEST}, nothing to install")
            self.ledger.save()
            return None
        if (cwd / VENDOR_DIR).exists():
            self.logger.debug(f"{project.key}: {VENDOR_DIR} present, skipping install")
            self.ledger.save()
            return None

        run = project.start_stage("install")
        self.ledger.save()

        self.logger.info(f"Installing dependencies of {project.key}")
        outcome = await self._run_logged(
            record.full_name, [self.config.npm_cmd, "install"], cwd=cwd, run=run
        )

        run.finish = utc_now()
        run.exit_code = outcome.exit_code
        run.exit_signal = outcome.signal
        if outcome.error:
            run.errors.append(outcome.error)
        self.ledger.save()

        if outcome.success:
            self.logger.info(f"Installed {project.key}")
        else:
            self.logger.warning(
                f"Install of {project.key} failed "
                f"(code={outcome.exit_code}, signal={outcome.signal})"
            )
        return outcome

    async def process_repository(self, record: RepositoryRecord) -> InstallResult:
        result = InstallResult(full_name=record.full_name)
        outcome = await self.clone(record)
        result.clone_outcome = outcome
        result.cloned = outcome is not None and outcome.success

        for entry in record.truffle_trees or []:
            install = await self.install(record, entry)
            if install is None:
                continue
            if install.success:
                result.installed.append(entry.path)
            else:
                result.failed.append(entry.path)
        return result

    async def clone_and_install(
        self,
        start_index: int = 0,
        continue_to_next: bool = True,
        on_complete: Optional[CompletionCallback] = None,
    ) -> List[InstallResult]:
        """Process qualifying repositories from `start_index`.

        Args:
            start_index: Position in the qualifying-repository list to start at.
            continue_to_next: Keep going to the end (batch mode); otherwise
                process a single repository.
            on_complete: Called (and awaited if async) once the cursor passes
                the last repository.

        Returns:
            One InstallResult per processed repository.
        """
        repositories = self.ledger.qualifying_repositories()
        results = []
        index = start_index

        while True:
            if index >= len(repositories):
                self.logger.info(f"Clone/install done, {len(results)} repositories processed")
                if on_complete is not None:
                    completion = on_complete()
                    if inspect.isawaitable(completion):
                        await completion
                break

            record = repositories[index]
            self.logger.info(f"[{index + 1}/{len(repositories)}] {record.full_name}")
            results.append(await self.process_repository(record))

            if not continue_to_next:
                break
            index += 1

        return results

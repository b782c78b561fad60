"""Precondition-gated compile / migrate / test runner.

Each stage walks the ledger's projects in insertion order. A project is
eligible for a stage when its directory exists, it has a test directory,
it is not flagged `ignore`, and the precondition stage (compile for
migrate, migrate for test) is recorded with exit code 0. Eligibility is
read from the persisted ledger, never re-derived.

Running a stage discards the project's previous run of that stage, spawns
the build tool with the stage name, appends every output chunk to the
record as it arrives and rewrites the ledger after each chunk. A stage is
never run concurrently with another: the build tool starts its own local
chain on a fixed port.

The `test` command exits with the number of failing cases, so its success
is decided from the captured output (see `classify`), not the exit code.

Projects whose test run exited with 0 can additionally be analyzed by the
sonar scanner, which is recorded like any other stage.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from solresearch.crawler.ledger import Ledger, ProjectRecord, utc_now
from solresearch.errors import ConfigPatchError
from solresearch.pipeline.classify import classify_test_output, stage_succeeded
from solresearch.pipeline.config import PipelineConfig
from solresearch.pipeline.process import LogForwarder, ProcessOutcome, ProcessRunner
from solresearch.pipeline.solc_version import discover_version
from solresearch.pipeline.solidity_parser import SolidityParser
from solresearch.pipeline.truffle_config import TruffleConfig

BUILD_STAGES = ("compile", "migrate", "test")
SCANNER_STAGE = "sonarScanner"

# Stage whose success gates each stage; None means no gate
PRECONDITION: Dict[str, Optional[str]] = {
    "compile": None,
    "migrate": "compile",
    "test": "migrate",
    SCANNER_STAGE: "test",
}

TEST_DIR = "test"
PLACEHOLDER_FILE = ".gitkeep"
NPM_PLACEHOLDER_SCRIPT = "no test specified"
SONAR_PROPERTIES = "sonar-project.properties"


def sonar_properties(project_key: str) -> str:
    """Scanner settings for a project, keyed by its directory inside the clone root."""
    name = project_key.rsplit("/", 1)[0]
    return (
        "# must be unique in a given SonarQube instance\n"
        f"sonar.projectKey={name.replace('/', ':')}\n"
        f"sonar.projectName={name.replace('/', '_')}\n"
        "sonar.projectVersion=1.0\n"
        "sonar.sources=./contracts\n"
    )


def has_test_dir(project_dir: Path) -> bool:
    """A `test` directory with something in it besides a placeholder file."""
    test_dir = project_dir / TEST_DIR
    if not test_dir.is_dir():
        return False
    contents = [p.name for p in test_dir.iterdir()]
    return bool(contents) and contents != [PLACEHOLDER_FILE]


def has_test_script(project_dir: Path) -> bool:
    """package.json declares a real `scripts.test` entry."""
    manifest = project_dir / "package.json"
    if not manifest.is_file():
        return False
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return False
    if not isinstance(data, dict) or not isinstance(data.get("scripts"), dict):
        return False
    script = data["scripts"].get("test")
    return isinstance(script, str) and bool(script) and NPM_PLACEHOLDER_SCRIPT not in script


@dataclass
class StageResult:
    """Outcome of visiting one project for one stage."""

    key: str
    stage: str
    ran: bool
    succeeded: Optional[bool] = None
    outcome: Optional[ProcessOutcome] = None
    skip_reason: Optional[str] = None


class BuildPipeline:
    """Drives the build tool over the ledger's projects."""

    def __init__(
        self,
        ledger: Ledger,
        config: PipelineConfig,
        runner: Optional[ProcessRunner] = None,
        parser: Optional[SolidityParser] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.ledger = ledger
        self.config = config
        self.runner = runner or ProcessRunner()
        self.parser = parser or SolidityParser()
        self.logger = logger or logging.getLogger(__name__)

    def project_dir(self, project: ProjectRecord) -> Path:
        """Directory holding the project's build-config file."""
        return self.config.repos_path / project.full_name / Path(project.path).parent

    def register_projects(self) -> List[ProjectRecord]:
        """Create or refresh a record for every cloned build-config location.

        Returns:
            The records whose directory exists on disk.
        """
        registered = []
        for record in self.ledger.qualifying_repositories():
            for entry in record.truffle_trees or []:
                project = self.ledger.ensure_project(record.full_name, entry.path)
                cwd = self.project_dir(project)
                if not cwd.is_dir():
                    self.logger.debug(f"{project.key}: {cwd} not found")
                    continue
                project.has_package_json = (cwd / "package.json").is_file()
                project.has_test_dir = has_test_dir(cwd)
                project.has_test_script = has_test_script(cwd)
                registered.append(project)
        self.ledger.save()
        self.logger.info(f"{len(registered)} projects registered")
        return registered

    def stage_status(self, project: ProjectRecord, stage: str) -> Optional[bool]:
        """Whether the recorded stage run succeeded; None if not run or ignored."""
        if project.ignore:
            return None
        run = project.stage(stage)
        if run is None:
            return None
        return stage_succeeded(
            stage, run.exit_code, run.stdout_events, self.config.zero_tests_policy
        )

    def skip_reason(
        self,
        project: ProjectRecord,
        stage: str,
        precondition: Optional[str],
        require_test_dir: bool = True,
    ) -> Optional[str]:
        """Why a project is not eligible for a stage, or None if it is."""
        if project.ignore:
            return "ignored"
        if not self.project_dir(project).is_dir():
            return "directory missing"
        if require_test_dir and project.has_test_dir is not True:
            return "no test directory"
        if precondition and precondition != stage and project.exit_code(precondition) != 0:
            return f"{precondition} not successful"
        return None

    def _prepare_config(self, project: ProjectRecord, forced_solc_version: Optional[str]) -> None:
        """Pin the local network and a compiler version into the build config."""
        cwd = self.project_dir(project)
        if project.solc_version is None and not project.solc_searched:
            project.solc_version = discover_version(cwd, self.parser)
            project.solc_searched = True
        version = forced_solc_version or project.solc_version or self.config.default_solc_version

        config = TruffleConfig(cwd / Path(project.path).name)
        try:
            changed = config.patch(version, self.config.network_host, self.config.network_port)
        except ConfigPatchError as e:
            self.logger.warning(f"Could not patch build config {e.path}: {e}")
            return
        if changed:
            self.logger.info(f"{project.key}: build config patched (solc {version})")

    def _command(self, project: ProjectRecord, stage: str) -> List[str]:
        if stage == SCANNER_STAGE:
            return [self.config.sonar_scanner_cmd]
        if stage == "test" and project.has_test_script:
            return [self.config.npm_cmd, "run", "test"]
        return [self.config.truffle_cmd, stage]

    async def run_project(
        self,
        project: ProjectRecord,
        stage: str,
        batch: bool = True,
        forced_solc_version: Optional[str] = None,
    ) -> StageResult:
        """Run one stage for one project and record the run in the ledger."""
        if stage == "compile":
            self._prepare_config(project, forced_solc_version)

        if stage == SCANNER_STAGE:
            (self.project_dir(project) / SONAR_PROPERTIES).write_text(
                sonar_properties(project.key), encoding="utf-8"
            )
        else:
            await asyncio.sleep(self.config.settle_delay_seconds)

        run = project.start_stage(stage)
        self.ledger.save()

        def on_stdout(chunk: str) -> None:
            run.stdout_events.append(chunk)
            self.ledger.save()

        def on_stderr(chunk: str) -> None:
            run.stderr_events.append(chunk)
            self.ledger.save()

        cmd = self._command(project, stage)
        self.logger.info(f"{project.key}: {' '.join(cmd)}")
        outcome = await self.runner.run(
            cmd,
            cwd=self.project_dir(project),
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            timeout=self.config.process_timeout_seconds,
        )

        run.finish = utc_now()
        run.exit_code = outcome.exit_code
        run.exit_signal = outcome.signal
        if outcome.error:
            run.errors.append(outcome.error)
        self.ledger.save()

        succeeded = stage_succeeded(
            stage, run.exit_code, run.stdout_events, self.config.zero_tests_policy
        )
        if stage == "test":
            tests = classify_test_output(run.stdout_events, self.config.zero_tests_policy)
            summary = f"executed={tests.executed} passing={tests.passing} failing={tests.failing}"
        else:
            summary = f"code={run.exit_code} signal={run.exit_signal}"

        if succeeded:
            self.logger.info(f"{project.key}: {stage} ok ({summary})")
        else:
            self.logger.warning(f"{project.key}: {stage} failed ({summary})")
            if not batch:
                self.logger.warning(json.dumps(project.to_dict(), indent=2))

        return StageResult(
            key=project.key, stage=stage, ran=True, succeeded=succeeded, outcome=outcome
        )

    async def run_stage(
        self,
        stage: str,
        start_index: int = 0,
        continue_to_next: bool = True,
        precondition: Optional[str] = None,
        dont_rerun_if_already_succeeded: bool = False,
        forced_solc_version: Optional[str] = None,
        require_test_dir: bool = True,
    ) -> List[StageResult]:
        """Run a stage over the ledger's projects.

        Args:
            stage: "compile", "migrate", "test" or "sonarScanner".
            start_index: Position in the project list to start at.
            continue_to_next: Process every project from `start_index` on
                (batch mode); otherwise only the one at `start_index`.
            precondition: Stage that must have exit code 0 first (defaults to
                the stage before; passing `stage` itself disables the gate).
            dont_rerun_if_already_succeeded: Skip projects whose last run of
                this stage succeeded.
            forced_solc_version: Compiler version to inject instead of the
                discovered one (compile only).
            require_test_dir: Only run projects that have a test directory.

        Returns:
            One StageResult per visited project.
        """
        if stage not in BUILD_STAGES and stage != SCANNER_STAGE:
            raise ValueError(f"Unknown stage '{stage}'")
        if start_index < 0:
            raise ValueError(f"start_index must not be negative, got {start_index}")
        if precondition is None:
            precondition = PRECONDITION[stage]

        keys = list(self.ledger.projects)
        results = []
        index = start_index

        while index < len(keys):
            project = self.ledger.projects[keys[index]]
            reason = self.skip_reason(project, stage, precondition, require_test_dir)
            if reason is None and dont_rerun_if_already_succeeded:
                if self.stage_status(project, stage):
                    reason = "already succeeded"

            if reason is not None:
                self.logger.debug(f"[{index + 1}/{len(keys)}] {project.key}: skip {stage} ({reason})")
                results.append(
                    StageResult(key=project.key, stage=stage, ran=False, skip_reason=reason)
                )
            else:
                self.logger.info(f"[{index + 1}/{len(keys)}] {stage} {project.key}")
                results.append(
                    await self.run_project(
                        project,
                        stage,
                        batch=continue_to_next,
                        forced_solc_version=forced_solc_version,
                    )
                )

            if not continue_to_next:
                break
            index += 1

        ran = sum(1 for r in results if r.ran)
        ok = sum(1 for r in results if r.succeeded)
        self.logger.info(f"{stage}: {ran} run, {ok} succeeded, {len(results) - ran} skipped")
        return results

    def research_scope(self) -> List[int]:
        """Ledger positions of the projects whose test suite ran with no failing case."""
        scope = []
        for index, project in enumerate(self.ledger.projects.values()):
            run = project.stage("test")
            if run is None:
                continue
            if classify_test_output(run.stdout_events, self.config.zero_tests_policy).all_passed:
                scope.append(index)
        return scope

    async def install_package(self, package: str, indexes: Iterable[int]) -> List[StageResult]:
        """Run `npm install --save-dev <package>` in each listed project.

        Projects without a directory or a test directory are skipped. Output is
        forwarded to the log only; the ledger is not touched.
        """
        keys = list(self.ledger.projects)
        results = []
        stage = f"install {package}"
        for index in indexes:
            if not 0 <= index < len(keys):
                raise IndexError(f"No project at index {index}")
            project = self.ledger.projects[keys[index]]
            cwd = self.project_dir(project)
            if not cwd.is_dir() or project.has_test_dir is not True:
                results.append(
                    StageResult(key=project.key, stage=stage, ran=False, skip_reason="not testable")
                )
                continue

            out = LogForwarder(self.logger, project.key, logging.INFO)
            err = LogForwarder(self.logger, project.key, logging.WARNING)
            outcome = await self.runner.run(
                [self.config.npm_cmd, "install", "--save-dev", package],
                cwd=cwd,
                on_stdout=out,
                on_stderr=err,
                timeout=self.config.process_timeout_seconds,
            )
            out.flush()
            err.flush()

            if outcome.success:
                self.logger.info(f"{project.key}: installed {package}")
            else:
                self.logger.warning(
                    f"{project.key}: install of {package} failed "
                    f"(code={outcome.exit_code}, signal={outcome.signal})"
                )
            results.append(
                StageResult(
                    key=project.key, stage=stage, ran=True, succeeded=outcome.success, outcome=outcome
                )
            )
        return results

    def rollback_all(self) -> int:
        """Restore every build config of the qualifying repositories from its backup.

        Returns:
            Number of files restored.
        """
        restored = 0
        for record in self.ledger.qualifying_repositories():
            for entry in record.truffle_trees or []:
                path = self.config.repos_path / record.full_name / entry.path
                if not path.is_file():
                    continue
                try:
                    if TruffleConfig(path).rollback():
                        restored += 1
                except ConfigPatchError as e:
                    self.logger.warning(f"Could not restore {e.path}: {e}")
        self.logger.info(f"{restored} build configs restored")
        return restored

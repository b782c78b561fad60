"""Read-only statistics over the ledger and CSV export."""

import csv
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from solresearch.crawler.ledger import STAGES, Ledger, ProjectRecord
from solresearch.pipeline.classify import (
    ZeroTestsPolicy,
    classify_test_output,
    stage_succeeded,
)

CSV_COLUMNS = [
    "Project",
    "repoPushed",
    "solcVersion",
    "hasTestDir",
    "testScript",
    "compile",
    "migrate",
    "test",
    "pass",
    "fail",
]


@dataclass
class RepositorySummary:
    total: int = 0
    with_build_config: int = 0
    with_tests: int = 0
    qualifying: int = 0
    unsearched: int = 0


@dataclass
class StageSummary:
    succeeded: int = 0
    failed: int = 0
    not_run: int = 0
    ignored: int = 0


@dataclass
class ProjectRow:
    """One line of the per-project report."""

    project: str
    repo_pushed: Optional[str]
    solc_version: Optional[str]
    has_test_dir: bool
    test_script: bool
    compile: Optional[bool]
    migrate: Optional[bool]
    test: Optional[bool]
    passing: Optional[int] = None
    failing: Optional[int] = None


def repository_summary(ledger: Ledger) -> RepositorySummary:
    summary = RepositorySummary(total=len(ledger.repositories))
    for record in ledger.repositories.values():
        if record.test_trees is None or record.truffle_trees is None:
            summary.unsearched += 1
        if record.truffle_trees:
            summary.with_build_config += 1
        if record.test_trees:
            summary.with_tests += 1
        if record.qualifies:
            summary.qualifying += 1
    return summary


def _status(
    project: ProjectRecord, stage: str, policy: ZeroTestsPolicy
) -> Optional[bool]:
    run = project.stage(stage)
    if run is None:
        return None
    return stage_succeeded(stage, run.exit_code, run.stdout_events, policy)


def stage_summary(
    ledger: Ledger,
    stage: str,
    policy: ZeroTestsPolicy = ZeroTestsPolicy.NOT_EXECUTED,
) -> StageSummary:
    """Count projects by the outcome of their latest run of a stage."""
    summary = StageSummary()
    for project in ledger.projects.values():
        if project.ignore:
            summary.ignored += 1
            continue
        status = _status(project, stage, policy)
        if status is None:
            summary.not_run += 1
        elif status:
            summary.succeeded += 1
        else:
            summary.failed += 1
    return summary


def project_rows(
    ledger: Ledger,
    policy: ZeroTestsPolicy = ZeroTestsPolicy.NOT_EXECUTED,
    only_with_test_dir: bool = False,
) -> List[ProjectRow]:
    """Per-project report rows, in ledger order."""
    rows = []
    for project in ledger.projects.values():
        if only_with_test_dir and not project.has_test_dir:
            continue
        repository = ledger.get(project.full_name)
        row = ProjectRow(
            project=project.key.rsplit("/", 1)[0],
            repo_pushed=repository.repo.pushed_at if repository else None,
            solc_version=project.solc_version,
            has_test_dir=project.has_test_dir,
            test_script=project.has_test_script,
            compile=_status(project, "compile", policy),
            migrate=_status(project, "migrate", policy),
            test=None,
        )
        test_run = project.stage("test")
        if test_run is not None:
            outcome = classify_test_output(test_run.stdout_events, policy)
            row.test = outcome.executed
            if outcome.executed:
                row.passing = outcome.passing
                row.failing = outcome.failing
        rows.append(row)
    return rows


def version_summary(rows: List[ProjectRow], stage: str = "compile") -> Dict[str, Dict[str, float]]:
    """Success rate of a stage grouped by compiler version."""
    by_version: Dict[str, Dict[str, float]] = {}
    for row in rows:
        version = (row.solc_version or "").lstrip("^")
        entry = by_version.setdefault(
            version, {"success": 0, "fail": 0, "total": 0, "successRate": 0.0}
        )
        if getattr(row, stage) is True:
            entry["success"] += 1
        else:
            entry["fail"] += 1
        entry["total"] += 1
        entry["successRate"] = round(entry["success"] / entry["total"] * 100, 2)
    return dict(sorted(by_version.items()))


_DEPLOYMENT_FAILED_RE = re.compile(r'\*\*\* Deployment Failed \*\*\*\n\n"(.*)" (--)?')
_ERROR_RE = re.compile(r"Error:(.*)")
_NIGHTLY_NOTE = "- note that nightly builds"


def extract_error_cause(
    events: Optional[Iterable[str]], project_root: Optional[str] = None
) -> Optional[str]:
    """The `Error:` message of each captured chunk, joined; None when there is none.

    Only the first `Error:` line of a chunk counts. The message is cut at the
    first `;` and before the compiler's nightly-build note, and the clone
    root is replaced by `PRJ_HOME` so causes group across projects.
    """
    causes = []
    for chunk in events or []:
        match = _ERROR_RE.search(_DEPLOYMENT_FAILED_RE.sub("", chunk))
        if match is None:
            continue
        cause = match.group(1)
        if project_root:
            cause = cause.replace(project_root, "PRJ_HOME")
        cause = cause.strip().split(";")[0].split(_NIGHTLY_NOTE)[0].strip()
        if cause:
            causes.append(cause)
    return " / ".join(causes) or None


def error_causes(
    ledger: Ledger, stage: str, project_root: Optional[str] = None
) -> Dict[str, List[str]]:
    """Group the projects whose last run of a stage did not exit with 0 by error cause.

    stdout is searched first, stderr when stdout holds no `Error:` line.
    Projects with no recognizable cause are left out.

    Returns:
        Cause to project keys, in order of first occurrence.
    """
    by_cause: Dict[str, List[str]] = {}
    for project in ledger.projects.values():
        run = project.stage(stage)
        if run is None or run.exit_code == 0:
            continue
        cause = extract_error_cause(run.stdout_events, project_root)
        if cause is None:
            cause = extract_error_cause(run.stderr_events, project_root)
        if cause is not None:
            by_cause.setdefault(cause, []).append(project.key)
    return by_cause


def format_error_causes(by_cause: Dict[str, List[str]], stage: str) -> str:
    lines = [f"{stage} failures by cause"]
    if not by_cause:
        lines.append("  (none)")
    for index, (cause, keys) in enumerate(by_cause.items()):
        lines.append(f"{index:>3} {len(keys):>5}  {cause}")
    return "\n".join(lines)


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def export_csv(
    ledger: Ledger,
    path: Union[str, Path],
    policy: ZeroTestsPolicy = ZeroTestsPolicy.NOT_EXECUTED,
) -> Path:
    """Write the per-project report as `;`-separated CSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f, delimiter=";", lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for row in project_rows(ledger, policy):
            writer.writerow(
                _cell(v)
                for v in (
                    row.project,
                    row.repo_pushed,
                    row.solc_version,
                    row.has_test_dir,
                    row.test_script,
                    row.compile,
                    row.migrate,
                    row.test,
                    row.passing,
                    row.failing,
                )
            )
    return path


def format_summary(
    ledger: Ledger, policy: ZeroTestsPolicy = ZeroTestsPolicy.NOT_EXECUTED
) -> str:
    """Human-readable statistics block."""
    repos = repository_summary(ledger)
    lines = [
        "=" * 60,
        "Ledger Statistics",
        "=" * 60,
        f"Repositories:        {repos.total}",
        f"  with build config: {repos.with_build_config}",
        f"  with tests:        {repos.with_tests}",
        f"  both:              {repos.qualifying}",
        f"  not yet searched:  {repos.unsearched}",
        f"Projects:            {len(ledger.projects)}",
        "",
        f"{'Stage':<12} {'ok':>6} {'failed':>8} {'not run':>8} {'ignored':>8}",
    ]
    for stage in STAGES:
        s = stage_summary(ledger, stage, policy)
        lines.append(f"{stage:<12} {s.succeeded:>6} {s.failed:>8} {s.not_run:>8} {s.ignored:>8}")

    rows = project_rows(ledger, policy)
    executed = [r for r in rows if r.test]
    lines.extend(
        [
            "",
            f"Test suites executed: {len(executed)}",
            f"  passing cases:      {sum(r.passing or 0 for r in executed)}",
            f"  failing cases:      {sum(r.failing or 0 for r in executed)}",
            f"  all passed:         {sum(1 for r in executed if not r.failing and r.passing)}",
        ]
    )

    by_version = version_summary(rows, "compile")
    if by_version:
        lines.extend(["", f"{'solc':<10} {'compiled':>8} {'total':>6} {'rate':>8}"])
        for version, entry in by_version.items():
            lines.append(
                f"{version or '-':<10} {entry['success']:>8} {entry['total']:>6} "
                f"{entry['successRate']:>7.2f}%"
            )
    lines.append("=" * 60)
    return "\n".join(lines)

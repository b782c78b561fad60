"""Classification of captured `test` stage output.

The build tool's `test` command exits with the number of failing cases, so
the exit code cannot tell "the suite ran" apart from "the suite crashed".
Completion is decided instead by the summary lines the test framework
prints at the end of a run:

    12 passing (340ms)
    2 failing

If neither line is present the run is classified as not executed,
whatever the exit code was.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

# Optional ANSI color codes surround the counters when output is colorized
_ANSI = r"(?:\x1b\[[0-9;]*m)*"

PASSING_RE = re.compile(r"(?<!\d)(\d+) passing" + _ANSI + r" \(\d+m*s*\)")
FAILING_RE = re.compile(r"(?<!\d)(\d+) failing")


class ZeroTestsPolicy(Enum):
    """How to classify "0 passing" with no failing line.

    The summary is printed, but nothing ran: it may be an empty suite or a
    suite whose files failed to load.
    """

    NOT_EXECUTED = "not_executed"  # same as no summary at all
    EXECUTED = "executed"  # a run that found zero tests


@dataclass
class TestOutcome:
    """Result of classifying one test run's stdout."""

    __test__ = False  # not a pytest class

    executed: bool
    passing: int = 0
    failing: int = 0

    @property
    def all_passed(self) -> bool:
        return self.executed and self.failing == 0 and self.passing > 0


def classify_test_output(
    stdout: Union[str, Iterable[str], None],
    policy: ZeroTestsPolicy = ZeroTestsPolicy.NOT_EXECUTED,
) -> TestOutcome:
    """Classify captured test output.

    Args:
        stdout: Whole output, or the list of chunks as captured (concatenated).
        policy: Treatment of a "0 passing" summary with no failing line.

    Returns:
        TestOutcome with `executed` False when no summary was found.
    """
    if stdout is None:
        return TestOutcome(executed=False)
    text = stdout if isinstance(stdout, str) else "".join(stdout)

    match_passing = PASSING_RE.search(text)
    match_failing = FAILING_RE.search(text)

    if match_passing is None and match_failing is None:
        return TestOutcome(executed=False)

    passing = int(match_passing.group(1)) if match_passing else 0
    failing = int(match_failing.group(1)) if match_failing else 0

    if passing == 0 and match_failing is None:
        if policy is ZeroTestsPolicy.NOT_EXECUTED:
            return TestOutcome(executed=False)

    return TestOutcome(executed=True, passing=passing, failing=failing)


def stage_succeeded(
    stage: str,
    exit_code: Optional[int],
    stdout_events: Optional[Iterable[str]],
    policy: ZeroTestsPolicy = ZeroTestsPolicy.NOT_EXECUTED,
) -> Optional[bool]:
    """Whether a recorded stage run counts as successful.

    Returns None when the stage never ran. For `test` success means the
    suite ran to completion; failing cases do not make it unsuccessful.
    """
    if stage == "test":
        if stdout_events is None:
            return None
        return classify_test_output(stdout_events, policy).executed
    if exit_code is None:
        return None
    return exit_code == 0

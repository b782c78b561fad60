"""Configuration for the clone/install and build pipeline stages."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from solresearch.pipeline.classify import ZeroTestsPolicy


@dataclass
class PipelineConfig:
    """Configuration for driving the external build tool.

    Attributes:
        repos_path: Directory the repositories are cloned into (owner/name below it).
        git_cmd: Executable used to clone.
        npm_cmd: Package manager executable (install and run-script).
        truffle_cmd: Build tool executable, invoked with the stage name.
        sonar_scanner_cmd: Static analysis scanner run on projects whose tests passed.
        settle_delay_seconds: Pause before each build-tool run so the local chain harness settles.
        network_host: Host pinned into every build-config's network block.
        network_port: Port pinned into every build-config's network block.
        default_solc_version: Compiler version injected when none is discovered (None disables).
        process_timeout_seconds: Kill a child process after this long (None for no limit).
        zero_tests_policy: How "0 passing" without a failing line is classified.
    """

    repos_path: Path = field(default_factory=lambda: Path("./data/repos"))
    git_cmd: str = "git"
    npm_cmd: str = "npm"
    truffle_cmd: str = "truffle"
    sonar_scanner_cmd: str = "sonar-scanner"
    settle_delay_seconds: float = 1.0
    network_host: str = "localhost"
    network_port: int = 8545
    default_solc_version: Optional[str] = "0.5.10"
    process_timeout_seconds: Optional[int] = None
    zero_tests_policy: ZeroTestsPolicy = ZeroTestsPolicy.NOT_EXECUTED

    def __post_init__(self):
        """Ensure paths are Path objects."""
        if isinstance(self.repos_path, str):
            self.repos_path = Path(self.repos_path)

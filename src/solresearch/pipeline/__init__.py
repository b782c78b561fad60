"""Build-tool pipeline: compile, migrate and test cloned projects."""

from solresearch.pipeline.classify import TestOutcome, ZeroTestsPolicy, classify_test_output
from solresearch.pipeline.config import PipelineConfig
from solresearch.pipeline.process import ProcessOutcome, ProcessRunner
from solresearch.pipeline.runner import BuildPipeline, StageResult
from solresearch.pipeline.solc_version import discover_version
from solresearch.pipeline.truffle_config import TruffleConfig, patch_config_text

__all__ = [
    "TestOutcome",
    "ZeroTestsPolicy",
    "classify_test_output",
    "PipelineConfig",
    "ProcessOutcome",
    "ProcessRunner",
    "BuildPipeline",
    "StageResult",
    "discover_version",
    "TruffleConfig",
    "patch_config_text",
]

"""Compiler version discovery from a project's contract sources."""

import logging
import os
import re
from pathlib import Path
from typing import List, Optional, Tuple, Union

from solresearch.pipeline.solidity_parser import SolidityParser

logger = logging.getLogger(__name__)

CONTRACTS_DIR = "contracts"

_VERSION_RE = re.compile(r"(\^?\d+\.\d+\.\d+)")


def parse_version(value: str) -> Optional[Tuple[str, Tuple[int, int, int]]]:
    """Extract the first `major.minor.patch` of a pragma value.

    Returns:
        (version as written, numeric triple) or None. A leading caret is
        kept in the first element and ignored in the triple.
    """
    match = _VERSION_RE.search(value)
    if match is None:
        return None
    written = match.group(1)
    major, minor, patch = written.lstrip("^").split(".")
    return written, (int(major), int(minor), int(patch))


def find_solidity_files(directory: Path) -> List[Path]:
    """All `.sol` files below a directory, in a stable order."""
    result = []
    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames.sort()
        for filename in sorted(filenames):
            if filename.lower().endswith(".sol"):
                result.append(Path(dirpath) / filename)
    return result


def discover_version(
    project_path: Union[str, Path],
    parser: Optional[SolidityParser] = None,
) -> Optional[str]:
    """Greatest compiler version declared by the project's contracts.

    Scans every `.sol` file under `<project>/contracts`, reads the
    `pragma solidity` directives and keeps the numerically greatest
    `major.minor.patch` across all of them.

    Args:
        project_path: Project home (directory of the build-config file).
        parser: Parser to use; its cache is shared across calls.

    Returns:
        Version without a caret (e.g. "0.5.0"), or None if the contracts
        directory is missing or declares no version.
    """
    contracts_dir = Path(project_path) / CONTRACTS_DIR
    if not contracts_dir.is_dir():
        logger.info(f"{contracts_dir} not found, no compiler version discovered")
        return None

    parser = parser or SolidityParser()

    greatest: Optional[Tuple[str, Tuple[int, int, int]]] = None
    for sol_file in find_solidity_files(contracts_dir):
        try:
            directives = parser.solidity_versions(sol_file)
        except OSError as e:
            logger.warning(f"Could not read {sol_file}: {e}")
            continue
        for directive in directives:
            parsed = parse_version(directive.value)
            if parsed is None:
                continue
            if greatest is None or parsed[1] > greatest[1]:
                greatest = parsed

    if greatest is None:
        logger.info(f"No version pragma found under {contracts_dir}")
        return None

    return greatest[0].lstrip("^")

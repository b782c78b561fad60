"""Minimal Solidity source reader for pragma directives.

Only the directives are of interest (`pragma solidity ^0.5.0;`,
`pragma experimental ABIEncoderV2;`), so sources are not fully parsed:
comments are stripped and the directives are matched line by line.
Parsed units are cached per file path for the lifetime of the parser.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Union

logger = logging.getLogger(__name__)

_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT_RE = re.compile(r"//[^\n]*")
_PRAGMA_RE = re.compile(r"^\s*pragma\s+([A-Za-z_]\w*)\s+([^;]+);", re.MULTILINE)


@dataclass
class PragmaDirective:
    """A `pragma <name> <value>;` directive."""

    name: str
    value: str


@dataclass
class SourceUnit:
    """What we keep of a parsed source file."""

    path: Path
    pragmas: List[PragmaDirective] = field(default_factory=list)


def _strip_comments(source: str) -> str:
    # Block comments keep their newlines so line anchors stay valid
    source = _BLOCK_COMMENT_RE.sub(lambda m: "\n" * m.group(0).count("\n"), source)
    return _LINE_COMMENT_RE.sub("", source)


class SolidityParser:
    """Reads Solidity files and extracts their pragma directives."""

    def __init__(self):
        self._cache: Dict[str, SourceUnit] = {}

    def parse(self, path: Union[str, Path], force: bool = False) -> SourceUnit:
        """Parse a source file, returning the cached unit when available."""
        key = str(path)
        if force or key not in self._cache:
            source = Path(path).read_text(encoding="utf-8", errors="replace")
            unit = SourceUnit(path=Path(path))
            for match in _PRAGMA_RE.finditer(_strip_comments(source)):
                unit.pragmas.append(
                    PragmaDirective(name=match.group(1), value=match.group(2).strip())
                )
            self._cache[key] = unit
            logger.debug(f"Parsed {key}: {len(unit.pragmas)} pragma(s)")
        return self._cache[key]

    def find_pragma_directives(self, unit: SourceUnit) -> List[PragmaDirective]:
        return list(unit.pragmas)

    def solidity_versions(self, path: Union[str, Path]) -> List[PragmaDirective]:
        """Version pragmas (`pragma solidity ...`) of a file."""
        return [
            p for p in self.find_pragma_directives(self.parse(path)) if p.name == "solidity"
        ]

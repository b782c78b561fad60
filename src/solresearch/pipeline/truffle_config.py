"""Backup, patching and rollback of a project's build-config file.

Before compiling, every project's config is rewritten so that:

  - every network points at the local chain harness (host, port, any network id)
  - a `networks` block exists at all
  - a `compilers.solc.version` block exists when the project declares none

The config is JavaScript, so it is patched as text. New clauses are spliced
in front of the closing brace of the exported object literal (the last `}`
in the file). A comma is inserted before them only when the last significant
character ahead of that brace is neither `{` nor `,`; block comments, comment
lines and trailing line comments are skipped when looking for that character.

The original file is copied to `<name>.bkp` the first time it is modified and
can be restored from there.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import List, Optional, Union

from solresearch.errors import ConfigPatchError

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bkp"

_HOST_RE = re.compile(r"""host:\s*(["'])[^"'\n]*\1""")
_PORT_RE = re.compile(r"port:\s*\d+")
_NETWORK_ID_RE = re.compile(r"""network_id:\s*(["']?)\d+\1""")


def _networks_clause(host: str, port: int) -> str:
    return (
        "  networks: {\n"
        "    development: {\n"
        f'      host: "{host}",\n'
        f"      port: {port},\n"
        '      network_id: "*"\n'
        "    }\n"
        "  }"
    )


def _compilers_clause(version: str) -> str:
    return (
        "  compilers: {\n"
        "    solc: {\n"
        f'      version: "{version}"\n'
        "    }\n"
        "  }"
    )


def _line_comment_index(line: str) -> Optional[int]:
    """Index of a `//` comment in a line, ignoring ones inside string literals."""
    quote = None
    i = 0
    while i < len(line) - 1:
        ch = line[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"', "`"):
            quote = ch
        elif ch == "/" and line[i + 1] == "/":
            return i
        i += 1
    return None


def _last_significant(text: str, end: int) -> int:
    """Position of the last non-blank, non-comment character before `end` (-1 if none)."""
    pos = end - 1
    while pos >= 0:
        if text[pos].isspace():
            pos -= 1
            continue
        if text[pos] == "/" and pos > 0 and text[pos - 1] == "*":
            opening = text.rfind("/*", 0, pos - 1)
            if opening != -1:
                pos = opening - 1
                continue
        line_start = text.rfind("\n", 0, pos) + 1
        comment = _line_comment_index(text[line_start : pos + 1])
        if comment is not None:
            pos = line_start + comment - 1
            continue
        return pos
    return -1


def patch_config_text(
    content: str,
    solc_version: Optional[str],
    host: str = "localhost",
    port: int = 8545,
) -> str:
    """Return the patched config text.

    Applying the patch to its own output changes nothing.

    Raises:
        ConfigPatchError: The text has no object literal to splice into.
    """
    content = _HOST_RE.sub(lambda m: f"host: {m.group(1)}{host}{m.group(1)}", content)
    content = _PORT_RE.sub(f"port: {port}", content)
    content = _NETWORK_ID_RE.sub('network_id: "*"', content)

    clauses: List[str] = []
    if "networks" not in content:
        clauses.append(_networks_clause(host, port))
    if "compilers" not in content and solc_version:
        clauses.append(_compilers_clause(solc_version.lstrip("^")))
    if not clauses:
        return content

    close = content.rfind("}")
    if close == -1:
        raise ConfigPatchError("No object literal found in build config")

    pos = _last_significant(content, close)
    needs_comma = pos >= 0 and content[pos] not in ("{", ",")
    insert = (",\n" if needs_comma else "\n") + ",\n".join(clauses)
    tail = content[pos + 1 : close]
    if "\n" not in tail:
        tail += "\n"

    return content[: pos + 1] + insert + tail + content[close:]


class TruffleConfig:
    """A project's build-config file and its backup sidecar."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + BACKUP_SUFFIX)

    def backup(self) -> bool:
        """Copy the config to its sidecar unless a backup already exists.

        Returns:
            True if a new backup was written.
        """
        if self.backup_path.exists():
            return False
        try:
            shutil.copyfile(self.path, self.backup_path)
        except OSError as e:
            raise ConfigPatchError(f"Backup failed: {e}", path=self.path) from e
        return True

    def rollback(self) -> bool:
        """Restore the config from its backup.

        Returns:
            True if a backup existed and was restored.
        """
        if not self.backup_path.exists():
            logger.info(f"No backup for {self.path}")
            return False
        try:
            shutil.copyfile(self.backup_path, self.path)
        except OSError as e:
            raise ConfigPatchError(f"Rollback failed: {e}", path=self.path) from e
        logger.info(f"Restored {self.path} from {self.backup_path.name}")
        return True

    def patch(
        self,
        solc_version: Optional[str],
        host: str = "localhost",
        port: int = 8545,
    ) -> bool:
        """Patch the config in place, backing it up on first touch.

        Returns:
            True if the file content changed.
        """
        try:
            original = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigPatchError(f"Cannot read config: {e}", path=self.path) from e

        try:
            patched = patch_config_text(original, solc_version, host, port)
        except ConfigPatchError as e:
            e.path = self.path
            raise

        if patched == original:
            return False

        self.backup()
        try:
            self.path.write_text(patched, encoding="utf-8")
        except OSError as e:
            raise ConfigPatchError(f"Cannot write config: {e}", path=self.path) from e
        return True


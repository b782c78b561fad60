"""Child-process execution with streamed output.

Every external step (git, npm, the build tool) runs through ProcessRunner:
the process is spawned without a shell, stdout and stderr are read
concurrently and handed to callbacks chunk by chunk as they arrive, and the
exit code or terminating signal is reported once the process is gone.
"""

import asyncio
import codecs
import inspect
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class ProcessOutcome:
    """How a child process ended."""

    exit_code: Optional[int]
    signal: Optional[str] = None
    error: Optional[str] = None  # set when the process could not be started or timed out

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and self.signal is None and self.error is None


class LineSplitter:
    """Reassembles lines from arbitrarily split output chunks."""

    def __init__(self):
        self._pending = ""

    def feed(self, chunk: str) -> List[str]:
        """Add a chunk and return the lines it completed."""
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        rest, self._pending = self._pending, ""
        return [rest.rstrip("\r")] if rest else []


class LogForwarder:
    """Logs complete lines of a chunked output stream, tagged with a name."""

    def __init__(self, logger: logging.Logger, tag: str, level: int):
        self.logger = logger
        self.tag = tag
        self.level = level
        self._splitter = LineSplitter()

    def _emit(self, lines: List[str]) -> None:
        for line in lines:
            if line.strip():
                self.logger.log(self.level, f"[{self.tag}] {line}")

    def __call__(self, chunk: str) -> None:
        self._emit(self._splitter.feed(chunk))

    def flush(self) -> None:
        self._emit(self._splitter.flush())


class ProcessRunner:
    """Runs one child process at a time and streams its output."""

    def __init__(self, chunk_size: int = 4096):
        self.chunk_size = chunk_size

    async def _pump(
        self, stream: asyncio.StreamReader, callback: Optional[ChunkCallback]
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(self.chunk_size)
            text = decoder.decode(data, final=not data)
            if text and callback is not None:
                result = callback(text)
                if inspect.isawaitable(result):
                    await result
            if not data:
                break

    async def run(
        self,
        cmd: List[str],
        cwd: Optional[Union[str, Path]] = None,
        on_stdout: Optional[ChunkCallback] = None,
        on_stderr: Optional[ChunkCallback] = None,
        timeout: Optional[float] = None,
    ) -> ProcessOutcome:
        """Run a command to completion.

        Args:
            cmd: Executable and arguments.
            cwd: Working directory.
            on_stdout: Called with each decoded stdout chunk (may be async).
            on_stderr: Called with each decoded stderr chunk (may be async).
            timeout: Kill the process after this many seconds.

        Returns:
            ProcessOutcome. A process killed by a signal has no exit code.
        """
        logger.debug(f"Running {' '.join(cmd)} in {cwd or '.'}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning(f"Could not start {cmd[0]}: {e}")
            return ProcessOutcome(exit_code=None, error=str(e))

        error = None
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    self._pump(process.stdout, on_stdout),
                    self._pump(process.stderr, on_stderr),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            error = f"Timeout after {timeout}s"

        returncode = process.returncode
        if returncode is not None and returncode < 0:
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)
            return ProcessOutcome(exit_code=None, signal=signal_name, error=error)
        return ProcessOutcome(exit_code=returncode, error=error)

"""Raw reading sources: the boundary between the engine and the OS.

A source knows how to obtain text or objects from the system (a command,
a pseudo-file, a psutil call) and hands them to a parser that turns them
into counters. Parsers are plain callables so that the command-specific
formats stay out of the engine.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from ..errors import AcquisitionError, AcquisitionTimeout, SampleError
from .base import RawReading

Counters = Mapping[str, float]
ParsedReading = Union[Counters, Tuple[Counters, Mapping[str, Counters]]]


def _to_reading(parsed: ParsedReading, captured_at: float) -> RawReading:
    if isinstance(parsed, tuple):
        counters, groups = parsed
        return RawReading(counters, captured_at, groups)
    return RawReading(parsed, captured_at)


class RawReadingSource(ABC):
    """Produces timestamped counters.

    ``key`` identifies the underlying OS read; channels whose sources share
    a key are served from a single acquisition per tick window.
    """

    def __init__(self, key: str, timeout: Optional[float] = None) -> None:
        if timeout is not None and timeout <= 0:
            raise ValueError(f"Acquisition timeout must be positive, got {timeout!r}")
        self.key = key
        self.timeout = timeout

    async def acquire(self) -> RawReading:
        """Acquire a reading within ``timeout`` or raise ``AcquisitionError``."""
        if self.timeout is None:
            return await self._acquire()
        try:
            return await asyncio.wait_for(self._acquire(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise AcquisitionTimeout(
                f"Source '{self.key}' timed out after {self.timeout:.1f}s", self.key
            ) from exc

    @abstractmethod
    async def _acquire(self) -> RawReading:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.key!r})"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a command. A non-zero exit or stderr noise is not judged here."""

    stdout: str
    stderr: str
    exit_code: int


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


async def run_command(argv: Sequence[str], timeout: float) -> CommandResult:
    """Run ``argv`` and capture its output, killing it when ``timeout`` expires."""
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise AcquisitionError(f"Command not found: {argv[0]}", argv[0]) from exc
    except PermissionError as exc:
        raise AcquisitionError(f"Permission denied running {argv[0]}", argv[0]) from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        await _kill(process)
        raise AcquisitionTimeout(
            f"Command {argv[0]} did not finish within {timeout:.1f}s", argv[0]
        ) from exc
    except asyncio.CancelledError:
        await _kill(process)
        raise

    return CommandResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=process.returncode if process.returncode is not None else -1,
    )


class ProcessSource(RawReadingSource):
    """Runs a command and parses its ``CommandResult``."""

    def __init__(
        self,
        argv: Sequence[str],
        parse: Callable[[CommandResult], ParsedReading],
        timeout: float,
        key: Optional[str] = None,
    ) -> None:
        super().__init__(key or " ".join(argv), timeout=None)
        if timeout <= 0:
            raise ValueError(f"Acquisition timeout must be positive, got {timeout!r}")
        self.argv = tuple(argv)
        self.parse = parse
        self.command_timeout = timeout

    async def _acquire(self) -> RawReading:
        result = await run_command(self.argv, self.command_timeout)
        captured_at = time.monotonic()
        return _to_reading(self.parse(result), captured_at)


class FileSource(RawReadingSource):
    """Reads a pseudo-file such as ``/proc/stat`` and parses its text."""

    def __init__(
        self,
        path: Union[str, Path],
        parse: Callable[[str], ParsedReading],
        timeout: Optional[float] = None,
        key: Optional[str] = None,
    ) -> None:
        self.path = Path(path)
        super().__init__(key or str(self.path), timeout)
        self.parse = parse

    async def _acquire(self) -> RawReading:
        try:
            text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except FileNotFoundError as exc:
            raise AcquisitionError(f"{self.path} does not exist", self.key) from exc
        except PermissionError as exc:
            raise AcquisitionError(f"Permission denied reading {self.path}", self.key) from exc
        captured_at = time.monotonic()
        return _to_reading(self.parse(text), captured_at)


class CallableSource(RawReadingSource):
    """Wraps a blocking library call (typically psutil) run in a worker thread."""

    def __init__(
        self,
        key: str,
        read: Callable[[], Any],
        parse: Optional[Callable[[Any], ParsedReading]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(key, timeout)
        self.read = read
        self.parse = parse

    async def _acquire(self) -> RawReading:
        raw = await asyncio.to_thread(self.read)
        captured_at = time.monotonic()
        if raw is None:
            raise AcquisitionError(f"Source '{self.key}' returned no data", self.key)
        parsed = self.parse(raw) if self.parse is not None else raw
        if not isinstance(parsed, (dict, tuple)) and not hasattr(parsed, "items"):
            raise SampleError(f"Source '{self.key}' produced {type(parsed).__name__}")
        return _to_reading(parsed, captured_at)


def counters_from(obj: Any, fields: Sequence[str]) -> Dict[str, float]:
    """Pick numeric attributes off a psutil named tuple."""
    return {name: float(getattr(obj, name)) for name in fields}

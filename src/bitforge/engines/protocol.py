"""Engine runner and stage adapter protocols.

This module defines the contracts shared by every stage of the build:

- :class:`IEngineRunner`: executes one engine command in a working
  directory, streaming its output lines.
- :class:`StageAdapter`: wraps one engine as a pipeline stage that takes the
  current file store and returns only the files it produced.
- :class:`StageError`: the single failure type a stage raises.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from bitforge.config import BuildParameters
    from bitforge.files import FileStore

LineSink = Callable[[str], None]


class Stage(str, Enum):
    """The three fixed build stages, valued by their wire names."""

    SYNTHESIS = "synthesis"
    PLACE_ROUTE = "place-route"
    PACK = "pack"

    def __str__(self) -> str:
        return self.value


class StageError(Exception):
    """Raised when a stage fails.

    The message is the engine's own diagnostic text; it is never rewritten.

    Attributes:
        stage: Stage that failed.
        returncode: Engine exit code, when the engine ran to completion.
        command: Engine command that was executed.
        output: Captured engine output.
    """

    def __init__(
        self,
        stage: Stage,
        message: str,
        *,
        returncode: int | None = None,
        command: Sequence[str] | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.message = message
        self.returncode = returncode
        self.command = list(command or [])
        self.output = output


class EngineTimeoutError(StageError):
    """Raised when an engine exceeds its timeout."""

    def __init__(self, stage: Stage, timeout_sec: float, command: Sequence[str] | None = None) -> None:
        super().__init__(
            stage,
            f"{command[0] if command else 'engine'} timed out after {timeout_sec} seconds",
            command=command,
        )
        self.timeout_sec = timeout_sec


@dataclass(frozen=True)
class EngineRunResult:
    """Result of one engine process.

    Attributes:
        returncode: Exit code from the process (0 = success).
        output: Interleaved stdout/stderr lines, as streamed.
        command: The full command that was executed.
    """

    returncode: int
    output: str
    command: list[str]

    @property
    def success(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class StageResult:
    """Files produced by one stage.

    Attributes:
        stage: Stage that produced the files.
        files: Only the created or modified files, never the input store.
        command: Engine command that produced them.
    """

    stage: Stage
    files: FileStore
    command: list[str] = field(default_factory=list)


@runtime_checkable
class IEngineRunner(Protocol):
    """Protocol for engine runner implementations.

    Runners execute an engine binary, either locally or inside a container,
    with ``workdir`` as the working directory. Every output line is passed to
    ``on_line`` as it arrives.
    """

    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        workdir: Path,
        on_line: LineSink | None = None,
        env: Mapping[str, str] | None = None,
    ) -> EngineRunResult:
        ...


@runtime_checkable
class StageAdapter(Protocol):
    stage: Stage

    def run(self, files: FileStore, params: BuildParameters, progress: LineSink) -> StageResult:
        ...


__all__ = [
    "EngineRunResult",
    "EngineTimeoutError",
    "IEngineRunner",
    "LineSink",
    "Stage",
    "StageAdapter",
    "StageError",
    "StageResult",
]

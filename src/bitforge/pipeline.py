"""Canonical build pipeline: synthesis -> place-and-route -> pack.

The :class:`PipelineCoordinator` runs the three stage adapters in fixed order.
After each successful stage the produced files are merged into the run's file
store before the next stage starts. The first failure ends the run; nothing
is retried and no later stage is invoked.

State machine::

    IDLE -> SYNTHESIZING -> PLACING_ROUTING -> PACKING -> SUCCEEDED
                 |                |               |
                 +----------------+---------------+--> FAILED
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Union

from bitforge.config import BuildParameters, ToolchainConfig
from bitforge.engines.pack import PackAdapter
from bitforge.engines.place_route import PlaceRouteAdapter
from bitforge.engines.protocol import Stage, StageAdapter, StageError
from bitforge.engines.runner import SubprocessEngineRunner
from bitforge.engines.synthesis import SynthesisAdapter
from bitforge.files import FileContent, FileStore

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    IDLE = "idle"
    SYNTHESIZING = "synthesizing"
    PLACING_ROUTING = "placing-routing"
    PACKING = "packing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.SUCCEEDED, PipelineState.FAILED)


STAGE_STATES: dict[Stage, PipelineState] = {
    Stage.SYNTHESIS: PipelineState.SYNTHESIZING,
    Stage.PLACE_ROUTE: PipelineState.PLACING_ROUTING,
    Stage.PACK: PipelineState.PACKING,
}


class PipelineStateError(RuntimeError):
    """Raised when a coordinator is asked to run more than once."""


@dataclass(frozen=True)
class ProgressEvent:
    stage: Stage
    text: str


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class PipelineSucceeded:
    """Terminal success: the final accumulated store."""

    files: FileStore
    output_file: str

    @property
    def artifact(self) -> bytes:
        return self.files[self.output_file]


@dataclass(frozen=True)
class PipelineFailed:
    """Terminal failure: the failing stage and its diagnostic, verbatim."""

    stage: Stage
    message: str


PipelineOutcome = Union[PipelineSucceeded, PipelineFailed]


@dataclass(frozen=True)
class StageAdapters:
    """The three adapters a pipeline run sequences."""

    synthesis: StageAdapter
    place_route: StageAdapter
    pack: StageAdapter

    @classmethod
    def from_config(cls, config: ToolchainConfig | None = None) -> StageAdapters:
        config = config or ToolchainConfig()
        return cls(
            synthesis=SynthesisAdapter(
                SubprocessEngineRunner.from_config(Stage.SYNTHESIS, config), config.synthesis
            ),
            place_route=PlaceRouteAdapter(
                SubprocessEngineRunner.from_config(Stage.PLACE_ROUTE, config), config.place_route
            ),
            pack=PackAdapter.from_config(config),
        )

    def in_order(self) -> list[StageAdapter]:
        return [self.synthesis, self.place_route, self.pack]

    def close(self) -> None:
        for adapter in self.in_order():
            close = getattr(adapter, "close", None)
            if close is not None:
                close()


class PipelineCoordinator:
    """Sequences one build run.

    A coordinator is single use: its store and state belong to exactly one
    run. Construct a new coordinator for every build.

    Attributes:
        state: Current pipeline state.
        outcome: Terminal outcome once the run has finished.
    """

    def __init__(self, adapters: StageAdapters) -> None:
        self.adapters = adapters
        self.state = PipelineState.IDLE
        self.outcome: PipelineOutcome | None = None
        self.stage_timings: dict[Stage, float] = {}

    @property
    def current_stage(self) -> Stage | None:
        for stage, state in STAGE_STATES.items():
            if state is self.state:
                return stage
        return None

    def run(
        self,
        files: Mapping[str, FileContent],
        params: BuildParameters,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineOutcome:
        """Run all three stages over ``files``.

        Args:
            files: Initial project files.
            params: Build parameters, read-only for the whole run.
            on_progress: Receives every engine output line, tagged by stage.

        Returns:
            The terminal outcome. Stage failures are returned, not raised.

        Raises:
            PipelineStateError: If this coordinator has already been run.
        """
        if self.state is not PipelineState.IDLE:
            raise PipelineStateError(f"pipeline coordinator already used (state: {self.state.value})")

        store = files if isinstance(files, FileStore) else FileStore(files)
        for adapter in self.adapters.in_order():
            stage = adapter.stage
            self.state = STAGE_STATES[stage]
            logger.info("Stage %s started", stage)

            def progress(text: str, _stage: Stage = stage) -> None:
                if on_progress is not None:
                    on_progress(ProgressEvent(_stage, text))

            started = time.monotonic()
            try:
                result = adapter.run(store, params, progress)
            except StageError as exc:
                self.stage_timings[stage] = time.monotonic() - started
                logger.error("Stage %s failed: %s", stage, exc.message)
                return self._finish(PipelineFailed(stage=stage, message=exc.message))
            except Exception as exc:  # noqa: BLE001 - adapter bugs and I/O errors fail the stage
                self.stage_timings[stage] = time.monotonic() - started
                logger.exception("Stage %s raised an unexpected error", stage)
                return self._finish(PipelineFailed(stage=stage, message=f"{type(exc).__name__}: {exc}"))
            self.stage_timings[stage] = time.monotonic() - started
            logger.info(
                "Stage %s finished in %.2fs (%d file(s) produced)",
                stage,
                self.stage_timings[stage],
                len(result.files),
            )
            store = store.merge(result.files)

        return self._finish(PipelineSucceeded(files=store, output_file=params.output_file))

    def _finish(self, outcome: PipelineOutcome) -> PipelineOutcome:
        self.state = PipelineState.SUCCEEDED if isinstance(outcome, PipelineSucceeded) else PipelineState.FAILED
        self.outcome = outcome
        return outcome


def run_build_pipeline(
    files: Mapping[str, FileContent],
    params: BuildParameters,
    *,
    adapters: StageAdapters | None = None,
    toolchain: ToolchainConfig | None = None,
    on_progress: ProgressCallback | None = None,
) -> PipelineOutcome:
    """Run the canonical pipeline in the calling thread: synthesis -> place-route -> pack."""
    owned = adapters is None
    stage_adapters = adapters or StageAdapters.from_config(toolchain)
    try:
        return PipelineCoordinator(stage_adapters).run(files, params, on_progress=on_progress)
    finally:
        if owned:
            stage_adapters.close()


__all__ = [
    "PipelineCoordinator",
    "PipelineFailed",
    "PipelineOutcome",
    "PipelineState",
    "PipelineStateError",
    "PipelineSucceeded",
    "ProgressCallback",
    "ProgressEvent",
    "StageAdapters",
    "run_build_pipeline",
]

"""Stage engine adapters and runners.

This package wraps the three external engines as pipeline stages:
- SynthesisAdapter: Yosys, reading the root Verilog sources
- PlaceRouteAdapter: nextpnr-himbaechel, with constraint-file fallback
- PackAdapter: gowin_pack, in a secondary Python environment

All adapters run their engine through an IEngineRunner.
"""

from __future__ import annotations

from .pack import PackAdapter, PackEnvironment, PackEnvironmentError
from .place_route import PlaceRouteAdapter, build_place_route_args
from .protocol import (
    EngineRunResult,
    EngineTimeoutError,
    IEngineRunner,
    LineSink,
    Stage,
    StageAdapter,
    StageError,
    StageResult,
)
from .runner import SubprocessEngineRunner
from .synthesis import SynthesisAdapter, build_synthesis_args, build_synthesis_script

__all__ = [
    # Exceptions
    "EngineTimeoutError",
    "PackEnvironmentError",
    "StageError",
    # Protocol and result types
    "EngineRunResult",
    "IEngineRunner",
    "LineSink",
    "Stage",
    "StageAdapter",
    "StageResult",
    # Implementations
    "PackAdapter",
    "PackEnvironment",
    "PlaceRouteAdapter",
    "SubprocessEngineRunner",
    "SynthesisAdapter",
    # Functions
    "build_place_route_args",
    "build_synthesis_args",
    "build_synthesis_script",
]

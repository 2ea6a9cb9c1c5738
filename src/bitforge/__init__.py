"""bitforge: FPGA build pipeline orchestrator.

Turns Verilog sources and a constraint file into a device bitstream by
chaining three external engines, synthesis (Yosys), place-and-route
(nextpnr-himbaechel) and packing (gowin_pack), over an in-memory file store.

Public API
----------
- :class:`BuildChannel` - Run builds in an isolated background worker
- :func:`run_build_pipeline` - Run the three stages in the calling thread
- :func:`load_project` - Build a request from a project directory
- :func:`resolve_root_sources` - Verilog files handed to synthesis
- :func:`select_constraint_file` - Constraint file handed to place-and-route

Example
-------
>>> from bitforge import BuildChannel, load_project
>>> request = load_project(Path("blinky"))
>>> with BuildChannel() as channel:
...     terminal = channel.run(request, on_message=print).wait()
"""

from __future__ import annotations

__version__ = "0.1.0"

from bitforge.channel import (
    BuildChannel,
    BuildRun,
    ChannelBusyError,
    ChannelClosedError,
    ChannelError,
)
from bitforge.config import BuildParameters, ConfigError, ToolchainConfig, load_toolchain_config
from bitforge.constraints import select_constraint_file
from bitforge.engines import Stage, StageError
from bitforge.files import FileStore, VirtualFile
from bitforge.messages import (
    BuildMessage,
    BuildRequest,
    ErrorMessage,
    ProgressMessage,
    SuccessMessage,
)
from bitforge.pipeline import (
    PipelineCoordinator,
    PipelineFailed,
    PipelineState,
    PipelineSucceeded,
    StageAdapters,
    run_build_pipeline,
)
from bitforge.project import load_project, load_project_files
from bitforge.sources import resolve_root_sources

__all__ = [
    "__version__",
    # Channel
    "BuildChannel",
    "BuildRun",
    "ChannelBusyError",
    "ChannelClosedError",
    "ChannelError",
    # Messages
    "BuildMessage",
    "BuildRequest",
    "ErrorMessage",
    "ProgressMessage",
    "SuccessMessage",
    # Pipeline
    "PipelineCoordinator",
    "PipelineFailed",
    "PipelineState",
    "PipelineSucceeded",
    "StageAdapters",
    "run_build_pipeline",
    # Core types
    "BuildParameters",
    "ConfigError",
    "FileStore",
    "Stage",
    "StageError",
    "ToolchainConfig",
    "VirtualFile",
    # Helpers
    "load_project",
    "load_project_files",
    "load_toolchain_config",
    "resolve_root_sources",
    "select_constraint_file",
]

"""Synthesis stage: Yosys reads the root sources and writes a JSON netlist."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from bitforge.config import BuildParameters, SynthesisToolConfig
from bitforge.files import FileStore
from bitforge.sources import resolve_root_sources

from .protocol import IEngineRunner, LineSink, Stage, StageError, StageResult
from .workspace import run_engine_stage

logger = logging.getLogger(__name__)


def build_synthesis_script(root_sources: Sequence[str], top_module: str, *, command: str = "synth_gowin") -> str:
    """Build the Yosys command string.

    Example:
        >>> build_synthesis_script(["a.v", "c.v"], "top")
        'read_verilog a.v; read_verilog c.v; synth_gowin -top top -json top.json'
    """
    reads = [f"read_verilog {path}" for path in root_sources]
    return "; ".join([*reads, f"{command} -top {top_module} -json {top_module}.json"])


def build_synthesis_args(root_sources: Sequence[str], top_module: str, *, command: str = "synth_gowin") -> list[str]:
    return ["-p", build_synthesis_script(root_sources, top_module, command=command)]


class SynthesisAdapter:
    """Runs Yosys on the root Verilog sources of the store.

    All files are materialized, so included files resolve; only roots are
    read explicitly.
    """

    stage = Stage.SYNTHESIS

    def __init__(self, runner: IEngineRunner, tool: SynthesisToolConfig | None = None) -> None:
        self.runner = runner
        self.tool = tool or SynthesisToolConfig()

    def build_args(self, files: FileStore, params: BuildParameters) -> list[str]:
        roots = resolve_root_sources(files)
        if not roots:
            raise StageError(self.stage, "no Verilog sources to synthesize")
        return build_synthesis_args(roots, params.top_module, command=self.tool.command)

    def run(self, files: FileStore, params: BuildParameters, progress: LineSink) -> StageResult:
        args = self.build_args(files, params)
        logger.info("Synthesizing top module %s", params.top_module)
        return run_engine_stage(
            self.stage,
            self.runner,
            files,
            program=self.tool.binary,
            args=args,
            expected=[params.netlist_file],
            progress=progress,
        )


__all__ = ["SynthesisAdapter", "build_synthesis_args", "build_synthesis_script"]

"""Place-and-route stage: nextpnr-himbaechel turns the netlist into a routed netlist."""

from __future__ import annotations

import logging

from bitforge.config import BuildParameters, PlaceRouteToolConfig
from bitforge.constraints import select_constraint_file
from bitforge.files import FileStore

from .protocol import IEngineRunner, LineSink, Stage, StageResult
from .workspace import run_engine_stage

logger = logging.getLogger(__name__)


def build_place_route_args(
    netlist: str,
    routed_netlist: str,
    device: str,
    family: str,
    constraint_file: str | None = None,
) -> list[str]:
    """Build nextpnr arguments.

    Device and family are passed through verbatim; the engine reports unknown
    devices itself.

    Example:
        >>> build_place_route_args("top.json", "top_pnr.json", "DEV1", "FAM1")
        ['--json', 'top.json', '--write', 'top_pnr.json', '--device', 'DEV1', '--vopt', 'family=FAM1']
    """
    args = [
        "--json",
        netlist,
        "--write",
        routed_netlist,
        "--device",
        device,
        "--vopt",
        f"family={family}",
    ]
    if constraint_file:
        args.extend(["--vopt", f"cst={constraint_file}"])
    return args


class PlaceRouteAdapter:
    stage = Stage.PLACE_ROUTE

    def __init__(self, runner: IEngineRunner, tool: PlaceRouteToolConfig | None = None) -> None:
        self.runner = runner
        self.tool = tool or PlaceRouteToolConfig()

    def build_args(self, files: FileStore, params: BuildParameters) -> list[str]:
        constraint = select_constraint_file(files, params.constraint_file)
        return build_place_route_args(
            params.netlist_file,
            params.routed_netlist_file,
            params.device,
            params.family,
            constraint,
        )

    def run(self, files: FileStore, params: BuildParameters, progress: LineSink) -> StageResult:
        args = self.build_args(files, params)
        logger.info("Placing and routing for %s (%s)", params.device, params.family)
        return run_engine_stage(
            self.stage,
            self.runner,
            files,
            program=self.tool.binary,
            args=args,
            expected=[params.routed_netlist_file],
            progress=progress,
        )


__all__ = ["PlaceRouteAdapter", "build_place_route_args"]

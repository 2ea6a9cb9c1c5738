"""bitforge CLI: build an FPGA bitstream from a project directory.

Commands:
    build: Run synthesis -> place-and-route -> pack and write the bitstream.
    plan: Show root sources, the chosen constraint file and the engine
        commands without running anything.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from bitforge import __version__
from bitforge.channel import BuildChannel
from bitforge.config import ToolchainConfig, load_toolchain_config
from bitforge.constraints import select_constraint_file
from bitforge.engines.pack import PACK_PROGRAM_NAME, build_pack_args
from bitforge.engines.place_route import build_place_route_args
from bitforge.engines.synthesis import build_synthesis_args
from bitforge.messages import BuildMessage, BuildRequest, ErrorMessage, ProgressMessage, SuccessMessage
from bitforge.project import load_project, write_artifact
from bitforge.sources import resolve_root_sources

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the bitforge CLI."""
    # Shared arguments
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument("project", help="Project directory containing Verilog and constraint files")
    shared.add_argument("--top", dest="top_module", default=None, help="Top module name")
    shared.add_argument("--device", default=None, help="Target device identifier")
    shared.add_argument("--family", default=None, help="Target device family")
    shared.add_argument("--cst", dest="constraint_file", default=None, help="Constraint file name")
    shared.add_argument("--output", dest="output_file", default=None, help="Bitstream file name")
    shared.add_argument("--toolchain", default="", help="Toolchain config file (YAML or JSON)")
    shared.add_argument("-v", "--verbose", action="count", default=argparse.SUPPRESS)

    parser = argparse.ArgumentParser(
        prog="bitforge",
        description="Synthesize, place-and-route and pack an FPGA design",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    build_cmd = subparsers.add_parser("build", help="Build the bitstream", parents=[shared])
    build_cmd.add_argument(
        "--isolation",
        choices=("process", "thread"),
        default="process",
        help="Where the build worker runs",
    )
    build_cmd.add_argument("--out-dir", default="", help="Directory for the bitstream (default: project)")

    plan_cmd = subparsers.add_parser("plan", help="Show the engine commands for a build", parents=[shared])
    plan_cmd.add_argument("--json", action="store_true", help="Emit the plan as JSON")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the bitforge CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv).

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.WARNING
    if args.verbose >= 1:
        log_level = logging.INFO
    if args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    try:
        if args.command == "build":
            return _cmd_build(args)
        elif args.command == "plan":
            return _cmd_plan(args)
        else:
            parser.error(f"Unknown command: {args.command}")
            return 2
    except Exception as e:
        logger.error("Error: %s", e)
        if args.verbose >= 2:
            import traceback

            traceback.print_exc()
        return 1


# =============================================================================
# Command Handlers
# =============================================================================


def _load_request(args: argparse.Namespace) -> tuple[BuildRequest, ToolchainConfig]:
    request = load_project(
        Path(args.project),
        top_module=args.top_module,
        device=args.device,
        family=args.family,
        constraint_file=args.constraint_file,
        output_file=args.output_file,
    )
    toolchain = load_toolchain_config(Path(args.toolchain) if args.toolchain else None)
    return request, toolchain


def _cmd_build(args: argparse.Namespace) -> int:
    """Handle build command."""
    request, toolchain = _load_request(args)
    params = request.params
    sys.stdout.write(f"Starting build of {params.top_module} for {params.device}...\n")

    with BuildChannel(toolchain, isolation=args.isolation) as channel:
        run = channel.run(request)
        for message in run.messages():
            _print_message(message)
        terminal = run.wait()

    if isinstance(terminal, ErrorMessage):
        sys.stderr.write(f"Build failed: {terminal}\n")
        return 1

    out_dir = Path(args.out_dir) if args.out_dir else Path(args.project)
    target = write_artifact(out_dir, params.output_file, terminal.artifact)
    sys.stdout.write(f"Build successful! Bitstream saved as {target}\n")
    return 0


def _print_message(message: BuildMessage) -> None:
    if isinstance(message, ProgressMessage):
        sys.stdout.write(f"[{message.stage.value}] {message.text}\n")
        sys.stdout.flush()
    elif isinstance(message, SuccessMessage):
        logger.info("Build produced %d file(s)", len(message.files))


def _cmd_plan(args: argparse.Namespace) -> int:
    """Handle plan command."""
    request, toolchain = _load_request(args)
    files = request.files
    params = request.params

    roots = resolve_root_sources(files)
    constraint = select_constraint_file(files, params.constraint_file)
    plan: dict[str, Any] = {
        "top_module": params.top_module,
        "device": params.device,
        "family": params.family,
        "root_sources": roots,
        "constraint_file": constraint,
        "commands": {
            "synthesis": [
                toolchain.synthesis.binary,
                *build_synthesis_args(roots, params.top_module, command=toolchain.synthesis.command),
            ],
            "place-route": [
                toolchain.place_route.binary,
                *build_place_route_args(
                    params.netlist_file,
                    params.routed_netlist_file,
                    params.device,
                    params.family,
                    constraint,
                ),
            ],
            "pack": [
                PACK_PROGRAM_NAME,
                *build_pack_args(params.family, params.output_file, params.routed_netlist_file),
            ],
        },
        "output_file": params.output_file,
    }

    if args.json:
        sys.stdout.write(json.dumps(plan, indent=2, sort_keys=True) + "\n")
        return 0

    lines = [
        f"Top module: {params.top_module}",
        f"Device: {params.device} ({params.family})",
        f"Root sources: {', '.join(roots) if roots else '(none)'}",
        f"Constraint file: {constraint or '(none, unconstrained)'}",
    ]
    for stage, cmd in plan["commands"].items():
        lines.append(f"{stage}: {' '.join(cmd)}")
    lines.append(f"Output: {params.output_file}")
    sys.stdout.write("\n".join(lines) + "\n")
    return 0 if roots else 1


if __name__ == "__main__":
    sys.exit(main())

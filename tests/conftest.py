# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for test suite.

This module provides:
- Deterministic test environment setup
- Fake engine runners that emulate Yosys/nextpnr file I/O
- Fake stage adapters for pipeline and channel tests
- A stand-in packing module for running the real pack launcher
"""
from __future__ import annotations

import os
import sys
import textwrap
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from bitforge.config import BuildParameters
from bitforge.engines.protocol import EngineRunResult, LineSink, Stage, StageError, StageResult
from bitforge.files import FileStore

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TESTS_DIR = Path(__file__).resolve().parent
ROOT_DIR = TESTS_DIR.parent

BLINKY_V = b"""module top(input clk, output reg led);
  reg [23:0] counter;
  always @(posedge clk) begin
    counter <= counter + 1;
    led <= counter[23];
  end
endmodule
"""


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism."""
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Fixtures: Build Inputs
# ---------------------------------------------------------------------------


@pytest.fixture
def blinky_files() -> FileStore:
    """A single-module project without constraint files."""
    return FileStore({"top.v": BLINKY_V})


@pytest.fixture
def build_params() -> BuildParameters:
    return BuildParameters(
        top_module="top",
        device="DEV1",
        family="FAM1",
        constraint_file="top.cst",
        output_file="out.bin",
    )


# ---------------------------------------------------------------------------
# Fixtures: Fake Runners
# ---------------------------------------------------------------------------


class FakeEngineRunner:
    """Engine runner that writes canned outputs instead of running a binary."""

    def __init__(
        self,
        *,
        outputs: Mapping[str, bytes] | None = None,
        lines: Sequence[str] = (),
        returncode: int = 0,
    ) -> None:
        self.outputs = dict(outputs or {})
        self.lines = list(lines)
        self.returncode = returncode
        self.calls: list[dict[str, Any]] = []

    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        workdir: Path,
        on_line: LineSink | None = None,
        env: Mapping[str, str] | None = None,
    ) -> EngineRunResult:
        self.calls.append(
            {
                "program": program,
                "args": list(args),
                "workdir_files": sorted(
                    p.relative_to(workdir).as_posix() for p in workdir.rglob("*") if p.is_file()
                ),
                "env": dict(env or {}),
            }
        )
        for line in self.lines:
            if on_line is not None:
                on_line(line)
        if self.returncode == 0:
            for name, content in self.outputs.items():
                (workdir / name).write_bytes(content)
        return EngineRunResult(
            returncode=self.returncode,
            output="\n".join(self.lines),
            command=[program, *args],
        )


@pytest.fixture
def fake_engine_runner():
    """Fixture providing a configurable fake engine runner.

    Usage:
        def test_something(fake_engine_runner):
            runner = fake_engine_runner(outputs={"top.json": b"{}"}, lines=["ok"])
    """

    def factory(**kwargs: Any) -> FakeEngineRunner:
        return FakeEngineRunner(**kwargs)

    return factory


# ---------------------------------------------------------------------------
# Fixtures: Fake Stage Adapters
# ---------------------------------------------------------------------------


class FakeStageAdapter:
    """Stage adapter that returns canned files or raises a canned failure."""

    def __init__(
        self,
        stage: Stage,
        *,
        produces: Mapping[str, bytes] | None = None,
        lines: Sequence[str] = (),
        error: str | None = None,
        crash: BaseException | None = None,
    ) -> None:
        self.stage = stage
        self.produces = dict(produces or {})
        self.lines = list(lines)
        self.error = error
        self.crash = crash
        self.calls: list[FileStore] = []

    def run(self, files: FileStore, params: BuildParameters, progress: LineSink) -> StageResult:
        self.calls.append(files)
        for line in self.lines:
            progress(line)
        if self.crash is not None:
            raise self.crash
        if self.error is not None:
            raise StageError(self.stage, self.error, returncode=1)
        return StageResult(stage=self.stage, files=FileStore(self.produces))


@pytest.fixture
def fake_adapters():
    """Fixture building a StageAdapters triple of fake adapters.

    Keyword arguments ``synthesis``, ``place_route`` and ``pack`` are dicts of
    FakeStageAdapter options for that stage.
    """
    from bitforge.pipeline import StageAdapters

    def factory(
        *,
        synthesis: dict[str, Any] | None = None,
        place_route: dict[str, Any] | None = None,
        pack: dict[str, Any] | None = None,
    ) -> StageAdapters:
        synthesis_opts = {"produces": {"top.json": b'{"modules": {}}'}, "lines": ["synth ok"]}
        place_route_opts = {"produces": {"top_pnr.json": b'{"routed": true}'}, "lines": ["route ok"]}
        pack_opts = {"produces": {"out.bin": b"\x00\x01bitstream"}, "lines": ["pack ok"]}
        synthesis_opts.update(synthesis or {})
        place_route_opts.update(place_route or {})
        pack_opts.update(pack or {})
        return StageAdapters(
            synthesis=FakeStageAdapter(Stage.SYNTHESIS, **synthesis_opts),
            place_route=FakeStageAdapter(Stage.PLACE_ROUTE, **place_route_opts),
            pack=FakeStageAdapter(Stage.PACK, **pack_opts),
        )

    return factory


# ---------------------------------------------------------------------------
# Fixtures: Stand-in Packing Module
# ---------------------------------------------------------------------------

FAKE_GOWIN_PACK = textwrap.dedent(
    '''
    """Stand-in for apycula.gowin_pack that reads sys.argv at import time."""
    import argparse
    import sys

    ARGV_AT_IMPORT = list(sys.argv)


    def main():
        if not ARGV_AT_IMPORT or ARGV_AT_IMPORT[0] != "gowin_pack":
            raise RuntimeError("argv was not set before import: %r" % (ARGV_AT_IMPORT,))
        parser = argparse.ArgumentParser(prog="gowin_pack")
        parser.add_argument("-d", dest="device")
        parser.add_argument("-o", dest="output")
        parser.add_argument("netlist")
        args = parser.parse_args()
        print("packing %s for %s" % (args.netlist, args.device))
        if args.device == "EXIT3":
            sys.exit(3)
        if args.device == "EXIT0":
            sys.exit(0)
        if args.device == "BOOM":
            raise ValueError("unsupported family BOOM")
        if args.device == "NOFILE":
            return
        with open(args.netlist, "rb") as handle:
            netlist = handle.read()
        with open(args.output, "wb") as handle:
            handle.write(b"BITSTREAM:" + args.device.encode() + b":" + netlist)
    '''
)


@pytest.fixture
def fake_pack_module(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """Install a stand-in packing module on PYTHONPATH and return its name."""
    package_dir = tmp_path / "fakepack_site" / "fakepack"
    package_dir.mkdir(parents=True)
    (package_dir / "__init__.py").write_text("", encoding="utf-8")
    (package_dir / "gowin_pack.py").write_text(FAKE_GOWIN_PACK, encoding="utf-8")
    existing = os.environ.get("PYTHONPATH")
    site = str(package_dir.parent)
    monkeypatch.setenv("PYTHONPATH", site if not existing else os.pathsep.join([site, existing]))
    return "fakepack.gowin_pack"


@pytest.fixture
def python_executable() -> str:
    return sys.executable

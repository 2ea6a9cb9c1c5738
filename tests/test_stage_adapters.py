# SPDX-License-Identifier: MIT
"""Tests for the synthesis and place-and-route stage adapters.

Engines are replaced by fake runners that record the command line and write
the files the real engine would.
"""
from __future__ import annotations

import pytest

from bitforge.config import BuildParameters, PlaceRouteToolConfig, SynthesisToolConfig
from bitforge.engines.place_route import PlaceRouteAdapter, build_place_route_args
from bitforge.engines.protocol import Stage, StageAdapter, StageError
from bitforge.engines.synthesis import SynthesisAdapter, build_synthesis_args, build_synthesis_script
from bitforge.files import FileStore

# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


class TestSynthesisScript:
    def test_reads_each_root_then_synthesizes(self) -> None:
        assert build_synthesis_script(["a.v", "c.v"], "top") == (
            "read_verilog a.v; read_verilog c.v; synth_gowin -top top -json top.json"
        )

    def test_custom_command(self) -> None:
        script = build_synthesis_script(["top.v"], "blinky", command="synth_ice40")
        assert script == "read_verilog top.v; synth_ice40 -top blinky -json blinky.json"

    def test_args_wrap_script(self) -> None:
        assert build_synthesis_args(["top.v"], "top") == ["-p", "read_verilog top.v; synth_gowin -top top -json top.json"]


class TestSynthesisAdapter:
    def test_satisfies_protocol(self, fake_engine_runner) -> None:
        adapter = SynthesisAdapter(fake_engine_runner())
        assert isinstance(adapter, StageAdapter)
        assert adapter.stage is Stage.SYNTHESIS

    def test_only_roots_are_read(self, fake_engine_runner, build_params: BuildParameters) -> None:
        runner = fake_engine_runner(outputs={"top.json": b'{"modules": {}}'})
        files = FileStore(
            {
                "a.v": b'`include "b.v"\nmodule top; endmodule\n',
                "b.v": b"module b; endmodule\n",
                "c.v": b"module c; endmodule\n",
            }
        )

        result = SynthesisAdapter(runner).run(files, build_params, lambda _: None)

        call = runner.calls[0]
        assert call["program"] == "yosys"
        assert call["args"] == ["-p", "read_verilog a.v; read_verilog c.v; synth_gowin -top top -json top.json"]
        # Included files are still materialized so the engine can resolve them.
        assert call["workdir_files"] == ["a.v", "b.v", "c.v"]
        assert result.files == FileStore({"top.json": b'{"modules": {}}'})

    def test_tool_config_is_used(self, fake_engine_runner, build_params: BuildParameters) -> None:
        runner = fake_engine_runner(outputs={"top.json": b"{}"})
        tool = SynthesisToolConfig(binary="/opt/yosys", command="synth_gowin -noflatten")

        SynthesisAdapter(runner, tool).run(FileStore({"top.v": b""}), build_params, lambda _: None)

        assert runner.calls[0]["program"] == "/opt/yosys"
        assert runner.calls[0]["args"][1].endswith("synth_gowin -noflatten -top top -json top.json")

    def test_engine_lines_are_forwarded(self, fake_engine_runner, build_params: BuildParameters) -> None:
        runner = fake_engine_runner(outputs={"top.json": b"{}"}, lines=["1. Executing Verilog frontend", "End of script."])
        seen: list[str] = []

        SynthesisAdapter(runner).run(FileStore({"top.v": b""}), build_params, seen.append)

        assert seen == ["1. Executing Verilog frontend", "End of script."]

    def test_no_sources_fails_before_running(self, fake_engine_runner, build_params: BuildParameters) -> None:
        runner = fake_engine_runner()
        with pytest.raises(StageError, match="no Verilog sources to synthesize"):
            SynthesisAdapter(runner).run(FileStore({"top.cst": b""}), build_params, lambda _: None)
        assert runner.calls == []

    def test_missing_netlist_fails(self, fake_engine_runner, build_params: BuildParameters) -> None:
        runner = fake_engine_runner()
        with pytest.raises(StageError, match="did not produce top.json"):
            SynthesisAdapter(runner).run(FileStore({"top.v": b""}), build_params, lambda _: None)


# ---------------------------------------------------------------------------
# Place and route
# ---------------------------------------------------------------------------


class TestPlaceRouteArgs:
    def test_without_constraint(self) -> None:
        assert build_place_route_args("top.json", "top_pnr.json", "DEV1", "FAM1") == [
            "--json",
            "top.json",
            "--write",
            "top_pnr.json",
            "--device",
            "DEV1",
            "--vopt",
            "family=FAM1",
        ]

    def test_with_constraint(self) -> None:
        args = build_place_route_args("top.json", "top_pnr.json", "DEV1", "FAM1", "pins.cst")
        assert args[-2:] == ["--vopt", "cst=pins.cst"]


class TestPlaceRouteAdapter:
    def test_falls_back_to_available_constraint_file(self, fake_engine_runner) -> None:
        runner = fake_engine_runner(outputs={"top_pnr.json": b"{}"})
        params = BuildParameters(device="DEV1", family="FAM1", constraint_file="x.cst")
        files = FileStore({"top.json": b"{}", "y.cst": b"IO_LOC"})

        result = PlaceRouteAdapter(runner).run(files, params, lambda _: None)

        assert runner.calls[0]["args"][-1] == "cst=y.cst"
        assert result.files == FileStore({"top_pnr.json": b"{}"})

    def test_unconstrained_when_no_constraint_file(self, fake_engine_runner) -> None:
        runner = fake_engine_runner(outputs={"top_pnr.json": b"{}"})
        params = BuildParameters(device="DEV1", family="FAM1", constraint_file="x.cst")

        PlaceRouteAdapter(runner).run(FileStore({"top.json": b"{}"}), params, lambda _: None)

        args = runner.calls[0]["args"]
        assert not any(arg.startswith("cst=") for arg in args)
        assert args[args.index("--device") + 1] == "DEV1"
        assert "family=FAM1" in args

    def test_tool_binary(self, fake_engine_runner, build_params: BuildParameters) -> None:
        runner = fake_engine_runner(outputs={"top_pnr.json": b"{}"})
        PlaceRouteAdapter(runner, PlaceRouteToolConfig(binary="nextpnr-gowin")).run(
            FileStore({"top.json": b"{}"}), build_params, lambda _: None
        )
        assert runner.calls[0]["program"] == "nextpnr-gowin"

    def test_engine_diagnostic_is_verbatim(self, fake_engine_runner, build_params: BuildParameters) -> None:
        runner = fake_engine_runner(lines=["ERROR: Unable to find device DEV1"], returncode=255)
        with pytest.raises(StageError) as excinfo:
            PlaceRouteAdapter(runner).run(FileStore({"top.json": b"{}"}), build_params, lambda _: None)

        assert excinfo.value.stage is Stage.PLACE_ROUTE
        assert excinfo.value.message == "ERROR: Unable to find device DEV1"

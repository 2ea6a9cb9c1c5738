# SPDX-License-Identifier: MIT
"""Tests for loading project directories into build requests."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from bitforge.config import DEFAULT_DEVICE
from bitforge.project import is_project_file, load_project, load_project_files, write_artifact


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    root = tmp_path / "blinky"
    (root / "rtl").mkdir(parents=True)
    (root / ".git").mkdir()
    (root / "top.v").write_text('`include "rtl/counter.v"\nmodule top; endmodule\n', encoding="utf-8")
    (root / "rtl" / "counter.v").write_text("module counter; endmodule\n", encoding="utf-8")
    (root / "tangnano20k.cst").write_text('IO_LOC "led" 15;\n', encoding="utf-8")
    (root / "program.py").write_text("print('flash')\n", encoding="utf-8")
    (root / "config.json").write_text(json.dumps({"top": "top", "output": "blinky.fs"}), encoding="utf-8")
    (root / "README.md").write_text("# blinky\n", encoding="utf-8")
    (root / ".git" / "HEAD.v").write_text("ignored", encoding="utf-8")
    return root


class TestIsProjectFile:
    @pytest.mark.parametrize("path", ["top.v", "rtl/core.v", "pins.cst", "flash.py", "config.json"])
    def test_build_relevant_files(self, path: str) -> None:
        assert is_project_file(path)

    @pytest.mark.parametrize("path", ["README.md", "top.json", "sub/config.json", "hello.fs"])
    def test_other_files(self, path: str) -> None:
        assert not is_project_file(path)


class TestLoadProjectFiles:
    def test_loads_relevant_files_sorted(self, project_dir: Path) -> None:
        files = load_project_files(project_dir)
        assert list(files) == ["config.json", "program.py", "rtl/counter.v", "tangnano20k.cst", "top.v"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(NotADirectoryError):
            load_project_files(tmp_path / "missing")


class TestLoadProject:
    def test_config_json_is_applied(self, project_dir: Path) -> None:
        request = load_project(project_dir)
        assert request.params.output_file == "blinky.fs"
        assert request.params.device == DEFAULT_DEVICE

    def test_overrides_win_over_config(self, project_dir: Path) -> None:
        request = load_project(project_dir, output_file="other.fs", device="DEV1", family=None)
        assert request.params.output_file == "other.fs"
        assert request.params.device == "DEV1"


class TestWriteArtifact:
    def test_creates_directories(self, tmp_path: Path) -> None:
        target = write_artifact(tmp_path / "build" / "out", "hello.fs", b"\x01\x02")
        assert target.read_bytes() == b"\x01\x02"

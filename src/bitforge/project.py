"""Loading a project directory into a build request, and writing results back."""

from __future__ import annotations

import logging
from pathlib import Path

from bitforge.config import PROJECT_CONFIG_NAME, BuildParameters, load_build_parameters
from bitforge.constraints import CONSTRAINT_SUFFIX
from bitforge.files import FileStore
from bitforge.messages import BuildRequest
from bitforge.sources import VERILOG_SUFFIX

PROJECT_SUFFIXES = (VERILOG_SUFFIX, CONSTRAINT_SUFFIX, ".py")

logger = logging.getLogger(__name__)


def is_project_file(rel_path: str) -> bool:
    return rel_path.endswith(PROJECT_SUFFIXES) or rel_path == PROJECT_CONFIG_NAME


def load_project_files(root: Path) -> FileStore:
    """Read the build-relevant files below ``root``.

    Verilog sources, constraint files, Python helpers and the project
    ``config.json`` are kept; paths are POSIX-relative and sorted.

    Raises:
        NotADirectoryError: If ``root`` is not a directory.
    """
    if not root.is_dir():
        raise NotADirectoryError(f"project directory not found: {root}")
    files: dict[str, bytes] = {}
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(root).as_posix()
        if any(part.startswith(".") for part in Path(rel).parts):
            continue
        if is_project_file(rel):
            files[rel] = path.read_bytes()
    logger.info("Loaded %d project file(s) from %s", len(files), root)
    return FileStore(files)


def load_project(root: Path, **overrides: str | None) -> BuildRequest:
    """Build a request from a project directory.

    ``config.json`` is overlaid on the defaults, then non-``None`` keyword
    overrides (``BuildParameters`` field names) are applied.
    """
    files = load_project_files(root)
    params: BuildParameters = load_build_parameters(files).with_overrides(**overrides)
    return BuildRequest(files=files, params=params)


def write_artifact(out_dir: Path, name: str, content: bytes) -> Path:
    target = out_dir / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    return target


__all__ = [
    "PROJECT_SUFFIXES",
    "is_project_file",
    "load_project",
    "load_project_files",
    "write_artifact",
]

"""Working directories for engine runs."""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path

from bitforge.files import FileStore

from .protocol import IEngineRunner, LineSink, Stage, StageError, StageResult


@contextmanager
def engine_workdir(files: FileStore, *, prefix: str = "bitforge_") -> Iterator[Path]:
    """Materialize ``files`` into a fresh temporary directory.

    The directory is removed on exit, so nothing leaks between runs.
    """
    workdir = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        files.materialize(workdir)
        yield workdir
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


def run_engine_stage(
    stage: Stage,
    runner: IEngineRunner,
    files: FileStore,
    *,
    program: str,
    args: Sequence[str],
    expected: Sequence[str],
    progress: LineSink,
    env: Mapping[str, str] | None = None,
) -> StageResult:
    """Run one engine over ``files`` and return the files it produced.

    Raises:
        StageError: If the engine exits non-zero or an expected output file
            is missing afterwards.
    """
    with engine_workdir(files, prefix=f"bitforge_{stage.name.lower()}_") as workdir:
        result = runner.run(program, args, workdir=workdir, on_line=progress, env=env)
        if not result.success:
            raise StageError(
                stage,
                result.output.strip() or f"{program} exited with code {result.returncode}",
                returncode=result.returncode,
                command=result.command,
                output=result.output,
            )
        missing = [name for name in expected if not (workdir / name).is_file()]
        produced = FileStore.collect(workdir, files)
        # An engine that rewrites an output with identical bytes still produced it.
        produced = produced.merge({name: (workdir / name).read_bytes() for name in expected if name not in missing})
    if missing:
        raise StageError(
            stage,
            f"{program} did not produce {', '.join(missing)}",
            returncode=result.returncode,
            command=result.command,
            output=result.output,
        )
    return StageResult(stage=stage, files=produced, command=result.command)


__all__ = ["engine_workdir", "run_engine_stage"]

"""Subprocess engine runner with local binary and Docker support.

Engines are executed either:
- Locally, using the binary found on ``PATH``
- Via Docker, with the working directory mounted at ``/workspace``

Output is streamed line by line while the process runs so that progress
reaches the host before the engine exits.
"""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
import threading
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import IO

from bitforge.config import DEFAULT_ENGINE_TIMEOUT_SEC, EngineMode, ToolchainConfig

from .protocol import EngineRunResult, EngineTimeoutError, IEngineRunner, LineSink, Stage, StageError

logger = logging.getLogger(__name__)


class SubprocessEngineRunner(IEngineRunner):
    """Runs engine binaries as subprocesses.

    Attributes:
        stage: Stage reported on timeouts and launch failures.
        mode: ``"local"`` or ``"docker"``.
        docker_image: Image to run engines in (docker mode only).
        timeout_sec: Timeout per engine run; ``None`` or ``<= 0`` disables it.
    """

    def __init__(
        self,
        stage: Stage,
        *,
        mode: EngineMode = "local",
        docker_image: str | None = None,
        docker_bin: str = "docker",
        timeout_sec: float | None = DEFAULT_ENGINE_TIMEOUT_SEC,
    ) -> None:
        if mode not in ("local", "docker"):
            raise ValueError(f"Unsupported engine runner mode: {mode}")
        if mode == "docker" and not docker_image:
            raise ValueError("docker_image is required for docker mode")
        self.stage = stage
        self.mode = mode
        self.docker_image = docker_image
        self.docker_bin = docker_bin
        self.timeout_sec = timeout_sec if timeout_sec and timeout_sec > 0 else None

    @classmethod
    def from_config(cls, stage: Stage, config: ToolchainConfig) -> SubprocessEngineRunner:
        return cls(
            stage,
            mode=config.mode,
            docker_image=config.docker_image,
            docker_bin=config.docker_bin,
            timeout_sec=config.timeout_sec,
        )

    def build_command(
        self,
        program: str,
        args: Sequence[str],
        *,
        workdir: Path,
        env: Mapping[str, str] | None = None,
    ) -> list[str]:
        if self.mode == "local":
            return [program, *args]
        assert self.docker_image is not None
        cmd = [
            self.docker_bin,
            "run",
            "--rm",
            "-v",
            f"{workdir.resolve()}:/workspace",
            "-w",
            "/workspace",
        ]
        for key, value in (env or {}).items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([self.docker_image, program, *args])
        return cmd

    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        workdir: Path,
        on_line: LineSink | None = None,
        env: Mapping[str, str] | None = None,
    ) -> EngineRunResult:
        """Run ``program`` with ``args`` in ``workdir``.

        Raises:
            EngineTimeoutError: If the engine exceeds ``timeout_sec``.
            StageError: If the engine binary cannot be started.
        """
        cmd = self.build_command(program, args, workdir=workdir, env=env)
        proc_env = None
        if env and self.mode == "local":
            proc_env = {**os.environ, **env}
        logger.debug("Running %s in %s", cmd, workdir)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(workdir),
                env=proc_env,
                text=True,
                errors="replace",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=1,
            )
        except OSError as exc:
            raise StageError(self.stage, f"failed to start {cmd[0]}: {exc}", command=cmd) from exc

        lines: list[str] = []
        pump = threading.Thread(target=_pump, args=(proc.stdout, lines, on_line), daemon=True)
        pump.start()
        try:
            returncode = proc.wait(timeout=self.timeout_sec)
        except subprocess.TimeoutExpired as exc:
            proc.kill()
            proc.wait()
            pump.join(timeout=2)
            raise EngineTimeoutError(self.stage, self.timeout_sec or 0, cmd) from exc
        pump.join()
        return EngineRunResult(returncode=returncode, output="\n".join(lines), command=cmd)


def _pump(src: IO[str] | None, lines: list[str], on_line: LineSink | None) -> None:
    try:
        assert src is not None
        for raw in iter(src.readline, ""):
            line = raw.rstrip("\r\n")
            lines.append(line)
            if on_line is not None and line.strip():
                on_line(line)
    finally:
        with contextlib.suppress(Exception):
            src.close()  # type: ignore[union-attr]


__all__ = ["SubprocessEngineRunner"]

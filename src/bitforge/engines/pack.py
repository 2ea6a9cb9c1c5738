"""Pack stage: gowin_pack turns the routed netlist into a bitstream.

The packer is a Python library, so it runs in a secondary Python environment
rather than in the orchestrator's interpreter. Unless an interpreter is
configured, :class:`PackEnvironment` bootstraps a virtual environment on
first use and installs the packing requirement into it.

Parts of the packing library read ``sys.argv`` at import time. The launcher
executed in the secondary interpreter therefore receives the packer arguments
explicitly and installs them as ``sys.argv`` before the packing module is
imported.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import venv
from pathlib import Path

from bitforge.config import DEFAULT_ENGINE_TIMEOUT_SEC, BuildParameters, PackToolConfig, ToolchainConfig
from bitforge.files import FileStore

from .protocol import IEngineRunner, LineSink, Stage, StageError, StageResult
from .runner import SubprocessEngineRunner
from .workspace import engine_workdir

PACK_PROGRAM_NAME = "gowin_pack"

# Written by the launcher inside the working directory when packing fails.
PACK_ERROR_FILE = ".bitforge_pack_error"

# argv: [-c, module, error_file, *packer_args]
PACK_LAUNCHER = """\
import importlib
import sys
import traceback

module_name, error_file = sys.argv[1], sys.argv[2]
sys.argv = [{program!r}] + sys.argv[3:]


def _fail(text):
    with open(error_file, "w", encoding="utf-8") as handle:
        handle.write(text)
    sys.exit(1)


try:
    importlib.import_module(module_name).main()
except SystemExit as exc:
    if exc.code not in (None, 0):
        _fail("Exit {{}}".format(exc.code))
except BaseException:
    _fail(traceback.format_exc())
""".format(program=PACK_PROGRAM_NAME)

logger = logging.getLogger(__name__)


class PackEnvironmentError(StageError):
    """Raised when the secondary packing environment cannot be prepared."""

    def __init__(self, message: str, *, command: list[str] | None = None, output: str = "") -> None:
        super().__init__(Stage.PACK, message, command=command, output=output)


def build_pack_args(family: str, output_file: str, routed_netlist: str) -> list[str]:
    """Build the packer argument vector (without the program name).

    Example:
        >>> build_pack_args("GW2A-18C", "out.fs", "top_pnr.json")
        ['-d', 'GW2A-18C', '-o', 'out.fs', 'top_pnr.json']
    """
    return ["-d", family, "-o", output_file, routed_netlist]


def build_launcher_args(module: str, pack_args: list[str]) -> list[str]:
    return ["-c", PACK_LAUNCHER, module, PACK_ERROR_FILE, *pack_args]


def venv_python(env_dir: Path) -> Path:
    if os.name == "nt":
        return env_dir / "Scripts" / "python.exe"
    return env_dir / "bin" / "python"


class PackEnvironment:
    """Secondary Python environment that hosts the packing library.

    The environment is created once and reused for every run of the adapter
    that owns it. Call :meth:`close` to remove an environment this object
    created in a temporary directory.

    Attributes:
        tool: Packing tool configuration.
        mode: Engine runner mode; docker mode never bootstraps and uses the
            image's interpreter.
    """

    def __init__(
        self,
        tool: PackToolConfig | None = None,
        *,
        mode: str = "local",
        timeout_sec: float | None = DEFAULT_ENGINE_TIMEOUT_SEC,
    ) -> None:
        self.tool = tool or PackToolConfig()
        self.mode = mode
        self.timeout_sec = timeout_sec
        self._python: str | None = self.tool.python
        self._owned_dir: Path | None = None
        self._lock = threading.Lock()
        if self._python is None and mode == "docker":
            self._python = "python3"

    @property
    def ready(self) -> bool:
        return self._python is not None

    def interpreter(self, progress: LineSink) -> str:
        """Return the interpreter to run the packer with, bootstrapping if needed.

        Raises:
            PackEnvironmentError: If the environment cannot be created or the
                packing requirement cannot be installed.
        """
        with self._lock:
            if self._python is None:
                self._python = str(self._bootstrap(progress))
            return self._python

    def _bootstrap(self, progress: LineSink) -> Path:
        if self.tool.env_dir is not None:
            env_dir = self.tool.env_dir
        else:
            env_dir = Path(tempfile.mkdtemp(prefix="bitforge_pack_env_"))
            self._owned_dir = env_dir
        python = venv_python(env_dir)

        if python.exists():
            logger.info("Reusing packing environment at %s", env_dir)
        else:
            progress(f"Creating packing environment in {env_dir}")
            logger.info("Creating packing environment at %s", env_dir)
            try:
                venv.EnvBuilder(with_pip=True).create(str(env_dir))
            except (OSError, subprocess.CalledProcessError) as exc:
                raise PackEnvironmentError(f"failed to create packing environment: {exc}") from exc

        progress(f"Installing {self.tool.requirement}")
        installer = SubprocessEngineRunner(Stage.PACK, timeout_sec=self.timeout_sec)
        args = ["-m", "pip", "install", "--disable-pip-version-check", self.tool.requirement]
        result = installer.run(str(python), args, workdir=env_dir, on_line=progress)
        if not result.success:
            raise PackEnvironmentError(
                f"failed to install {self.tool.requirement}:\n{result.output.strip()}",
                command=result.command,
                output=result.output,
            )
        return python

    def close(self) -> None:
        with self._lock:
            if self._owned_dir is not None:
                shutil.rmtree(self._owned_dir, ignore_errors=True)
                logger.debug("Removed packing environment %s", self._owned_dir)
                self._owned_dir = None
                self._python = self.tool.python


class PackAdapter:
    """Runs the packing entry point in the secondary environment.

    Produces exactly one file, named by ``params.output_file``.
    """

    stage = Stage.PACK

    def __init__(self, runner: IEngineRunner, environment: PackEnvironment | None = None) -> None:
        self.runner = runner
        self.environment = environment or PackEnvironment()

    @classmethod
    def from_config(cls, config: ToolchainConfig) -> PackAdapter:
        runner = SubprocessEngineRunner.from_config(Stage.PACK, config)
        environment = PackEnvironment(config.pack, mode=config.mode, timeout_sec=config.timeout_sec)
        return cls(runner, environment)

    def build_args(self, params: BuildParameters) -> list[str]:
        pack_args = build_pack_args(params.family, params.output_file, params.routed_netlist_file)
        return build_launcher_args(self.environment.tool.module, pack_args)

    def run(self, files: FileStore, params: BuildParameters, progress: LineSink) -> StageResult:
        if not self.environment.ready:
            progress("Initializing packing environment...")
        python = self.environment.interpreter(progress)
        args = self.build_args(params)
        logger.info("Packing %s for %s", params.output_file, params.family)

        with engine_workdir(files, prefix="bitforge_pack_") as workdir:
            result = self.runner.run(
                python,
                args,
                workdir=workdir,
                on_line=progress,
                env={"PYTHONUNBUFFERED": "1"},
            )
            error_path = workdir / PACK_ERROR_FILE
            if not result.success:
                if error_path.is_file():
                    message = error_path.read_text(encoding="utf-8", errors="replace").strip()
                else:
                    message = result.output.strip() or f"{PACK_PROGRAM_NAME} exited with code {result.returncode}"
                raise StageError(
                    self.stage,
                    message,
                    returncode=result.returncode,
                    command=result.command,
                    output=result.output,
                )
            output_path = workdir / params.output_file
            if not output_path.is_file():
                raise StageError(
                    self.stage,
                    f"{PACK_PROGRAM_NAME} did not produce {params.output_file}",
                    returncode=result.returncode,
                    command=result.command,
                    output=result.output,
                )
            bitstream = output_path.read_bytes()

        return StageResult(
            stage=self.stage,
            files=FileStore({params.output_file: bitstream}),
            command=result.command,
        )

    def close(self) -> None:
        self.environment.close()


__all__ = [
    "PACK_ERROR_FILE",
    "PACK_LAUNCHER",
    "PACK_PROGRAM_NAME",
    "PackAdapter",
    "PackEnvironment",
    "PackEnvironmentError",
    "build_launcher_args",
    "build_pack_args",
    "venv_python",
]

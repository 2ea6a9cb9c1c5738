"""Build parameters and toolchain configuration.

Two kinds of configuration feed a build:

- :class:`BuildParameters`: per-project settings (top module, device, family,
  constraint file, output file), read from an optional ``config.json`` in the
  project and overlaid on Tang Nano 20K defaults.
- :class:`ToolchainConfig`: where the engines live and how they are run
  (local binaries or a Docker image, timeouts, the packing environment).
  Loaded from YAML or JSON.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, Field, ValidationError

PROJECT_CONFIG_NAME = "config.json"
TOOLCHAIN_ENV_VAR = "BITFORGE_TOOLCHAIN"

DEFAULT_TOP_MODULE = "top"
DEFAULT_FAMILY = "GW2A-18C"
DEFAULT_DEVICE = "GW2AR-LV18QN88C8/I7"
DEFAULT_CONSTRAINT_FILE = "tangnano20k.cst"
DEFAULT_OUTPUT_FILE = "hello.fs"

# Default timeout for a single engine invocation (10 minutes)
DEFAULT_ENGINE_TIMEOUT_SEC: float = 600.0

EngineMode = Literal["local", "docker"]

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a configuration file cannot be parsed or validated."""


class _ConfigBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class BuildParameters(_ConfigBase):
    """Immutable per-run build settings.

    Project ``config.json`` files use the short keys ``top``, ``device``,
    ``family``, ``cst`` and ``output``; they are accepted as aliases.
    """

    top_module: str = Field(DEFAULT_TOP_MODULE, alias="top", min_length=1)
    device: str = Field(DEFAULT_DEVICE, min_length=1)
    family: str = Field(DEFAULT_FAMILY, min_length=1)
    constraint_file: str = Field(DEFAULT_CONSTRAINT_FILE, alias="cst")
    output_file: str = Field(DEFAULT_OUTPUT_FILE, alias="output", min_length=1)

    @property
    def netlist_file(self) -> str:
        """Synthesis output, named after the top module."""
        return f"{self.top_module}.json"

    @property
    def routed_netlist_file(self) -> str:
        """Place-and-route output."""
        return f"{self.top_module}_pnr.json"

    def with_overrides(self, **overrides: str | None) -> BuildParameters:
        """Return a copy with every non-``None`` override applied."""
        values = self.model_dump()
        values.update({key: value for key, value in overrides.items() if value is not None})
        return BuildParameters.model_validate(values)


class SynthesisToolConfig(_ConfigBase):
    binary: str = Field("yosys", min_length=1)
    command: str = Field("synth_gowin", min_length=1)


class PlaceRouteToolConfig(_ConfigBase):
    binary: str = Field("nextpnr-himbaechel", min_length=1)


class PackToolConfig(_ConfigBase):
    """Secondary Python environment used by the pack stage.

    Attributes:
        python: Interpreter to run the packer with. When unset (local mode),
            a virtual environment is bootstrapped and ``requirement`` is
            installed into it on first use.
        requirement: pip requirement providing the packing module.
        module: Module exposing the packing ``main()`` entry point.
        env_dir: Directory for the bootstrapped environment. Defaults to a
            temporary directory owned by the environment.
    """

    python: str | None = None
    requirement: str = Field("apycula", min_length=1)
    module: str = Field("apycula.gowin_pack", min_length=1)
    env_dir: Path | None = None


class ToolchainConfig(_ConfigBase):
    mode: EngineMode = "local"
    docker_image: str | None = None
    docker_bin: str = "docker"
    timeout_sec: float | None = DEFAULT_ENGINE_TIMEOUT_SEC
    synthesis: SynthesisToolConfig = Field(default_factory=SynthesisToolConfig)
    place_route: PlaceRouteToolConfig = Field(default_factory=PlaceRouteToolConfig)
    pack: PackToolConfig = Field(default_factory=PackToolConfig)


def load_config_payload(path: Path) -> dict[str, Any]:
    """Read a YAML (.yaml, .yml) or JSON mapping from ``path``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigError: If the file cannot be parsed or is not a mapping.
    """
    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            payload = yaml.safe_load(text)
        elif suffix == ".json":
            payload = json.loads(text)
        else:
            raise ConfigError(f"unsupported config file extension: {path.suffix}")
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"failed to parse {path}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return payload


def load_toolchain_config(path: Path | None = None) -> ToolchainConfig:
    """Load the toolchain configuration.

    Args:
        path: Config file. Defaults to ``$BITFORGE_TOOLCHAIN``; with neither set
            the built-in defaults (local yosys/nextpnr, bootstrapped packer)
            are used.
    """
    if path is None:
        env_path = os.environ.get(TOOLCHAIN_ENV_VAR)
        if not env_path:
            return ToolchainConfig()
        path = Path(env_path)
    payload = load_config_payload(path)
    try:
        return ToolchainConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"invalid toolchain config {path}: {exc}") from exc


def parse_build_parameters(payload: Mapping[str, Any]) -> BuildParameters:
    try:
        return BuildParameters.model_validate(dict(payload))
    except ValidationError as exc:
        raise ConfigError(f"invalid build parameters: {exc}") from exc


def load_build_parameters(files: Mapping[str, bytes]) -> BuildParameters:
    """Overlay a project's ``config.json`` on the default build parameters.

    A missing or unreadable project config is not an error: the defaults are
    used and the reason is logged.
    """
    raw = files.get(PROJECT_CONFIG_NAME)
    if raw is None:
        logger.info("No %s found; using default build parameters", PROJECT_CONFIG_NAME)
        return BuildParameters()
    try:
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ConfigError(f"{PROJECT_CONFIG_NAME} must contain a JSON object")
        params = _project_parameters(payload)
    except (UnicodeDecodeError, json.JSONDecodeError, ConfigError) as exc:
        logger.info("Ignoring %s (%s); using default build parameters", PROJECT_CONFIG_NAME, exc)
        return BuildParameters()
    logger.info("Loaded %s: top=%s, output=%s", PROJECT_CONFIG_NAME, params.top_module, params.output_file)
    return params


def _project_parameters(payload: Mapping[str, Any]) -> BuildParameters:
    # Unknown keys (e.g. the board name used by the programmer) belong to
    # other consumers of config.json.
    known = {
        name
        for field_name, info in BuildParameters.model_fields.items()
        for name in (field_name, info.alias)
        if name
    }
    return parse_build_parameters({key: value for key, value in payload.items() if key in known})


__all__ = [
    "DEFAULT_CONSTRAINT_FILE",
    "DEFAULT_DEVICE",
    "DEFAULT_ENGINE_TIMEOUT_SEC",
    "DEFAULT_FAMILY",
    "DEFAULT_OUTPUT_FILE",
    "DEFAULT_TOP_MODULE",
    "PROJECT_CONFIG_NAME",
    "TOOLCHAIN_ENV_VAR",
    "BuildParameters",
    "ConfigError",
    "EngineMode",
    "PackToolConfig",
    "PlaceRouteToolConfig",
    "SynthesisToolConfig",
    "ToolchainConfig",
    "load_build_parameters",
    "load_config_payload",
    "load_toolchain_config",
    "parse_build_parameters",
]

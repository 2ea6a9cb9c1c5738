"""Messages exchanged between a host and the build worker.

A run is started with one :class:`BuildRequest`. The worker answers with zero
or more :class:`ProgressMessage` values followed by exactly one terminal
message, :class:`SuccessMessage` or :class:`ErrorMessage`. All four are plain
frozen dataclasses so they cross process boundaries by pickling.

The ``to_dict``/``from_dict`` helpers produce the wire dictionaries used by
hosts that speak the JSON-like protocol::

    {"kind": "progress", "stage": "synthesis", "text": "..."}
    {"kind": "success", "files": {"out.fs": b"..."}}
    {"kind": "error", "message": "...", "stage": "place-route"}
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from bitforge.config import BuildParameters, parse_build_parameters
from bitforge.engines.protocol import Stage
from bitforge.files import FileStore
from bitforge.pipeline import PipelineFailed, PipelineOutcome, ProgressEvent

# Wire names of the request fields, keyed by BuildParameters field name.
REQUEST_FIELDS = {
    "top_module": "topModuleName",
    "device": "targetDevice",
    "family": "targetFamily",
    "constraint_file": "constraintFileName",
    "output_file": "outputFileName",
}


@dataclass(frozen=True)
class BuildRequest:
    """Start-run request: the initial files plus build parameters."""

    files: FileStore
    params: BuildParameters = field(default_factory=BuildParameters)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"files": self.files.as_dict()}
        for name, wire_name in REQUEST_FIELDS.items():
            payload[wire_name] = getattr(self.params, name)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> BuildRequest:
        values = {name: payload[wire] for name, wire in REQUEST_FIELDS.items() if wire in payload}
        return cls(files=FileStore(payload.get("files") or {}), params=parse_build_parameters(values))


@dataclass(frozen=True)
class ProgressMessage:
    stage: Stage
    text: str
    kind: str = field(default="progress", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "stage": self.stage.value, "text": self.text}


@dataclass(frozen=True)
class SuccessMessage:
    files: FileStore
    output_file: str
    kind: str = field(default="success", init=False)

    @property
    def artifact(self) -> bytes:
        return self.files[self.output_file]

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "files": self.files.as_dict()}


@dataclass(frozen=True)
class ErrorMessage:
    """Terminal failure.

    ``stage`` is ``None`` when the failure did not come from a stage, e.g. the
    worker itself died.
    """

    message: str
    stage: Stage | None = None
    kind: str = field(default="error", init=False)

    def __str__(self) -> str:
        if self.stage is None:
            return self.message
        return f"{self.stage.value} failed: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "stage": self.stage.value if self.stage is not None else None,
        }


BuildMessage = Union[ProgressMessage, SuccessMessage, ErrorMessage]
TerminalMessage = Union[SuccessMessage, ErrorMessage]


def is_terminal(message: BuildMessage) -> bool:
    return isinstance(message, (SuccessMessage, ErrorMessage))


def message_from_dict(payload: Mapping[str, Any], *, output_file: str = "") -> BuildMessage:
    """Rebuild a message from its wire dictionary.

    Raises:
        ValueError: If ``kind`` is not one of the three message kinds.
    """
    kind = payload.get("kind")
    if kind == "progress":
        return ProgressMessage(stage=Stage(payload["stage"]), text=str(payload["text"]))
    if kind == "success":
        return SuccessMessage(files=FileStore(payload.get("files") or {}), output_file=output_file)
    if kind == "error":
        stage = payload.get("stage")
        return ErrorMessage(message=str(payload["message"]), stage=Stage(stage) if stage else None)
    raise ValueError(f"unknown message kind: {kind!r}")


def progress_message(event: ProgressEvent) -> ProgressMessage:
    return ProgressMessage(stage=event.stage, text=event.text)


def outcome_message(outcome: PipelineOutcome) -> TerminalMessage:
    if isinstance(outcome, PipelineFailed):
        return ErrorMessage(message=outcome.message, stage=outcome.stage)
    return SuccessMessage(files=outcome.files, output_file=outcome.output_file)


__all__ = [
    "REQUEST_FIELDS",
    "BuildMessage",
    "BuildRequest",
    "ErrorMessage",
    "ProgressMessage",
    "SuccessMessage",
    "TerminalMessage",
    "is_terminal",
    "message_from_dict",
    "outcome_message",
    "progress_message",
]

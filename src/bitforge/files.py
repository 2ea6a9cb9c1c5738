"""In-memory virtual file store shared between pipeline stages.

A :class:`FileStore` maps logical POSIX paths to opaque byte content. Stores
are immutable: :meth:`FileStore.merge` returns a new store, so a stage can
never mutate the store it was handed. Engines exchange files with the
orchestrator through a working directory, which is what
:meth:`FileStore.materialize` and :meth:`FileStore.collect` are for.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Union

FileContent = Union[bytes, bytearray, memoryview, str]


@dataclass(frozen=True)
class VirtualFile:
    """A single file in the store."""

    path: str
    content: bytes


def normalize_content(value: object) -> bytes:
    """Coerce supported content types to ``bytes``.

    Text is encoded as UTF-8. Any other type raises ``TypeError``.
    """
    if isinstance(value, bytes):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    raise TypeError(f"unsupported file content type: {type(value).__name__}")


def validate_path(path: str) -> str:
    """Return ``path`` if it is a relative POSIX path without ``..`` segments."""
    if not isinstance(path, str) or not path:
        raise ValueError("file path must be a non-empty string")
    if "\\" in path:
        raise ValueError(f"file path must use '/' separators: {path!r}")
    pure = PurePosixPath(path)
    if pure.is_absolute():
        raise ValueError(f"file path must be relative: {path!r}")
    if any(part == ".." for part in pure.parts):
        raise ValueError(f"file path must not contain '..': {path!r}")
    return pure.as_posix()


class FileStore(Mapping[str, bytes]):
    """Immutable mapping of logical path to byte content."""

    __slots__ = ("_files",)

    def __init__(self, files: Mapping[str, FileContent] | None = None) -> None:
        normalized: dict[str, bytes] = {}
        for path, content in (files or {}).items():
            normalized[validate_path(path)] = normalize_content(content)
        self._files = normalized

    def __getitem__(self, path: str) -> bytes:
        return self._files[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._files)

    def __len__(self) -> int:
        return len(self._files)

    def __repr__(self) -> str:
        return f"FileStore({sorted(self._files)!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FileStore):
            return self._files == other._files
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __reduce__(self) -> tuple[type[FileStore], tuple[dict[str, bytes]]]:
        return (FileStore, (self._files,))

    def merge(self, delta: Mapping[str, FileContent]) -> FileStore:
        """Return a new store with ``delta`` overlaid on this one.

        Delta entries replace base entries at the same path; every other base
        entry is retained.
        """
        merged: dict[str, FileContent] = dict(self._files)
        merged.update(delta)
        return FileStore(merged)

    def paths_with_suffix(self, suffix: str) -> list[str]:
        """Paths ending in ``suffix``, in store enumeration order."""
        return [path for path in self._files if path.endswith(suffix)]

    def entries(self) -> Iterator[VirtualFile]:
        for path, content in self._files.items():
            yield VirtualFile(path=path, content=content)

    def as_dict(self) -> dict[str, bytes]:
        return dict(self._files)

    def materialize(self, root: Path) -> None:
        """Write every file below ``root``, creating parent directories."""
        for entry in self.entries():
            target = root / entry.path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(entry.content)

    @classmethod
    def collect(cls, root: Path, previous: Mapping[str, bytes] | None = None) -> FileStore:
        """Read back files under ``root`` that are new or differ from ``previous``.

        Args:
            root: Working directory an engine ran in.
            previous: Store that was materialized into ``root`` before the run.

        Returns:
            Store containing only the created or modified files.
        """
        previous = previous or {}
        produced: dict[str, bytes] = {}
        for file_path in sorted(root.rglob("*")):
            if not file_path.is_file():
                continue
            rel = file_path.relative_to(root).as_posix()
            content = file_path.read_bytes()
            if previous.get(rel) != content:
                produced[rel] = content
        return cls(produced)


__all__ = [
    "FileContent",
    "FileStore",
    "VirtualFile",
    "normalize_content",
    "validate_path",
]

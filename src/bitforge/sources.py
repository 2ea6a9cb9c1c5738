"""Verilog include scanning and root source selection.

Synthesis is handed only the translation-unit roots: Verilog files that no
other Verilog file pulls in through an ``include`` directive. Included files
stay in the store so the synthesis engine resolves them itself.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

VERILOG_SUFFIX = ".v"

INCLUDE_DIRECTIVE_RE = re.compile(r'^\s*`include\s+"([^"]+)"', re.MULTILINE)

logger = logging.getLogger(__name__)


def find_includes(content: bytes | str) -> list[str]:
    """Return the file names referenced by include directives in ``content``.

    Byte content that is not valid UTF-8 is treated as having no includes.
    """
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8")
        except UnicodeDecodeError:
            return []
    return INCLUDE_DIRECTIVE_RE.findall(content)


def source_paths(files: Mapping[str, bytes], suffix: str = VERILOG_SUFFIX) -> list[str]:
    return [path for path in files if path.endswith(suffix)]


def included_paths(files: Mapping[str, bytes], candidates: Iterable[str]) -> dict[str, list[str]]:
    """Map each candidate to the names it includes (candidates with none are omitted)."""
    includes: dict[str, list[str]] = {}
    for path in candidates:
        try:
            text = files[path].decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Skipping include scan for non-UTF-8 source %s", path)
            continue
        found = find_includes(text)
        if found:
            includes[path] = found
    return includes


def resolve_root_sources(files: Mapping[str, bytes], suffix: str = VERILOG_SUFFIX) -> list[str]:
    """Return the Verilog sources that are never included by another source.

    This is a single flat scan, not a transitive closure. A file that both
    includes others and is itself included is not a root.

    Args:
        files: Store contents keyed by path.
        suffix: Suffix identifying primary-language sources.

    Returns:
        Root source paths in store enumeration order.
    """
    candidates = source_paths(files, suffix)
    includes = included_paths(files, candidates)
    referenced: set[str] = set()
    for names in includes.values():
        referenced.update(names)

    for path in candidates:
        if path in referenced and path in includes:
            logger.warning(
                "%s is included by another source and includes %s; it is not passed to synthesis as a root",
                path,
                ", ".join(includes[path]),
            )
        if path in includes.get(path, ()):
            logger.warning("%s includes itself", path)

    roots = [path for path in candidates if path not in referenced]
    logger.debug("Root sources: %s (excluded: %s)", roots, sorted(referenced.intersection(candidates)))
    return roots


__all__ = [
    "INCLUDE_DIRECTIVE_RE",
    "VERILOG_SUFFIX",
    "find_includes",
    "included_paths",
    "resolve_root_sources",
    "source_paths",
]

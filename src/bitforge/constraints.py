"""Constraint file selection for place-and-route."""

from __future__ import annotations

import logging
from collections.abc import Mapping

CONSTRAINT_SUFFIX = ".cst"

logger = logging.getLogger(__name__)


def select_constraint_file(
    files: Mapping[str, bytes],
    configured: str | None,
    *,
    suffix: str = CONSTRAINT_SUFFIX,
) -> str | None:
    """Pick the constraint file bound to the placement stage.

    The configured file wins when it is in the store. Otherwise the first file
    with the constraint suffix, in store enumeration order, is used. With no
    candidate at all placement runs unconstrained and ``None`` is returned.
    """
    if configured and configured in files:
        return configured

    for path in files:
        if path.endswith(suffix):
            if configured:
                logger.info("Constraint file %s not found; using %s", configured, path)
            return path

    logger.info("No constraint file found; place-and-route runs unconstrained")
    return None


__all__ = ["CONSTRAINT_SUFFIX", "select_constraint_file"]

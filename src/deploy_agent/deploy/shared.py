"""Shared resource linking."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath
from typing import Iterable

import structlog

from deploy_agent.core.exceptions import LinkingError
from deploy_agent.core.models import SharedConfig

logger = structlog.get_logger()


def _relative(path: str) -> PurePosixPath:
    rel = PurePosixPath(path.strip("/"))
    if not path.strip("/") or ".." in rel.parts:
        raise LinkingError(f"Invalid shared path: {path!r}")
    return rel


def _link_all(paths: Iterable[str], release_dir: Path, shared_dir: Path, is_dir: bool) -> int:
    count = 0
    for path in paths:
        rel = _relative(path)
        link = release_dir / rel
        source = shared_dir / rel
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(source, link, target_is_directory=is_dir)
        except OSError as e:
            raise LinkingError(f"Failed to link {rel} -> {source}: {e}") from e
        logger.debug("Linked shared resource", path=str(rel), dir=is_dir)
        count += 1
    return count


def link_shared_resources(shared: SharedConfig, release_dir: Path, shared_dir: Path) -> int:
    """Link declared files and directories from release_dir into shared_dir.

    Link targets are not checked for existence; a missing shared resource
    shows up as a dangling link.

    Returns:
        Number of links created
    """
    count = _link_all(shared.files or [], release_dir, shared_dir, is_dir=False)
    count += _link_all(shared.dirs or [], release_dir, shared_dir, is_dir=True)
    logger.info("Shared resources linked", release=release_dir.name, links=count)
    return count

"""Release orchestration: the deploy state machine.

Layout under a target's base directory::

    shared/                  externally managed, linked into releases
    build-<runId>/           one per deploy attempt
    next -> build-<runId>    present while a deploy is in flight
    current -> build-<runId> the live release

``current`` is only ever switched by renaming a freshly created link over
it, so readers never observe it missing. Steps from extraction through
cleanup run under a per-target lock (in-process and flock on
``.deploy.lock``), so concurrent deploys to one target are serialized.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
import re
import shutil
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

import structlog

from deploy_agent.core.exceptions import (
    BundleTooLargeError,
    DeployError,
    InvalidRunIdError,
    PostPublishError,
    PrePublishError,
    PromotionError,
)
from deploy_agent.core.models import (
    RELEASE_PREFIX,
    DeployRecord,
    DeployState,
    ReleaseManifest,
    Target,
)
from deploy_agent.deploy.archive import materialize_bundle
from deploy_agent.deploy.commands import run_commands
from deploy_agent.deploy.manifest import DEFAULT_MANIFEST_FILENAME, load_release_manifest
from deploy_agent.deploy.shared import link_shared_resources
from deploy_agent.utils.logging import bind_deploy_context

logger = structlog.get_logger()

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_run_id(run_id: str) -> str:
    """Ensure the run id is a safe single path component."""
    if not run_id or not RUN_ID_PATTERN.match(run_id):
        raise InvalidRunIdError(f"Invalid run id: {run_id!r}")
    return run_id


def _banner(title: str) -> List[str]:
    rule = "-" * len(title)
    return [rule, title, rule]


def read_link(link: Path) -> Optional[Path]:
    """Return the absolute target of a symlink, or None if there is no link."""
    try:
        raw = os.readlink(link)
    except OSError:
        return None
    path = Path(raw)
    if not path.is_absolute():
        path = link.parent / path
    return Path(os.path.normpath(path))


def swap_link(link: Path, target_dir: Path) -> None:
    """Atomically point link at target_dir.

    A temporary link is created next to ``link`` and renamed over it, which
    replaces the directory entry in one step on POSIX filesystems.
    """
    tmp = link.with_name(f".{link.name}.{uuid.uuid4().hex}.tmp")
    os.symlink(target_dir, tmp, target_is_directory=True)
    try:
        os.replace(tmp, link)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def remove_link(link: Path) -> bool:
    """Remove a symlink if present; returns whether one was removed."""
    try:
        link.unlink()
    except FileNotFoundError:
        return False
    return True


def _lock_file(path: Path) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
    except OSError:
        os.close(fd)
        raise
    return fd


def _unlock_file(fd: int) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def _release_abandoned_lock(acquiring: asyncio.Future[int]) -> None:
    if acquiring.cancelled() or acquiring.exception() is not None:
        return
    _unlock_file(acquiring.result())
    logger.info("Released lock acquired after cancellation")


class ReleaseOrchestrator:
    """Sequences extraction, manifest, shared links, hooks and promotion."""

    def __init__(
        self,
        manifest_filename: str = DEFAULT_MANIFEST_FILENAME,
        command_timeout: Optional[float] = None,
        max_bundle_size_bytes: Optional[int] = None,
    ):
        self.manifest_filename = manifest_filename
        self.command_timeout = command_timeout
        self.max_bundle_size_bytes = max_bundle_size_bytes
        self._locks: Dict[str, asyncio.Lock] = {}

    def _target_lock(self, target: Target) -> asyncio.Lock:
        lock = self._locks.get(target.key)
        if lock is None:
            lock = self._locks[target.key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _locked(self, target: Target) -> AsyncIterator[None]:
        async with self._target_lock(target):
            loop = asyncio.get_running_loop()
            acquiring = loop.run_in_executor(None, _lock_file, target.lock_path)
            try:
                fd = await asyncio.shield(acquiring)
            except asyncio.CancelledError:
                # The worker thread may still get the lock; release it when it does.
                acquiring.add_done_callback(_release_abandoned_lock)
                raise
            try:
                yield
            finally:
                _unlock_file(fd)

    def _transition(self, record: DeployRecord, state: DeployState) -> None:
        record.update_state(state)
        logger.info("Deploy state changed", state=state.value)

    async def deploy(self, target: Target, run_id: str, bundle: bytes) -> DeployRecord:
        """Deploy bundle as release ``build-<run_id>`` of target.

        Returns:
            The finished deploy record, with the combined hook transcript

        Raises:
            DeployError: Any step failed; ``out`` carries the transcript so far
        """
        validate_run_id(run_id)
        bind_deploy_context(target.repository, run_id)

        if self.max_bundle_size_bytes is not None and len(bundle) > self.max_bundle_size_bytes:
            logger.warning("Bundle too large", size=len(bundle), limit=self.max_bundle_size_bytes)
            raise BundleTooLargeError()

        record = DeployRecord(
            repository=target.repository,
            run_id=run_id,
            release_dir=str(target.release_dir(run_id)),
        )

        async with self._locked(target):
            try:
                await self._execute(target, record, bundle)
            except DeployError as e:
                record.update_state(DeployState.FAILED, str(e))
                logger.error("Deploy failed", error=str(e), code=e.code)
                raise

        return record

    async def _execute(self, target: Target, record: DeployRecord, bundle: bytes) -> None:
        loop = asyncio.get_running_loop()
        release_dir = Path(record.release_dir)
        out: List[str] = []

        self._transition(record, DeployState.EXTRACTING)
        await loop.run_in_executor(None, materialize_bundle, bundle, release_dir)

        self._transition(record, DeployState.CONFIG_LOADING)
        manifest = load_release_manifest(release_dir, self.manifest_filename) or ReleaseManifest()

        # A leftover next link belongs to an interrupted deploy.
        try:
            if remove_link(target.next_link):
                logger.warning("Removed stale next link")
            swap_link(target.next_link, release_dir)
        except OSError as e:
            raise PromotionError(f"Failed to mark release as next: {e}") from e

        if manifest.shared:
            self._transition(record, DeployState.LINKING_SHARED)
            link_shared_resources(manifest.shared, release_dir, target.shared_dir)

        if manifest.pre_publish:
            self._transition(record, DeployState.PRE_PUBLISHING)
            out.extend(_banner("Pre-Publish"))
            result = await run_commands(manifest.pre_publish, target.base_dir, self.command_timeout)
            out.append(result.out)
            record.out = "\n".join(out)
            if not result.success:
                raise PrePublishError(out=record.out)

        self._transition(record, DeployState.PROMOTING)
        previous_dir = read_link(target.current_link)
        try:
            swap_link(target.current_link, release_dir)
            remove_link(target.next_link)
        except OSError as e:
            logger.error("Promotion failed; pointers left as they are", error=str(e))
            raise PromotionError(f"Failed to promote release: {e}", out=record.out or None) from e
        record.previous_dir = str(previous_dir) if previous_dir else None
        logger.info("Release promoted", release=release_dir.name, previous=record.previous_dir)

        if manifest.post_publish:
            self._transition(record, DeployState.POST_PUBLISHING)
            out.extend(_banner("Post-Publish"))
            result = await run_commands(manifest.post_publish, target.base_dir, self.command_timeout)
            out.append(result.out)
            record.out = "\n".join(out)
            if not result.success:
                raise PostPublishError(out=record.out)

        self._transition(record, DeployState.CLEANUP)
        if previous_dir is not None and self._is_disposable(target, previous_dir, release_dir):
            await loop.run_in_executor(None, self._remove_release, previous_dir)

        record.out = "\n".join(out)
        self._transition(record, DeployState.DONE)

    @staticmethod
    def _is_disposable(target: Target, previous_dir: Path, release_dir: Path) -> bool:
        if previous_dir == Path(os.path.normpath(release_dir)):
            return False
        if previous_dir.parent != Path(os.path.normpath(target.base_dir)):
            logger.warning("Previous release outside base directory; not removing", previous=str(previous_dir))
            return False
        return previous_dir.name.startswith(RELEASE_PREFIX)

    @staticmethod
    def _remove_release(path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove previous release", path=str(path), error=str(e))
        else:
            logger.info("Previous release removed", path=str(path))

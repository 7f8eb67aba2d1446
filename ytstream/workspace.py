"""Scratch directory management for in-flight downloads.

Every download session gets a private subdirectory named after a unique
prefix. The session removes it once the response ends; a periodic sweep
removes whatever a crashed or interrupted session left behind.
"""
import asyncio
import logging
import os
import secrets
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import anyio
from fastapi.concurrency import run_in_threadpool

from ytstream.errors import StorageUnavailable

logger = logging.getLogger(__name__)


@dataclass
class TempArtifact:
    prefix: str
    directory: Path
    allocated_path: Path
    actual_path: Optional[Path] = None

    def candidates(self) -> List[Path]:
        """Files that belong to this session, most specific first."""
        paths = [self.allocated_path]
        if self.actual_path and self.actual_path != self.allocated_path:
            paths.insert(0, self.actual_path)
        return paths


@dataclass
class CleanupResult:
    removed: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def merge(self, other: "CleanupResult") -> "CleanupResult":
        self.removed.extend(other.removed)
        self.failed.extend(other.failed)
        return self


def new_prefix() -> str:
    return f"{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def remove_path(path: Path) -> Tuple[bool, Optional[str]]:
    """Delete a file or directory once, treating "already gone" as success.

    Returns ``(existed, error)``; ``error`` is ``None`` unless the deletion
    failed for a reason other than the path being missing.
    """
    if not os.path.lexists(path):
        return False, None
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
    except FileNotFoundError:
        return False, None
    except OSError as exc:
        return True, str(exc)
    return True, None


def remove_paths(paths: Iterable[Path]) -> CleanupResult:
    result = CleanupResult()
    seen = set()
    for path in paths:
        if path in seen:
            continue
        seen.add(path)
        existed, error = remove_path(path)
        if error:
            logger.warning("Could not remove %s: %s", path, error)
            result.failed.append((path, error))
        elif existed:
            result.removed.append(path)
    return result


def _last_modified(path: Path) -> float:
    # A session directory is as fresh as the newest file the engine touched.
    newest = path.lstat().st_mtime
    if path.is_dir() and not path.is_symlink():
        with os.scandir(path) as entries:
            for entry in entries:
                try:
                    newest = max(newest, entry.stat(follow_symlinks=False).st_mtime)
                except FileNotFoundError:
                    continue
    return newest


class Workspace:
    def __init__(
        self,
        root: Path,
        *,
        retention_seconds: float = 60 * 60,
        fragment_marker: str = "--",
    ) -> None:
        self.root = Path(root)
        self.retention_seconds = retention_seconds
        self.fragment_marker = fragment_marker

    def ensure_ready(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(
                f"Could not create the downloads directory ({self.root}): {exc}"
            ) from exc
        try:
            with tempfile.NamedTemporaryFile(
                dir=self.root, prefix=f"{self.fragment_marker}rw_test", delete=True
            ):
                pass
        except OSError as exc:
            raise StorageUnavailable(
                f"The downloads directory ({self.root}) is not writable. "
                "Check permissions or set DOWNLOADS_DIR."
            ) from exc

    def allocate(self, extension: str) -> TempArtifact:
        ext = extension.lstrip(".")
        self.root.mkdir(parents=True, exist_ok=True)
        while True:
            prefix = new_prefix()
            directory = self.root / prefix
            try:
                directory.mkdir()
            except FileExistsError:
                continue
            logger.debug("Allocated download workspace %s", directory)
            return TempArtifact(
                prefix=prefix,
                directory=directory,
                allocated_path=directory / f"{prefix}.{ext}",
            )

    def _stray_entries(self, prefix: str) -> List[Path]:
        try:
            with os.scandir(self.root) as entries:
                return [
                    Path(entry.path)
                    for entry in entries
                    if entry.name.startswith(prefix)
                    or entry.name.startswith(self.fragment_marker)
                ]
        except OSError as exc:
            logger.warning("Could not list %s during cleanup: %s", self.root, exc)
            return []

    def release(self, artifact: TempArtifact) -> CleanupResult:
        """Remove every file the session produced. Safe to call repeatedly."""
        result = remove_paths([*artifact.candidates(), artifact.directory])
        result.merge(remove_paths(self._stray_entries(artifact.prefix)))
        if result.failed:
            logger.warning(
                "Cleanup of %s left %d entries behind", artifact.prefix, len(result.failed)
            )
        else:
            logger.debug("Cleaned up %s (%d entries)", artifact.prefix, len(result.removed))
        return result

    async def release_async(self, artifact: TempArtifact) -> CleanupResult:
        """``release`` in a worker thread; runs to completion even when cancelled."""
        with anyio.CancelScope(shield=True):
            return await run_in_threadpool(self.release, artifact)

    def sweep(self, now: Optional[float] = None) -> CleanupResult:
        current = time.time() if now is None else now
        result = CleanupResult()
        try:
            with os.scandir(self.root) as entries:
                names = [entry.name for entry in entries]
        except FileNotFoundError:
            return result
        except OSError as exc:
            logger.warning("Sweep could not list %s: %s", self.root, exc)
            return result

        for name in names:
            path = self.root / name
            if not name.startswith(self.fragment_marker):
                try:
                    age = current - _last_modified(path)
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning("Sweep could not stat %s: %s", path, exc)
                    continue
                if age <= self.retention_seconds:
                    continue
            result.merge(remove_paths([path]))

        if result.removed or result.failed:
            logger.info(
                "Sweep removed %d entries from %s (%d failures)",
                len(result.removed),
                self.root,
                len(result.failed),
            )
        return result


class WorkspaceSweeper:
    """Background task that sweeps a workspace on a fixed interval."""

    def __init__(
        self,
        workspace: Workspace,
        interval_seconds: float = 5 * 60,
        *,
        sweep_on_start: bool = True,
    ) -> None:
        self.workspace = workspace
        self.interval_seconds = interval_seconds
        self.sweep_on_start = sweep_on_start
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "Workspace sweeper started for %s every %ss",
            self.workspace.root,
            self.interval_seconds,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Workspace sweeper stopped")

    async def run_once(self) -> CleanupResult:
        try:
            return await run_in_threadpool(self.workspace.sweep)
        except Exception:
            logger.exception("Workspace sweep failed")
            return CleanupResult()

    async def _run(self) -> None:
        if self.sweep_on_start:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, BinaryIO, Callable, Dict, Optional

from fastapi.concurrency import run_in_threadpool
from yt_dlp.utils import DownloadCancelled

from ytstream.engine import YtDlpEngine
from ytstream.errors import EngineOutputMissing, EngineTimeout, TransportInterrupted
from ytstream.formats import ResolvedFormat
from ytstream.workspace import TempArtifact, Workspace

logger = logging.getLogger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]


class ArtifactReader:
    """Single-pass async byte source over a materialised artifact."""

    def __init__(self, path: Path, chunk_size: int = 1 << 20) -> None:
        self.path = path
        self.chunk_size = chunk_size
        self._handle: Optional[BinaryIO] = path.open("rb")
        self.size = os.fstat(self._handle.fileno()).st_size
        self._exhausted = False

    @property
    def closed(self) -> bool:
        return self._handle is None

    async def read_chunk(self) -> bytes:
        if self._handle is None or self._exhausted:
            return b""
        chunk = await run_in_threadpool(self._handle.read, self.chunk_size)
        if not chunk:
            self._exhausted = True
        return chunk

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.read_chunk()
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()


class ProgressLogger:
    """yt-dlp progress hook that logs every ``step`` percent.

    Setting ``cancel_event`` makes the next hook call abort the download.
    """

    def __init__(
        self,
        label: str,
        *,
        step: float = 10.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.label = label
        self.step = step
        self.cancel_event = cancel_event
        self.last_percent: Optional[float] = None
        self._next_milestone = step

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def __call__(self, status: Dict[str, Any]) -> None:
        if self.cancelled:
            raise DownloadCancelled(f"Download {self.label} was cancelled")

        state = status.get("status")
        if state == "finished":
            logger.info("Download %s finished", self.label)
            return
        if state != "downloading":
            return

        total = status.get("total_bytes") or status.get("total_bytes_estimate")
        downloaded = status.get("downloaded_bytes")
        if not total or downloaded is None:
            return
        percent = min(100.0, downloaded * 100.0 / total)
        self.last_percent = percent
        if percent >= self._next_milestone:
            logger.info("Download progress %s: %.1f%%", self.label, percent)
            while self._next_milestone <= percent:
                self._next_milestone += self.step


def _reported_path(info: Dict[str, Any]) -> Optional[Path]:
    requested = info.get("requested_downloads") or []
    if requested and isinstance(requested[0], dict) and requested[0].get("filepath"):
        return Path(requested[0]["filepath"])
    if info.get("_filename"):
        return Path(info["_filename"])
    return None


def _close_late_result(task: "asyncio.Future[ArtifactReader]") -> None:
    if task.cancelled():
        return
    if task.exception() is None:
        task.result().close()


class DownloadOrchestrator:
    def __init__(
        self,
        engine: YtDlpEngine,
        *,
        chunk_size: int = 1 << 20,
        timeout_seconds: Optional[float] = None,
        poll_seconds: float = 1.0,
        workspace: Optional[Workspace] = None,
    ) -> None:
        self.engine = engine
        self.workspace = workspace
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds

    @staticmethod
    def output_template(resolved: ResolvedFormat, artifact: TempArtifact) -> str:
        if resolved.output_is_ambiguous:
            directory = str(artifact.directory).replace("%", "%%")
            return os.path.join(directory, f"{artifact.prefix}.%(ext)s")
        return str(artifact.allocated_path).replace("%", "%%")

    @staticmethod
    def locate_output(
        resolved: ResolvedFormat, artifact: TempArtifact, info: Dict[str, Any]
    ) -> Path:
        if resolved.output_is_ambiguous:
            for path in sorted(artifact.directory.iterdir()):
                extension = path.suffix.lstrip(".").lower()
                if (
                    path.is_file()
                    and path.name.startswith(artifact.prefix)
                    and extension in resolved.accepted_exts
                ):
                    return path
            raise EngineOutputMissing(
                "Downloaded audio file could not be located "
                f"(expected one of: {', '.join(resolved.accepted_exts)})"
            )

        if artifact.allocated_path.is_file():
            return artifact.allocated_path
        reported = _reported_path(info)
        if reported and reported.parent == artifact.directory and reported.is_file():
            return reported
        raise EngineOutputMissing()

    def _materialize(
        self,
        url: str,
        resolved: ResolvedFormat,
        artifact: TempArtifact,
        hook: ProgressLogger,
    ) -> ArtifactReader:
        try:
            info = self.engine.download(
                url,
                resolved.engine_selector,
                self.output_template(resolved, artifact),
                [hook],
            )
            artifact.actual_path = self.locate_output(resolved, artifact, info)
            reader = ArtifactReader(artifact.actual_path, self.chunk_size)
        except BaseException:
            if hook.cancelled:
                self._discard_abandoned(artifact)
            raise

        if hook.cancelled:
            # Nobody is waiting for this result any more.
            reader.close()
            self._discard_abandoned(artifact)
            return reader
        logger.info(
            "Download %s materialised at %s", artifact.prefix, artifact.actual_path.name
        )
        return reader

    def _discard_abandoned(self, artifact: TempArtifact) -> None:
        if self.workspace is None:
            return
        logger.info("Discarding output of abandoned download %s", artifact.prefix)
        self.workspace.release(artifact)

    async def run(
        self,
        url: str,
        resolved: ResolvedFormat,
        artifact: TempArtifact,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> ArtifactReader:
        """Materialise ``url`` into ``artifact`` and open it for streaming.

        Blocks until the engine has written the complete file. Engine errors
        propagate unchanged; nothing is retried.
        """
        cancel_event = threading.Event()
        hook = ProgressLogger(artifact.prefix, cancel_event=cancel_event)
        logger.info(
            "Starting download %s (%s) for %s",
            artifact.prefix,
            resolved.engine_selector,
            url,
        )
        task = asyncio.ensure_future(
            run_in_threadpool(self._materialize, url, resolved, artifact, hook)
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds if self.timeout_seconds else None

        try:
            while True:
                wait_for = self.poll_seconds if is_disconnected is not None else None
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise EngineTimeout(
                            f"Download did not finish within {self.timeout_seconds:g} seconds"
                        )
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                done, _ = await asyncio.wait({task}, timeout=wait_for)
                if done:
                    break
                if is_disconnected is not None and await is_disconnected():
                    raise TransportInterrupted(
                        "Client disconnected before the download finished"
                    )
        except BaseException:
            # The worker thread cannot be interrupted directly; the progress
            # hook aborts it on its next call and whatever it still writes is
            # released when it returns.
            cancel_event.set()
            task.add_done_callback(_close_late_result)
            raise

        return task.result()


async def run_blocking(func: Callable[..., Any], *args: Any, timeout: Optional[float] = None) -> Any:
    """Run ``func`` in a worker thread, giving up after ``timeout`` seconds.

    Worker threads cannot be cancelled; on timeout the call is abandoned and
    its eventual result discarded.
    """
    task = asyncio.ensure_future(run_in_threadpool(func, *args))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except BaseException:
        task.add_done_callback(_discard_late_result)
        raise
    if not done:
        task.add_done_callback(_discard_late_result)
        raise EngineTimeout()
    return task.result()


def _discard_late_result(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        task.exception()

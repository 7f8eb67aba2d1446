import logging
from typing import AsyncIterator, Optional

from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from ytstream.downloader import ArtifactReader
from ytstream.errors import TransportInterrupted
from ytstream.workspace import CleanupResult, TempArtifact, Workspace

logger = logging.getLogger(__name__)


class StreamSession:
    """Pipes one artifact to one response and removes it afterwards.

    ``finish`` runs exactly once whichever way the transfer ends:
    completion, read error or the client going away.
    """

    def __init__(
        self,
        source: ArtifactReader,
        artifact: TempArtifact,
        workspace: Workspace,
        first_chunk: bytes = b"",
    ) -> None:
        self.source = source
        self.artifact = artifact
        self.workspace = workspace
        self.bytes_sent = 0
        self.outcome: Optional[str] = None
        self.cleanup: Optional[CleanupResult] = None
        self._first_chunk = first_chunk

    async def body(self) -> AsyncIterator[bytes]:
        completed = False
        try:
            if self._first_chunk:
                chunk, self._first_chunk = self._first_chunk, b""
                yield chunk
                self.bytes_sent += len(chunk)
            async for chunk in self.source:
                yield chunk
                self.bytes_sent += len(chunk)
            completed = True
        except OSError as exc:
            # Headers are already out; ending short of Content-Length is the
            # only signal left for the client.
            logger.error("Stream error for %s: %s", self.artifact.prefix, exc)
            await self.finish("failed")
        finally:
            await self.finish("completed" if completed else "cancelled")

    async def finish(self, outcome: str) -> Optional[CleanupResult]:
        if self.outcome is not None:
            return self.cleanup
        self.outcome = outcome
        self.source.close()
        self.cleanup = await self.workspace.release_async(self.artifact)
        log = logger.info if outcome == "completed" else logger.warning
        log(
            "Stream %s %s after %d of %d bytes",
            self.artifact.prefix,
            outcome,
            self.bytes_sent,
            self.source.size,
        )
        return self.cleanup


class ArtifactStreamResponse(StreamingResponse):
    def __init__(self, session: StreamSession, *, media_type: str, filename: str) -> None:
        headers = {
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(session.source.size),
        }
        super().__init__(session.body(), media_type=media_type, headers=headers)
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # Starlette may abandon the body iterator on disconnect without
            # closing it.
            await self.session.finish("cancelled")


async def serve(
    source: ArtifactReader,
    artifact: TempArtifact,
    workspace: Workspace,
    *,
    media_type: str,
    filename: str,
) -> ArtifactStreamResponse:
    """Build the response for a materialised artifact.

    The first chunk is read before any header is committed so that an
    unreadable artifact still produces a proper error response.
    """
    try:
        first_chunk = await source.read_chunk()
    except OSError as exc:
        logger.error("Could not read %s: %s", artifact.prefix, exc)
        source.close()
        await workspace.release_async(artifact)
        raise TransportInterrupted() from exc

    session = StreamSession(source, artifact, workspace, first_chunk)
    return ArtifactStreamResponse(session, media_type=media_type, filename=filename)

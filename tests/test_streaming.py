from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest

from ytstream.downloader import ArtifactReader
from ytstream.errors import TransportInterrupted
from ytstream.streaming import serve
from ytstream.workspace import TempArtifact, Workspace

PAYLOAD = bytes(range(100)) * 10


class FailingReader(ArtifactReader):
    def __init__(self, path: Path, chunk_size: int, fail_on: int) -> None:
        super().__init__(path, chunk_size)
        self.fail_on = fail_on
        self.reads = 0

    async def read_chunk(self) -> bytes:
        self.reads += 1
        if self.reads == self.fail_on:
            raise OSError("disk went away")
        return await super().read_chunk()


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    ws = Workspace(tmp_path / "scratch")
    ws.ensure_ready()
    return ws


@pytest.fixture
def artifact(workspace: Workspace) -> TempArtifact:
    artifact = workspace.allocate("mp4")
    artifact.allocated_path.write_bytes(PAYLOAD)
    artifact.actual_path = artifact.allocated_path
    (artifact.directory / f"{artifact.prefix}.mp4.part-Frag1").write_bytes(b"frag")
    (workspace.root / "--Frag7").write_bytes(b"frag")
    return artifact


def _assert_released(workspace: Workspace, artifact: TempArtifact) -> None:
    assert not artifact.allocated_path.exists()
    assert not artifact.directory.exists()
    assert list(workspace.root.iterdir()) == []


def test_completed_stream_delivers_bytes_in_order(workspace, artifact) -> None:
    async def scenario():
        source = ArtifactReader(artifact.allocated_path, chunk_size=100)
        response = await serve(
            source, artifact, workspace, media_type="video/mp4", filename="clip.mp4"
        )
        body = b"".join([chunk async for chunk in response.body_iterator])
        return response, source, body

    response, source, body = asyncio.run(scenario())

    assert body == PAYLOAD
    assert response.headers["content-length"] == str(len(PAYLOAD))
    assert response.headers["content-disposition"] == 'attachment; filename="clip.mp4"'
    assert response.session.outcome == "completed"
    assert response.session.bytes_sent == len(PAYLOAD)
    assert source.closed
    _assert_released(workspace, artifact)


def test_client_abort_stops_reading_and_cleans_up(workspace, artifact) -> None:
    async def scenario():
        source = ArtifactReader(artifact.allocated_path, chunk_size=100)
        response = await serve(
            source, artifact, workspace, media_type="video/mp4", filename="clip.mp4"
        )
        first = await response.body_iterator.__anext__()
        await response.body_iterator.aclose()
        return response, source, first

    response, source, first = asyncio.run(scenario())

    assert len(first) == len(PAYLOAD) // 10
    assert response.session.outcome == "cancelled"
    assert source.closed
    _assert_released(workspace, artifact)


def test_disconnect_during_send_cleans_up(workspace, artifact) -> None:
    sent: list[dict] = []

    async def receive():
        await asyncio.sleep(3600)
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == "http.response.body" and sent:
            raise OSError("connection reset by peer")
        if message["type"] == "http.response.body":
            sent.append(message)

    async def scenario():
        source = ArtifactReader(artifact.allocated_path, chunk_size=100)
        response = await serve(
            source, artifact, workspace, media_type="video/mp4", filename="clip.mp4"
        )
        scope = {"type": "http", "method": "GET", "path": "/api/download", "headers": []}
        with pytest.raises(Exception):
            await response(scope, receive, send)
        return response, source

    response, source = asyncio.run(scenario())

    assert len(sent) == 1
    assert response.session.outcome == "cancelled"
    assert source.closed
    _assert_released(workspace, artifact)


def test_read_error_mid_stream_ends_short_and_cleans_up(workspace, artifact) -> None:
    async def scenario():
        source = FailingReader(artifact.allocated_path, chunk_size=100, fail_on=3)
        response = await serve(
            source, artifact, workspace, media_type="video/mp4", filename="clip.mp4"
        )
        received = [chunk async for chunk in response.body_iterator]
        return response, received

    response, received = asyncio.run(scenario())

    assert len(received) == 2
    assert sum(map(len, received)) < int(response.headers["content-length"])
    assert response.session.outcome == "failed"
    _assert_released(workspace, artifact)


def test_cleanup_runs_off_the_event_loop_thread(workspace, artifact, monkeypatch) -> None:
    release_threads: list[int] = []
    release = workspace.release

    def recording_release(target):
        release_threads.append(threading.get_ident())
        return release(target)

    monkeypatch.setattr(workspace, "release", recording_release)

    async def scenario():
        source = ArtifactReader(artifact.allocated_path, chunk_size=100)
        response = await serve(
            source, artifact, workspace, media_type="video/mp4", filename="clip.mp4"
        )
        await response.body_iterator.__anext__()
        await response.body_iterator.aclose()
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())

    assert release_threads
    assert loop_thread not in release_threads
    _assert_released(workspace, artifact)


def test_read_error_before_headers_is_reported(workspace, artifact) -> None:
    source = FailingReader(artifact.allocated_path, chunk_size=100, fail_on=1)

    with pytest.raises(TransportInterrupted):
        asyncio.run(
            serve(source, artifact, workspace, media_type="video/mp4", filename="clip.mp4")
        )

    assert source.closed
    _assert_released(workspace, artifact)


def test_cleanup_tolerates_artifact_swept_first(workspace, artifact) -> None:
    async def scenario():
        source = ArtifactReader(artifact.allocated_path, chunk_size=100)
        response = await serve(
            source, artifact, workspace, media_type="video/mp4", filename="clip.mp4"
        )
        workspace.release(artifact)
        body = b"".join([chunk async for chunk in response.body_iterator])
        return response, body

    response, body = asyncio.run(scenario())

    # The open handle keeps the unlinked file readable on POSIX.
    assert body == PAYLOAD
    assert response.session.cleanup is not None
    assert response.session.cleanup.ok

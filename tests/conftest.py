from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from ytstream.main import create_app
from ytstream.settings import Settings

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


class FakeEngine:
    """Stands in for yt-dlp: writes files where the output template points."""

    def __init__(self) -> None:
        self.info: dict[str, Any] = {
            "title": "Test Video: Title!",
            "duration": 212.4,
            "uploader": "Uploader",
            "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/hq.jpg",
            "formats": [
                {
                    "format_id": "18",
                    "ext": "mp4",
                    "height": 360,
                    "filesize": 1024,
                    "vcodec": "avc1.42001E",
                    "acodec": "mp4a.40.2",
                },
                {"format_id": "251", "ext": "webm", "vcodec": "none", "acodec": "opus"},
            ],
        }
        self.payload = bytes(range(256)) * 64
        self.produce_ext = "mp4"
        self.write_output = True
        self.partial_only = False
        self.info_error: Exception | None = None
        self.download_error: Exception | None = None
        self.info_delay = 0.0
        self.download_delay = 0.0
        self.info_calls: list[str] = []
        self.download_calls: list[tuple[str, str, str]] = []

    def extract_info(self, url: str) -> dict[str, Any]:
        self.info_calls.append(url)
        if self.info_delay:
            time.sleep(self.info_delay)
        if self.info_error:
            raise self.info_error
        return dict(self.info)

    def download(self, url, selector, outtmpl, progress_hooks=None):
        self.download_calls.append((url, selector, outtmpl))
        hooks = list(progress_hooks or [])
        if self.download_delay:
            time.sleep(self.download_delay)
        for hook in hooks:
            hook({"status": "downloading", "downloaded_bytes": 10, "total_bytes": 100})
        if self.download_error:
            raise self.download_error

        path = Path(outtmpl.replace("%(ext)s", self.produce_ext).replace("%%", "%"))
        if self.partial_only:
            Path(f"{path}.part").write_bytes(self.payload[:100])
        elif self.write_output:
            path.write_bytes(self.payload)
        for hook in hooks:
            hook({"status": "finished", "filename": str(path)})
        return {**self.info, "requested_downloads": [{"filepath": str(path)}]}


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        downloads_dir=tmp_path / "downloads",
        static_dir=None,
        sweep_interval_seconds=3600,
        disconnect_poll_seconds=0.05,
    )


@pytest.fixture
def client(settings: Settings, engine: FakeEngine):
    app = create_app(settings, engine=engine)
    with TestClient(app) as test_client:
        yield test_client

from __future__ import annotations

import pytest

from ytstream.errors import InvalidInput
from ytstream.validation import validate_source_url


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "http://youtube.com/shorts/abc",
        "youtu.be/dQw4w9WgXcQ",
        "  https://youtu.be/dQw4w9WgXcQ  ",
    ],
)
def test_accepts_youtube_urls(url) -> None:
    assert validate_source_url(url) == url.strip()


@pytest.mark.parametrize(
    "url", ["not-a-url", "https://vimeo.com/123", "https://youtube.com/", "ftp://youtu.be/x"]
)
def test_rejects_other_urls(url) -> None:
    with pytest.raises(InvalidInput, match="Invalid YouTube URL"):
        validate_source_url(url)


@pytest.mark.parametrize("url", [None, "", "   "])
def test_requires_url(url) -> None:
    with pytest.raises(InvalidInput, match="required"):
        validate_source_url(url)


def test_custom_pattern() -> None:
    assert validate_source_url("https://vimeo.com/123", r"^https://vimeo\.com/\d+$")

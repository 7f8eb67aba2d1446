from __future__ import annotations

import pytest

from ytstream.formats import AUDIO_CONTAINERS, derive_filename, resolve


def test_mp3_resolves_to_best_audio_with_mp3_label() -> None:
    resolved = resolve("mp3")

    assert resolved.engine_selector == (
        "bestaudio[ext=m4a]/bestaudio[ext=opus]/bestaudio[ext=webm]/bestaudio"
    )
    assert resolved.declared_output_ext == "mp3"
    assert resolved.declared_mime_type == "audio/mpeg"
    assert resolved.expected_output_ext in AUDIO_CONTAINERS
    assert resolved.output_is_ambiguous


@pytest.mark.parametrize("requested", [None, "", "mp4", " MP4 ", "webm", "mkv"])
def test_everything_else_resolves_to_mp4(requested) -> None:
    resolved = resolve(requested)

    assert resolved == resolve("mp4")
    assert resolved.engine_selector == "best[ext=mp4]/best"
    assert resolved.expected_output_ext == resolved.declared_output_ext == "mp4"
    assert resolved.declared_mime_type == "video/mp4"
    assert not resolved.output_is_ambiguous


def test_format_names_are_case_insensitive() -> None:
    assert resolve("MP3") == resolve("mp3")


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("Test Video: Title!", "Test_Video_Title.mp4"),
        ("a  b\tc", "a_b_c.mp4"),
        ("keep-dashes_and_underscores", "keep-dashes_and_underscores.mp4"),
        ("Ünïcödé 🎵 song", "ncd_song.mp4"),
        ("???", "video.mp4"),
        ("", "video.mp4"),
    ],
)
def test_derive_filename(title, expected) -> None:
    assert derive_filename(title, "mp4") == expected


def test_derive_filename_accepts_dotted_extension() -> None:
    assert derive_filename("clip", ".mp3") == "clip.mp3"

import re
from dataclasses import dataclass
from typing import Optional, Tuple

AUDIO_CONTAINERS: Tuple[str, ...] = ("m4a", "opus", "webm")

AUDIO_FORMAT = "mp3"
DEFAULT_FORMAT = "mp4"

AUDIO_SELECTOR = "bestaudio[ext=m4a]/bestaudio[ext=opus]/bestaudio[ext=webm]/bestaudio"
VIDEO_SELECTOR = "best[ext=mp4]/best"


@dataclass(frozen=True)
class ResolvedFormat:
    engine_selector: str
    expected_output_ext: str
    declared_mime_type: str
    declared_output_ext: str
    accepted_exts: Tuple[str, ...]

    @property
    def output_is_ambiguous(self) -> bool:
        return len(self.accepted_exts) > 1


# The mp3 label is a packaging choice: the bytes stay in whichever audio
# container the engine picked.
AUDIO_ONLY = ResolvedFormat(
    engine_selector=AUDIO_SELECTOR,
    expected_output_ext="m4a",
    declared_mime_type="audio/mpeg",
    declared_output_ext=AUDIO_FORMAT,
    accepted_exts=AUDIO_CONTAINERS,
)

DEFAULT_VIDEO = ResolvedFormat(
    engine_selector=VIDEO_SELECTOR,
    expected_output_ext=DEFAULT_FORMAT,
    declared_mime_type="video/mp4",
    declared_output_ext=DEFAULT_FORMAT,
    accepted_exts=(DEFAULT_FORMAT,),
)


def normalize_format(requested_format: Optional[str]) -> str:
    return (requested_format or "").strip().lower() or DEFAULT_FORMAT


def resolve(requested_format: Optional[str]) -> ResolvedFormat:
    if normalize_format(requested_format) == AUDIO_FORMAT:
        return AUDIO_ONLY
    return DEFAULT_VIDEO


def derive_filename(title: str, extension: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_\s-]", "", title or "")
    safe = re.sub(r"\s+", "_", safe)
    return f"{safe or 'video'}.{extension.lstrip('.')}"

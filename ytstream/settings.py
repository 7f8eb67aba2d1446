import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import certifi
from dotenv import load_dotenv

# Slim containers may ship without CA data; point every SSL consumer at the
# certifi bundle before yt-dlp opens a connection.
CERT_BUNDLE = certifi.where()
os.environ["SSL_CERT_FILE"] = CERT_BUNDLE
os.environ["REQUESTS_CA_BUNDLE"] = CERT_BUNDLE

load_dotenv()

APP_TITLE = "ytstream · YouTube Downloader API"
DEFAULT_URL_PATTERN = r"^(https?://)?(www\.)?(youtube\.com|youtu\.be)/.+"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values = [item.strip() for item in raw.split(",") if item.strip()]
    return values or default


def _env_extractor_args() -> Dict[str, Any]:
    raw = os.getenv("YTDLP_EXTRACTOR_ARGS")
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"youtube": [raw]}
    return parsed if isinstance(parsed, dict) else {}


@dataclass
class Settings:
    downloads_dir: Path = Path("data/downloads")
    sweep_interval_seconds: float = 5 * 60
    retention_seconds: float = 60 * 60
    fragment_marker: str = "--"
    metadata_timeout_seconds: Optional[float] = 30.0
    download_timeout_seconds: Optional[float] = None
    disconnect_poll_seconds: float = 1.0
    stream_chunk_size: int = 1 << 20
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    static_dir: Optional[Path] = Path("client/build")
    allowed_url_pattern: str = DEFAULT_URL_PATTERN
    ytdlp_proxy: Optional[str] = None
    ytdlp_cookies_file: Optional[str] = None
    ytdlp_user_agent: str = DEFAULT_USER_AGENT
    ytdlp_extractor_args: Dict[str, Any] = field(default_factory=dict)
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        static_dir = os.getenv("STATIC_DIR", "client/build").strip()
        return cls(
            downloads_dir=Path(os.getenv("DOWNLOADS_DIR", "data/downloads")),
            sweep_interval_seconds=_env_int("SWEEP_INTERVAL_SECONDS", 5 * 60),
            retention_seconds=_env_int("RETENTION_SECONDS", 60 * 60),
            fragment_marker=os.getenv("FRAGMENT_MARKER", "--") or "--",
            metadata_timeout_seconds=_env_float("METADATA_TIMEOUT_SECONDS", 30.0),
            download_timeout_seconds=_env_float("DOWNLOAD_TIMEOUT_SECONDS", None),
            stream_chunk_size=max(1, _env_int("STREAM_CHUNK_SIZE", 1 << 20)),
            cors_origins=_env_list("CORS_ORIGINS", ["*"]),
            static_dir=Path(static_dir) if static_dir else None,
            allowed_url_pattern=os.getenv("ALLOWED_URL_PATTERN") or DEFAULT_URL_PATTERN,
            ytdlp_proxy=os.getenv("YTDLP_PROXY") or None,
            ytdlp_cookies_file=os.getenv("YTDLP_COOKIES_FILE") or None,
            ytdlp_user_agent=os.getenv("YTDLP_USER_AGENT", DEFAULT_USER_AGENT),
            ytdlp_extractor_args=_env_extractor_args(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 5000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

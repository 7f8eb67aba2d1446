import logging
import shutil
from typing import Any, Callable, Dict, List, Optional

import yt_dlp
from yt_dlp.utils import DownloadCancelled

from ytstream.errors import EngineInvocationFailed, EngineUnavailable
from ytstream.settings import CERT_BUNDLE, Settings

logger = logging.getLogger(__name__)

ProgressHook = Callable[[Dict[str, Any]], None]


def _clean_message(error: Exception) -> str:
    message = str(error).strip()
    if message.upper().startswith("ERROR:"):
        message = message[len("ERROR:"):].strip()
    return message


def engine_version() -> Optional[str]:
    return getattr(getattr(yt_dlp, "version", None), "__version__", None)


class YtDlpEngine:
    """Thin blocking wrapper around ``yt_dlp.YoutubeDL``.

    Every call builds a fresh ``YoutubeDL`` instance, so the engine can be
    shared between worker threads.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()

    def base_options(self) -> Dict[str, Any]:
        settings = self.settings
        js_runtimes: Dict[str, Dict[str, str]] = {}
        for candidate in ("node", "nodejs"):
            path = shutil.which(candidate)
            if path:
                js_runtimes[candidate] = {"executable": path}
                break

        opts: Dict[str, Any] = {
            "quiet": True,
            "noprogress": True,
            "noplaylist": True,
            "nocheckcertificate": False,
            "ca_certs": CERT_BUNDLE,
            "retries": 3,
            "http_headers": {"User-Agent": settings.ytdlp_user_agent},
            "remote_components": ["ejs:github"],
        }
        if js_runtimes:
            opts["js_runtimes"] = js_runtimes
        if settings.ytdlp_extractor_args:
            opts["extractor_args"] = settings.ytdlp_extractor_args
        if settings.ytdlp_proxy:
            opts["proxy"] = settings.ytdlp_proxy
        if settings.ytdlp_cookies_file:
            opts["cookiefile"] = settings.ytdlp_cookies_file
        return opts

    def _run(self, url: str, opts: Dict[str, Any], *, download: bool) -> Dict[str, Any]:
        try:
            ydl = yt_dlp.YoutubeDL(opts)
        except Exception as exc:
            logger.error("yt-dlp could not be initialised: %s", exc)
            raise EngineUnavailable() from exc

        try:
            with ydl:
                info = ydl.extract_info(url, download=download)
                info = ydl.sanitize_info(info)
        except DownloadCancelled:
            raise
        except yt_dlp.utils.DownloadError as exc:
            raise EngineInvocationFailed(_clean_message(exc)) from exc
        except Exception as exc:  # pragma: no cover - extractor bugs surface here
            raise EngineInvocationFailed(_clean_message(exc) or None) from exc

        if not isinstance(info, dict):
            raise EngineInvocationFailed("yt-dlp returned malformed metadata")
        return info

    def extract_info(self, url: str) -> Dict[str, Any]:
        opts = {**self.base_options(), "skip_download": True}
        return self._run(url, opts, download=False)

    def download(
        self,
        url: str,
        selector: str,
        outtmpl: str,
        progress_hooks: Optional[List[ProgressHook]] = None,
    ) -> Dict[str, Any]:
        opts = {
            **self.base_options(),
            "format": selector,
            "outtmpl": outtmpl,
            "overwrites": True,
            "progress_hooks": list(progress_hooks or []),
        }
        return self._run(url, opts, download=True)

from typing import Any, Dict, List, Optional


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def resolve_title(info: Dict[str, Any], default: str = "video") -> str:
    return info.get("title") or info.get("fulltitle") or default


def _thumbnail(info: Dict[str, Any]) -> Optional[str]:
    if info.get("thumbnail"):
        return info["thumbnail"]
    thumbnails = info.get("thumbnails") or []
    if isinstance(thumbnails, list) and thumbnails and isinstance(thumbnails[0], dict):
        return thumbnails[0].get("url")
    return None


def _has_codec(value: Any) -> bool:
    return bool(value) and value != "none"


def describe_format(fmt: Dict[str, Any]) -> Dict[str, Any]:
    height = _as_int(fmt.get("height"))
    vcodec = fmt.get("vcodec") or "none"
    acodec = fmt.get("acodec") or "none"
    return {
        "format_id": fmt.get("format_id"),
        "ext": fmt.get("ext"),
        "resolution": f"{height}p" if height else "unknown",
        "filesize": fmt.get("filesize"),
        "vcodec": vcodec,
        "acodec": acodec,
        "hasVideo": _has_codec(vcodec),
        "hasAudio": _has_codec(acodec),
    }


def describe_formats(info: Dict[str, Any]) -> List[Dict[str, Any]]:
    formats = info.get("formats") or []
    return [describe_format(fmt) for fmt in formats if isinstance(fmt, dict)]


def video_details(info: Dict[str, Any]) -> Dict[str, Any]:
    duration = _as_int(info.get("duration")) or 0
    return {
        "title": resolve_title(info, "Unknown Title"),
        "thumbnail": _thumbnail(info),
        "duration": max(0, duration),
        "author": info.get("uploader") or info.get("channel") or "Unknown Author",
        "formats": describe_formats(info),
    }

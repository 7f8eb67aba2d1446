import re
from typing import Optional

from ytstream.errors import InvalidInput
from ytstream.settings import DEFAULT_URL_PATTERN


def validate_source_url(url: Optional[str], pattern: str = DEFAULT_URL_PATTERN) -> str:
    value = (url or "").strip()
    if not value:
        raise InvalidInput("YouTube URL is required")
    if not re.match(pattern, value):
        raise InvalidInput("Invalid YouTube URL")
    return value

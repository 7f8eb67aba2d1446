from typing import Dict, Optional


class DownloadError(RuntimeError):
    """Base error for every failure the download API reports to clients."""

    status_code = 500
    code = "DOWNLOAD_FAILED"
    default_message = "Failed to download video"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)

    def to_payload(self) -> Dict[str, str]:
        return {"error": self.message, "code": self.code}


class InvalidInput(DownloadError):
    status_code = 400
    code = "INVALID_INPUT"
    default_message = "Invalid request"


class EngineInvocationFailed(DownloadError):
    status_code = 500
    code = "ENGINE_FAILED"
    default_message = "Failed to download video"


class EngineOutputMissing(DownloadError):
    """The engine reported success but left no usable file behind."""

    status_code = 500
    code = "ENGINE_OUTPUT_MISSING"
    default_message = "Downloaded file could not be located"


class EngineUnavailable(DownloadError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    default_message = (
        "YouTube downloader service is temporarily unavailable. "
        "Please try again later."
    )


class EngineTimeout(DownloadError):
    status_code = 504
    code = "TIMEOUT"
    default_message = "Request timeout - YouTube may be slow or unavailable"


class TransportInterrupted(DownloadError):
    status_code = 500
    code = "TRANSPORT_INTERRUPTED"
    default_message = "Failed to stream video"


class StorageUnavailable(DownloadError):
    status_code = 503
    code = "STORAGE_UNAVAILABLE"
    default_message = "Temporary download storage is not writable"

from typing import Optional


class DownloadError(Exception):
    """Base class for every failure a download job can surface."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class InvalidInputURL(DownloadError):
    def __init__(self, raw: str) -> None:
        super().__init__("Invalid URL. Please paste a full playlist URL.")
        self.raw = raw


class PlaylistFetchFailed(DownloadError):
    def __init__(self, uri: str, status: Optional[int] = None, reason: str = "") -> None:
        if status is not None:
            message = f"Failed to fetch playlist ({status}):\n{uri}"
        else:
            message = f"Failed to fetch playlist: {reason or 'request error'}\n{uri}"
        super().__init__(message)
        self.uri = uri
        self.status = status
        self.reason = reason


class PlaylistHTTPError(PlaylistFetchFailed):
    def __init__(self, uri: str, status: int) -> None:
        super().__init__(uri, status=status)


class PlaylistNotUTF8(PlaylistFetchFailed):
    def __init__(self, uri: str) -> None:
        super().__init__(uri, reason="not UTF-8 text")
        self.message = "Playlist is not valid UTF-8 text."


class NoPlayableVariant(DownloadError):
    def __init__(self, uri: str) -> None:
        super().__init__("Could not load any media playlist variant from the provided URL.")
        self.uri = uri


class NoSupportedOutputType(DownloadError):
    def __init__(self) -> None:
        super().__init__("No supported output file types for this stream.")


class RemuxServiceError(Exception):
    """Failure reported by a remux backend, identified by a (domain, code) pair."""

    def __init__(self, domain: str, code: int, message: str) -> None:
        super().__init__(message)
        self.domain = domain
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return self.message


class RemuxFailed(DownloadError):
    def __init__(self, cause: Exception) -> None:
        super().__init__(str(cause))
        self.cause = cause


class SegmentFetchFailed(DownloadError):
    """A fallback segment download failed; ``index`` is None for the init segment."""

    def __init__(self, index: Optional[int], status: Optional[int], uri: str = "") -> None:
        what = "initialization segment" if index is None else f"segment {index}"
        code = status if status is not None else "no response"
        message = f"Failed to download {what} ({code})"
        if uri:
            message += f":\n{uri}"
        super().__init__(message)
        self.index = index
        self.status = status
        self.uri = uri


class EmptyMediaPlaylist(DownloadError):
    def __init__(self) -> None:
        super().__init__("No downloadable segments found in media playlist.")


class Cancelled(DownloadError):
    def __init__(self) -> None:
        super().__init__("Download cancelled.")

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlsplit

from hlsgrab.config import Settings
from hlsgrab.download import HttpClient, SegmentDownloader, augment_browser_headers, build_headers
from hlsgrab.errors import Cancelled, DownloadError, InvalidInputURL
from hlsgrab.orchestrator import AcquisitionResult, RemuxOrchestrator
from hlsgrab.progress import ProgressChannel
from hlsgrab.remux import FFmpegRemuxer, RemuxService, SegmentOnlyRemuxer


log = logging.getLogger(__name__)


def normalize_input_url(raw: str) -> str:
    value = (raw or "").strip()
    # Inner whitespace or control characters never form a usable URL
    if not value or any(c.isspace() or not c.isprintable() for c in value):
        raise InvalidInputURL(raw)
    if not (value.startswith("http://") or value.startswith("https://")):
        value = f"https://{value}"
    try:
        parts = urlsplit(value)
        host = parts.hostname
        # Raises ValueError for a non-numeric or out-of-range port
        parts.port
    except ValueError:
        raise InvalidInputURL(raw) from None
    if not parts.scheme or not host:
        raise InvalidInputURL(raw)
    return value


@dataclass(frozen=True)
class JobOutcome:
    url: str
    result: Optional[AcquisitionResult] = None
    error: Optional[DownloadError] = None

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, Cancelled)

    @property
    def message(self) -> str:
        if self.result is not None:
            return f"Video downloaded to:\n{self.result.path}"
        if self.cancelled:
            return "Download cancelled."
        return f"Download failed: {self.error}"


class DownloadHandle:
    """A running (or finished) download job."""

    def __init__(self, url: str, channel: ProgressChannel) -> None:
        self.url = url
        self.channel = channel
        self.orchestrator: Optional[RemuxOrchestrator] = None
        self._done = threading.Event()
        self._outcome: Optional[JobOutcome] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def outcome(self) -> Optional[JobOutcome]:
        return self._outcome

    def cancel(self) -> None:
        self.channel.cancel()

    def wait(self, timeout: Optional[float] = None) -> Optional[JobOutcome]:
        self._done.wait(timeout)
        return self._outcome

    def _finish(self, outcome: JobOutcome) -> None:
        self._outcome = outcome
        self._done.set()


class DownloadSession:
    """Runs at most one download job at a time; a new job supersedes the old one."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[HttpClient] = None,
        remuxer: Optional[RemuxService] = None,
        on_finished: Optional[Callable[[JobOutcome], None]] = None,
    ) -> None:
        self.settings = settings or Settings()
        headers = augment_browser_headers(
            build_headers(self.settings.user_agent, self.settings.referer, self.settings.extra_headers)
        )
        self.client = client or HttpClient(headers)
        self.remuxer = remuxer or self._default_remuxer(headers)
        self.on_finished = on_finished
        self._lock = threading.Lock()
        self._current: Optional[DownloadHandle] = None

    def _default_remuxer(self, headers) -> RemuxService:
        if not self.settings.use_ffmpeg:
            return SegmentOnlyRemuxer("remuxing disabled")
        if not self.settings.ffmpeg_path:
            log.warning("ffmpeg not found; using segment download only")
            return SegmentOnlyRemuxer("ffmpeg not available")
        return FFmpegRemuxer(self.settings.ffmpeg_path, headers, timeout=self.settings.remux_timeout)

    @property
    def current(self) -> Optional[DownloadHandle]:
        with self._lock:
            return self._current

    def start(self, raw_input: str) -> DownloadHandle:
        url = normalize_input_url(raw_input)
        with self._lock:
            previous = self._current
            if previous is not None and not previous.done:
                log.info("Superseding download of %s", previous.url)
                previous.cancel()
            handle = DownloadHandle(url, ProgressChannel(status="Fetching playlist..."))
            self._current = handle
        threading.Thread(target=self._run, args=(handle,), name="hlsgrab-job", daemon=True).start()
        return handle

    def cancel(self) -> bool:
        with self._lock:
            handle = self._current
            if handle is None or handle.done:
                return False
            handle.cancel()
        return True

    def build_orchestrator(self, channel: ProgressChannel) -> RemuxOrchestrator:
        downloader = SegmentDownloader(
            self.client,
            max_parallel=self.settings.max_parallel,
            timeout=self.settings.segment_timeout,
        )
        return RemuxOrchestrator(
            self.client,
            self.remuxer,
            channel,
            downloader=downloader,
            playlist_timeout=self.settings.playlist_timeout,
            temp_root=self.settings.temp_root,
        )

    def _run(self, handle: DownloadHandle) -> None:
        orchestrator = handle.orchestrator = self.build_orchestrator(handle.channel)
        try:
            outcome = JobOutcome(handle.url, result=orchestrator.run(handle.url))
        except DownloadError as e:
            outcome = JobOutcome(handle.url, error=e)
        except Exception as e:
            log.exception("Download job for %s crashed", handle.url)
            outcome = JobOutcome(handle.url, error=DownloadError(str(e)))

        if outcome.error is not None and handle.channel.cancelled and not outcome.cancelled:
            outcome = JobOutcome(handle.url, error=Cancelled())
        try:
            if self.on_finished is not None:
                self.on_finished(outcome)
        finally:
            handle._finish(outcome)

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import requests

from hlsgrab.errors import Cancelled, SegmentFetchFailed
from hlsgrab.playlist import InitSegmentReference, SegmentReference
from hlsgrab.progress import ProgressChannel


log = logging.getLogger(__name__)

DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36"
)

CHUNK_SIZE = 64 * 1024
MAX_PARALLEL_DOWNLOADS = 8
SEGMENT_TIMEOUT = 60.0

ProgressCallback = Callable[[float], None]


def build_headers(user_agent: str, referer: Optional[str], extra_headers: List[str]) -> Dict[str, str]:
    headers: Dict[str, str] = {
        "User-Agent": user_agent or DEFAULT_UA,
        "Accept": "*/*",
        "Accept-Encoding": "identity",
        "Connection": "keep-alive",
    }
    if referer:
        headers["Referer"] = referer
        headers["Origin"] = referer.rstrip("/")
    for header in extra_headers:
        if ":" not in header:
            log.warning("Ignoring malformed header %r", header)
            continue
        key, value = header.split(":", 1)
        headers[key.strip()] = value.strip()
    return headers


def augment_browser_headers(headers: Dict[str, str]) -> Dict[str, str]:
    # Common fetch headers, to better mimic a browser
    out = dict(headers)
    out.setdefault("Sec-Fetch-Mode", "cors")
    out.setdefault("Sec-Fetch-Site", "cross-site")
    out.setdefault("Sec-Fetch-Dest", "empty")
    return out


class HttpClient:
    """Thin wrapper over a requests session exposing the two calls the pipeline needs."""

    def __init__(self, headers: Optional[Dict[str, str]] = None, session: Optional[requests.Session] = None) -> None:
        self.session = session or requests.Session()
        self.session.headers.update(headers or build_headers(DEFAULT_UA, None, []))

    def get(self, url: str, timeout: float) -> Tuple[int, bytes]:
        resp = self.session.get(url, timeout=timeout)
        return resp.status_code, resp.content

    def download(
        self,
        url: str,
        dest: Path,
        timeout: float,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> int:
        """Stream ``url`` into ``dest`` and return the HTTP status.

        Nothing is written for a non-2xx response. The body goes to a ``.part``
        file that replaces ``dest`` only once complete.
        """
        with self.session.get(url, timeout=timeout, stream=True) as resp:
            if not 200 <= resp.status_code <= 299:
                return resp.status_code
            tmp = dest.with_name(dest.name + ".part")
            with tmp.open("wb") as f:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if should_stop is not None and should_stop():
                        raise Cancelled()
                    if chunk:
                        f.write(chunk)
            tmp.replace(dest)
            return resp.status_code

    def close(self) -> None:
        self.session.close()


@dataclass
class DownloadJob:
    total_segments: int
    output_directory: Path
    completed_count: int = 0
    cancelled: bool = False

    def advance(self, count: int) -> None:
        if self.completed_count + count > self.total_segments:
            raise ValueError(
                f"completed count would exceed total ({self.completed_count} + {count} > {self.total_segments})"
            )
        self.completed_count += count

    @property
    def fraction(self) -> float:
        if self.total_segments == 0:
            return 1.0
        return self.completed_count / self.total_segments


def segment_path(segments_dir: Path, index: int) -> Path:
    return segments_dir / f"{index:06d}.seg"


class SegmentDownloader:
    """Downloads segments in consecutive batches of bounded size.

    Each batch is joined before the next one starts; cancellation is checked
    between batches and before every request. Files are addressed by segment
    index so completion order never affects the merge.
    """

    def __init__(self, client: HttpClient, max_parallel: int = MAX_PARALLEL_DOWNLOADS, timeout: float = SEGMENT_TIMEOUT) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.client = client
        self.max_parallel = max_parallel
        self.timeout = timeout
        self.job: Optional[DownloadJob] = None

    def download(
        self,
        segments: Sequence[SegmentReference],
        init_segment: Optional[InitSegmentReference],
        output_directory: Path,
        channel: ProgressChannel,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Tuple[Optional[Path], List[Path]]:
        segments_dir = output_directory / "segments"
        segments_dir.mkdir(parents=True, exist_ok=True)
        job = self.job = DownloadJob(total_segments=len(segments), output_directory=output_directory)

        self._check_cancelled(job, channel)
        init_path: Optional[Path] = None
        if init_segment is not None:
            init_path = output_directory / "init.seg"
            self._fetch(None, init_segment.uri, init_path, channel)
            log.info("Downloaded initialization segment %s", init_segment.uri)

        paths = [segment_path(segments_dir, seg.index) for seg in segments]
        with ThreadPoolExecutor(max_workers=self.max_parallel) as executor:
            for start in range(0, job.total_segments, self.max_parallel):
                self._check_cancelled(job, channel)
                batch = segments[start:start + self.max_parallel]
                futures = {
                    executor.submit(self._fetch, seg.index, seg.uri, paths[seg.index], channel): seg
                    for seg in batch
                }
                done, _ = wait(futures)
                self._raise_batch_failure(job, [(futures[f].index, f.exception()) for f in done])

                job.advance(len(batch))
                channel.update(status=f"Downloading segment {job.completed_count} of {job.total_segments}...")
                if on_progress is not None:
                    on_progress(job.fraction)
                log.debug("Batch done: %d/%d segments", job.completed_count, job.total_segments)

        return init_path, paths

    @staticmethod
    def _check_cancelled(job: DownloadJob, channel: ProgressChannel) -> None:
        if channel.cancelled:
            job.cancelled = True
            raise Cancelled()

    @staticmethod
    def _raise_batch_failure(job: DownloadJob, outcomes: List[Tuple[int, Optional[BaseException]]]) -> None:
        errors = sorted((index, err) for index, err in outcomes if err is not None)
        if not errors:
            return
        for _, err in errors:
            if isinstance(err, Cancelled):
                job.cancelled = True
                raise err
        raise errors[0][1]

    def _fetch(self, index: Optional[int], uri: str, dest: Path, channel: ProgressChannel) -> Path:
        channel.check_cancelled()
        try:
            status = self.client.download(uri, dest, self.timeout, should_stop=lambda: channel.cancelled)
        except requests.RequestException as e:
            log.error("Failed to fetch segment %s: %s", index, e)
            raise SegmentFetchFailed(index, None, uri) from e
        if not 200 <= status <= 299:
            log.error("Failed to fetch segment %s: HTTP %s", index, status)
            raise SegmentFetchFailed(index, status, uri)
        return dest


def infer_output_extension(has_init_segment: bool, first_segment_uri: Optional[str]) -> str:
    # Filename heuristic, the bytes are not inspected
    name = urlsplit(first_segment_uri or "").path.rsplit("/", 1)[-1].lower()
    if has_init_segment or ".m4s" in name:
        return ".mp4"
    return ".ts"


def merge_segments(
    init_path: Optional[Path],
    segment_paths: Sequence[Path],
    output_path: Path,
    channel: Optional[ProgressChannel] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> Path:
    """Concatenate the init segment and then every segment, in the given order."""
    total = len(segment_paths)
    with output_path.open("wb") as out:
        if init_path is not None:
            out.write(init_path.read_bytes())
        for i, p in enumerate(segment_paths):
            if channel is not None:
                channel.check_cancelled()
            out.write(p.read_bytes())
            if channel is not None:
                channel.update(status=f"Merging segment {i + 1} of {total}...")
            if on_progress is not None:
                on_progress((i + 1) / total)
    log.info("Merged %d segments into %s", total, output_path)
    return output_path

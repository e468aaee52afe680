"""Resolve a playlist URL to a media playlist and turn it into one local file.

The primary path hands the media playlist to a remux backend. When the backend
reports that it stopped mid-operation, the segments are downloaded and joined
here instead, reusing the playlist text already fetched while probing.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlsplit

from hlsgrab.download import HttpClient, SegmentDownloader, infer_output_extension, merge_segments
from hlsgrab.errors import EmptyMediaPlaylist, NoPlayableVariant, NoSupportedOutputType, PlaylistFetchFailed, RemuxFailed, RemuxServiceError
from hlsgrab.playlist import PlaylistDocument, fetch_playlist_text, parse_playlist, variant_candidates
from hlsgrab.progress import ProgressChannel
from hlsgrab.remux import RemuxService, choose_container, container_extension, is_operation_stopped


log = logging.getLogger(__name__)

DEFAULT_BASE_NAME = "downloaded_video"
# Share of the fallback phase spent downloading; the rest is merging
DOWNLOAD_SHARE = 0.9


class State(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    PRIMARY_ATTEMPT = "primary_attempt"
    FALLBACK_ATTEMPT = "fallback_attempt"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class MediaPlaylist:
    uri: str
    text: str

    @property
    def document(self) -> PlaylistDocument:
        return parse_playlist(self.text, self.uri)


@dataclass(frozen=True)
class AcquisitionResult:
    path: Path
    suggested_name: str
    temp_dir: Path
    used_fallback: bool = False

    def cleanup(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)


def suggested_base_name(uri: str) -> str:
    stem = PurePosixPath(unquote(urlsplit(uri).path)).stem
    return stem or DEFAULT_BASE_NAME


class RemuxOrchestrator:
    def __init__(
        self,
        client: HttpClient,
        remuxer: RemuxService,
        channel: ProgressChannel,
        downloader: Optional[SegmentDownloader] = None,
        playlist_timeout: float = 30.0,
        temp_root: Optional[str] = None,
    ) -> None:
        self.client = client
        self.remuxer = remuxer
        self.channel = channel
        self.downloader = downloader or SegmentDownloader(client)
        self.playlist_timeout = playlist_timeout
        self.temp_root = temp_root
        self.temp_dir: Optional[Path] = None
        self.state = State.IDLE

    def run(self, url: str) -> AcquisitionResult:
        """Run the whole job. On any failure the job's temp directory is removed first."""
        self.temp_dir = Path(tempfile.mkdtemp(prefix="hlsgrab_", dir=self.temp_root))
        try:
            result = self._run(url)
        except BaseException:
            self.state = State.FAILED
            self.cleanup()
            raise
        self.state = State.SUCCEEDED
        self.channel.update(fraction=1.0)
        log.info("Download finished: %s", result.path)
        return result

    def cleanup(self) -> None:
        if self.temp_dir is not None:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            self.temp_dir = None

    def _run(self, url: str) -> AcquisitionResult:
        self._enter(State.PROBING)
        self.channel.update(status="Fetching playlist...")
        media = self.probe(url)

        self._enter(State.PRIMARY_ATTEMPT)
        try:
            return self.primary(media)
        except (RemuxServiceError, OSError) as e:
            if not is_operation_stopped(e):
                raise RemuxFailed(e) from e
            log.warning("Remux stopped (%s); falling back to segment download", e)

        self._enter(State.FALLBACK_ATTEMPT)
        self.channel.update(status="Exporter stopped. Falling back to segment download...")
        return self.fallback(media)

    def _enter(self, state: State) -> None:
        self.channel.check_cancelled()
        log.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def fetch(self, uri: str) -> str:
        self.channel.check_cancelled()
        return fetch_playlist_text(self.client, uri, self.playlist_timeout)

    def probe(self, url: str) -> MediaPlaylist:
        root_text = self.fetch(url)
        root = parse_playlist(root_text, url)
        for candidate in variant_candidates(root):
            if candidate == url and not root.is_master:
                return MediaPlaylist(url, root_text)
            try:
                text = self.fetch(candidate)
            except PlaylistFetchFailed as e:
                log.warning("Skipping variant %s: %s", candidate, e)
                continue
            log.info("Using media playlist %s", candidate)
            return MediaPlaylist(candidate, text)
        raise NoPlayableVariant(url)

    def primary(self, media: MediaPlaylist) -> AcquisitionResult:
        container = choose_container(self.remuxer.supported_container_types(media.uri))
        if container is None:
            raise NoSupportedOutputType()

        name = suggested_base_name(media.uri) + container_extension(container)
        output = self.temp_dir / name
        self.channel.update(status="Downloading and muxing video...")
        try:
            self.remuxer.remux(
                media.uri,
                output,
                container,
                self.channel,
                on_progress=self.channel.span(self.channel.fraction, 1.0),
                duration=media.document.total_duration,
            )
        except RemuxServiceError:
            output.unlink(missing_ok=True)
            raise
        return AcquisitionResult(output, name, self.temp_dir)

    def fallback(self, media: MediaPlaylist) -> AcquisitionResult:
        document = media.document
        segments = document.segments()
        if not segments:
            raise EmptyMediaPlaylist()
        if document.is_encrypted:
            log.warning("Playlist is encrypted; merged segments will not be decrypted")
        init_segment = document.init_segment()

        self.channel.update(status="Downloading HLS segments...")
        start = self.channel.fraction
        mid = start + (1.0 - start) * DOWNLOAD_SHARE
        init_path, paths = self.downloader.download(
            segments, init_segment, self.temp_dir, self.channel, self.channel.span(start, mid)
        )

        self.channel.check_cancelled()
        ext = infer_output_extension(init_segment is not None, segments[0].uri)
        name = suggested_base_name(media.uri) + ext
        self.channel.update(status="Merging segments...")
        output = merge_segments(init_path, paths, self.temp_dir / name, self.channel, self.channel.span(mid, 1.0))

        shutil.rmtree(self.temp_dir / "segments", ignore_errors=True)
        if init_path is not None:
            init_path.unlink(missing_ok=True)
        return AcquisitionResult(output, name, self.temp_dir, used_fallback=True)

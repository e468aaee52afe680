"""Remux backends: repackage a media playlist into a single container file."""

import logging
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from hlsgrab.errors import Cancelled, RemuxServiceError
from hlsgrab.progress import ProgressChannel


log = logging.getLogger(__name__)

MP4 = "mp4"
MOV = "mov"
MATROSKA = "matroska"
MPEGTS = "mpegts"

PREFERRED_CONTAINERS = (MP4, MOV)
CONTAINER_EXTENSIONS = {MP4: ".mp4", MOV: ".mov", MATROSKA: ".mkv", MPEGTS: ".ts"}

REMUX_DOMAIN = "hlsgrab.remux"
OPERATION_STOPPED = 1

# ffmpeg stderr fragments meaning it gave up mid-stream, not that the input is bad
_TRANSIENT_MARKERS = (
    "operation stopped",
    "immediate exit requested",
    "received signal",
    "connection timed out",
    "connection reset by peer",
)

_WATCH_INTERVAL = 0.2


def choose_container(supported: Sequence[str]) -> Optional[str]:
    for container in PREFERRED_CONTAINERS:
        if container in supported:
            return container
    return supported[0] if supported else None


def container_extension(container: str) -> str:
    return CONTAINER_EXTENSIONS.get(container, ".mp4")


def operation_stopped(message: str) -> RemuxServiceError:
    return RemuxServiceError(REMUX_DOMAIN, OPERATION_STOPPED, f"Operation Stopped: {message}")


def is_operation_stopped(err: BaseException) -> bool:
    if isinstance(err, RemuxServiceError) and (err.domain, err.code) == (REMUX_DOMAIN, OPERATION_STOPPED):
        return True
    return "operation stopped" in str(err).lower()


class RemuxService:
    """Interface of an external remux capability.

    ``remux`` raises RemuxServiceError on failure and Cancelled once the
    channel is cancelled.
    """

    def supported_container_types(self, source_uri: str) -> List[str]:
        raise NotImplementedError

    def remux(
        self,
        source_uri: str,
        output_path: Path,
        container_type: str,
        channel: ProgressChannel,
        on_progress: Optional[Callable[[float], None]] = None,
        duration: float = 0.0,
    ) -> None:
        raise NotImplementedError


class SegmentOnlyRemuxer(RemuxService):
    """Stand-in used when no remux backend is available; forces the segment path."""

    def __init__(self, reason: str = "remuxing is disabled") -> None:
        self.reason = reason

    def supported_container_types(self, source_uri: str) -> List[str]:
        return [MP4]

    def remux(self, source_uri, output_path, container_type, channel, on_progress=None, duration=0.0) -> None:
        channel.check_cancelled()
        raise operation_stopped(self.reason)


def classify_ffmpeg_failure(returncode: int, stderr: str) -> RemuxServiceError:
    lines = [line for line in stderr.strip().splitlines() if line.strip()]
    last = lines[-1].strip() if lines else "no output"
    lowered = stderr.lower()
    # 255 is what ffmpeg returns when interrupted by a signal
    if returncode < 0 or returncode == 255 or any(m in lowered for m in _TRANSIENT_MARKERS):
        return operation_stopped(f"ffmpeg aborted ({last})")
    return RemuxServiceError("ffmpeg", returncode, f"ffmpeg exited with status {returncode}: {last}")


class FFmpegRemuxer(RemuxService):
    def __init__(self, ffmpeg_path: Optional[str], headers: Optional[Dict[str, str]] = None, timeout: float = 60 * 20) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.headers = headers or {}
        self.timeout = timeout

    def supported_container_types(self, source_uri: str) -> List[str]:
        if not self.ffmpeg_path:
            return []
        return [MP4, MOV, MATROSKA, MPEGTS]

    def build_cmd(self, source_uri: str, output_path: Path, container_type: str) -> List[str]:
        cmd = [
            self.ffmpeg_path or "ffmpeg",
            "-y",
            "-loglevel", "error",
            "-nostats",
            "-progress", "pipe:1",
        ]
        if self.headers:
            cmd += ["-headers", "".join(f"{k}: {v}\r\n" for k, v in self.headers.items())]
        cmd += ["-i", source_uri, "-c", "copy"]
        if container_type in (MP4, MOV):
            cmd += ["-bsf:a", "aac_adtstoasc", "-movflags", "+faststart"]
        cmd += ["-f", container_type, str(output_path)]
        return cmd

    def remux(self, source_uri, output_path, container_type, channel, on_progress=None, duration=0.0) -> None:
        cmd = self.build_cmd(source_uri, output_path, container_type)
        log.info("Running %s", " ".join(cmd[:1] + cmd[-4:]))
        timed_out = threading.Event()

        with tempfile.TemporaryFile() as errlog:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=errlog, stdin=subprocess.DEVNULL, text=True)
            watcher = threading.Thread(target=self._watch, args=(proc, channel, timed_out), daemon=True)
            watcher.start()
            try:
                for line in proc.stdout:
                    key, _, value = line.strip().partition("=")
                    if key in ("out_time_us", "out_time_ms") and duration > 0 and on_progress is not None:
                        try:
                            on_progress(min(1.0, int(value) / 1_000_000 / duration))
                        except ValueError:
                            continue
                returncode = proc.wait()
            finally:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
                watcher.join()
            errlog.seek(0)
            stderr = errlog.read().decode("utf-8", errors="ignore")

        if channel.cancelled:
            raise Cancelled()
        if timed_out.is_set():
            raise operation_stopped(f"ffmpeg timed out after {self.timeout:.0f}s")
        if returncode != 0:
            raise classify_ffmpeg_failure(returncode, stderr)
        if on_progress is not None:
            on_progress(1.0)

    def _watch(self, proc: subprocess.Popen, channel: ProgressChannel, timed_out: threading.Event) -> None:
        deadline = time.monotonic() + self.timeout
        while proc.poll() is None:
            if channel.wait_cancelled(_WATCH_INTERVAL):
                log.info("Stopping ffmpeg (cancelled)")
                proc.terminate()
                return
            if time.monotonic() > deadline:
                timed_out.set()
                proc.kill()
                return

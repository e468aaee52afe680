import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from hlsgrab.download import DEFAULT_UA, MAX_PARALLEL_DOWNLOADS, SEGMENT_TIMEOUT


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def find_ffmpeg() -> Optional[str]:
    # Allow override via env var
    override = os.environ.get("FFMPEG_PATH")
    if override and Path(override).exists():
        return override
    return shutil.which("ffmpeg")


@dataclass
class Settings:
    user_agent: str = DEFAULT_UA
    referer: Optional[str] = None
    extra_headers: List[str] = field(default_factory=list)
    playlist_timeout: float = 30.0
    segment_timeout: float = SEGMENT_TIMEOUT
    remux_timeout: float = 60 * 20
    max_parallel: int = MAX_PARALLEL_DOWNLOADS
    ffmpeg_path: Optional[str] = None
    use_ffmpeg: bool = True
    temp_root: Optional[str] = None
    port: int = 5000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            ffmpeg_path=find_ffmpeg(),
            temp_root=os.environ.get("HLSGRAB_TMPDIR") or None,
            max_parallel=_env_int("HLSGRAB_MAX_PARALLEL", MAX_PARALLEL_DOWNLOADS),
            port=_env_int("PORT", 5000),
        )

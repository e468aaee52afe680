import logging
import shutil
from pathlib import Path

from hlsgrab.orchestrator import AcquisitionResult


log = logging.getLogger(__name__)


def get_downloads_dir() -> Path:
    # Cross-platform: default to user's Downloads folder
    home = Path.home()
    downloads = home / "Downloads"
    if not downloads.exists():
        try:
            downloads.mkdir(parents=True, exist_ok=True)
        except OSError:
            return home
    return downloads


def ensure_output_path(path: str, default_name: str) -> Path:
    downloads = get_downloads_dir()
    # No path provided: Downloads/default_name
    if not path:
        return downloads / default_name
    p = Path(path).expanduser()
    # A directory: keep the suggested name inside it
    if p.is_dir():
        return p / default_name
    # Only a filename: save in Downloads
    if p.parent == Path("."):
        p = downloads / p.name
    if not p.suffix:
        p = p.with_suffix(Path(default_name).suffix)
    p.parent.mkdir(parents=True, exist_ok=True)
    return p


def save_downloaded_video(result: AcquisitionResult, output: str = "") -> Path:
    """Move the finished temp file to its destination and drop the job's temp directory."""
    destination = ensure_output_path(output, result.suggested_name)
    if destination.exists():
        destination.unlink()
    shutil.move(str(result.path), str(destination))
    result.cleanup()
    log.info("Saved %s", destination)
    return destination

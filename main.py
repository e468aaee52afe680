import argparse
import logging
import sys
import threading

from hlsgrab.config import Settings
from hlsgrab.errors import InvalidInputURL
from hlsgrab.progress import ProgressSnapshot
from hlsgrab.save import save_downloaded_video
from hlsgrab.server import start_progress_server
from hlsgrab.session import DownloadSession


def print_progress(snap: ProgressSnapshot) -> None:
    msg = f"{snap.fraction * 100:5.1f}% | {snap.status}"
    print("\r" + msg.ljust(72), end="", flush=True)


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Download an HLS playlist (.m3u8) into a single video file")
    parser.add_argument("url", help="Playlist URL, e.g. https://example.com/path/hd.m3u8")
    parser.add_argument("--output", "-o", default="", help="Output file or directory (default: Downloads, suggested name)")
    parser.add_argument("--referer", default=None, help="Referer header value to send")
    parser.add_argument("--user-agent", default=settings.user_agent, help="User-Agent header (default: modern Chrome)")
    parser.add_argument("--header", action="append", default=[], help="Extra header as 'Key: Value' (repeatable)")
    parser.add_argument("--timeout", type=float, default=settings.playlist_timeout, help="Playlist request timeout in seconds (default: 30)")
    parser.add_argument("--segment-timeout", type=float, default=settings.segment_timeout, help="Segment request timeout in seconds (default: 60)")
    parser.add_argument("--concurrency", type=int, default=settings.max_parallel, help="Parallel segment downloads per batch (default: 8)")
    parser.add_argument("--no-ffmpeg", action="store_true", help="Skip the ffmpeg remux and download segments directly")
    parser.add_argument("--keep-temp", action="store_true", help="Leave the temp file in place instead of moving it")
    parser.add_argument("--serve", action="store_true", help="Serve progress JSON over HTTP while downloading")
    parser.add_argument("--port", type=int, default=settings.port, help="Port for --serve (default: $PORT or 5000)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main() -> None:
    settings = Settings.from_env()
    args = build_parser(settings).parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings.referer = args.referer
    settings.user_agent = args.user_agent
    settings.extra_headers = args.header
    settings.playlist_timeout = args.timeout
    settings.segment_timeout = args.segment_timeout
    settings.max_parallel = args.concurrency
    settings.use_ffmpeg = not args.no_ffmpeg

    session = DownloadSession(settings)

    if args.serve:
        server_thread = threading.Thread(
            target=start_progress_server,
            args=(session, "127.0.0.1", args.port),
            daemon=True,
        )
        server_thread.start()
        print(f"Progress web link: http://127.0.0.1:{args.port}/")

    try:
        handle = session.start(args.url)
    except InvalidInputURL as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)

    handle.channel.subscribe(print_progress)
    try:
        # Poll so Ctrl+C reaches the main thread
        while handle.wait(timeout=0.5) is None:
            pass
    except KeyboardInterrupt:
        handle.cancel()
        handle.wait()
    print()

    outcome = handle.outcome
    if not outcome.ok:
        print(outcome.message, file=sys.stderr)
        sys.exit(130 if outcome.cancelled else 1)

    result = outcome.result
    if result.used_fallback:
        print("Remux stopped; segments were downloaded and merged directly.")
    if args.keep_temp:
        print(f"Temp file kept at {result.path}")
        return
    try:
        destination = save_downloaded_video(result, args.output)
    except OSError as e:
        print(f"Downloaded to temp, but failed to move file: {e}\n{result.path}", file=sys.stderr)
        sys.exit(1)
    print(f"Video downloaded successfully to:\n{destination}")


if __name__ == "__main__":
    main()

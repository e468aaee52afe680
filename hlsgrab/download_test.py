"""Tests for the segment download coordinator and merger."""

import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from hlsgrab.download import (
    DownloadJob,
    HttpClient,
    SegmentDownloader,
    build_headers,
    infer_output_extension,
    merge_segments,
)
from hlsgrab.errors import Cancelled, SegmentFetchFailed
from hlsgrab.playlist import InitSegmentReference, SegmentReference
from hlsgrab.progress import ProgressChannel


BASE = "https://cdn.example.com/v/"


class FakeSegmentClient:
    """Serves segment bodies from memory and records every request."""

    def __init__(self, bodies=None, statuses=None, delays=None, errors=None):
        self.bodies = bodies or {}
        self.statuses = statuses or {}
        self.delays = delays or {}
        self.errors = errors or {}
        self.requested = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def download(self, url, dest, timeout, should_stop=None):
        with self._lock:
            self.requested.append(url)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.delays.get(url, 0.001))
            if url in self.errors:
                raise self.errors[url]
            status = self.statuses.get(url, 200)
            if 200 <= status <= 299:
                Path(dest).write_bytes(self.bodies.get(url, url.encode()))
            return status
        finally:
            with self._lock:
                self.in_flight -= 1


def make_segments(count, ext="ts"):
    return [SegmentReference(i, f"{BASE}seg{i}.{ext}") for i in range(count)]


# =============================================================================
# Coordinator
# =============================================================================


class TestSegmentDownloader:
    def test_progress_after_each_batch(self, tmp_path):
        client = FakeSegmentClient()
        reported = []
        SegmentDownloader(client).download(make_segments(20), None, tmp_path, ProgressChannel(), reported.append)
        assert reported == [pytest.approx(0.4), pytest.approx(0.8), pytest.approx(1.0)]

    def test_progress_monotonic_and_complete(self, tmp_path):
        channel = ProgressChannel()
        seen = []
        channel.subscribe(lambda snap: seen.append(snap.fraction))
        SegmentDownloader(FakeSegmentClient(), max_parallel=3).download(
            make_segments(10), None, tmp_path, channel, channel.span(0.0, 1.0)
        )
        assert seen == sorted(seen)
        assert channel.fraction == 1.0

    def test_files_addressed_by_index(self, tmp_path):
        segments = make_segments(5)
        _, paths = SegmentDownloader(FakeSegmentClient()).download(segments, None, tmp_path, ProgressChannel())
        assert [p.name for p in paths] == [f"{i:06d}.seg" for i in range(5)]
        assert paths[3].read_bytes() == segments[3].uri.encode()

    def test_bounded_parallelism(self, tmp_path):
        segments = make_segments(24)
        client = FakeSegmentClient(delays={s.uri: 0.02 for s in segments})
        SegmentDownloader(client, max_parallel=8).download(segments, None, tmp_path, ProgressChannel())
        assert 1 <= client.max_in_flight <= 8
        assert len(client.requested) == 24

    def test_cancelled_before_start_issues_no_requests(self, tmp_path):
        client = FakeSegmentClient()
        channel = ProgressChannel()
        channel.cancel()
        downloader = SegmentDownloader(client)
        with pytest.raises(Cancelled):
            downloader.download(make_segments(10), InitSegmentReference(BASE + "init.mp4"), tmp_path, channel)
        assert client.requested == []
        assert downloader.job.cancelled

    def test_cancel_between_batches(self, tmp_path):
        channel = ProgressChannel()
        client = FakeSegmentClient()
        reported = []

        def on_progress(fraction):
            reported.append(fraction)
            channel.cancel()

        with pytest.raises(Cancelled):
            SegmentDownloader(client, max_parallel=4).download(make_segments(12), None, tmp_path, channel, on_progress)
        assert len(client.requested) == 4
        assert reported == [pytest.approx(1 / 3)]

    def test_single_404_fails_job(self, tmp_path):
        segments = make_segments(20)
        client = FakeSegmentClient(statuses={segments[13].uri: 404})
        with pytest.raises(SegmentFetchFailed) as exc:
            SegmentDownloader(client).download(segments, None, tmp_path, ProgressChannel())
        assert (exc.value.index, exc.value.status) == (13, 404)
        # the third batch is never started
        assert len(client.requested) == 16

    def test_lowest_failing_index_reported(self, tmp_path):
        segments = make_segments(8)
        client = FakeSegmentClient(statuses={segments[6].uri: 500, segments[2].uri: 403})
        with pytest.raises(SegmentFetchFailed) as exc:
            SegmentDownloader(client).download(segments, None, tmp_path, ProgressChannel())
        assert (exc.value.index, exc.value.status) == (2, 403)

    def test_transport_error(self, tmp_path):
        segments = make_segments(3)
        client = FakeSegmentClient(errors={segments[1].uri: requests.ConnectionError("reset")})
        with pytest.raises(SegmentFetchFailed) as exc:
            SegmentDownloader(client).download(segments, None, tmp_path, ProgressChannel())
        assert (exc.value.index, exc.value.status) == (1, None)

    def test_init_segment_first(self, tmp_path):
        init = InitSegmentReference(BASE + "init.mp4")
        client = FakeSegmentClient(bodies={init.uri: b"INIT"})
        init_path, _ = SegmentDownloader(client).download(make_segments(3, "m4s"), init, tmp_path, ProgressChannel())
        assert client.requested[0] == init.uri
        assert init_path.read_bytes() == b"INIT"

    def test_init_segment_failure(self, tmp_path):
        init = InitSegmentReference(BASE + "init.mp4")
        client = FakeSegmentClient(statuses={init.uri: 404})
        with pytest.raises(SegmentFetchFailed) as exc:
            SegmentDownloader(client).download(make_segments(3), init, tmp_path, ProgressChannel())
        assert exc.value.index is None
        assert exc.value.status == 404
        assert client.requested == [init.uri]

    def test_invalid_parallelism(self):
        with pytest.raises(ValueError):
            SegmentDownloader(FakeSegmentClient(), max_parallel=0)


class TestDownloadJob:
    def test_advance_bounded(self, tmp_path):
        job = DownloadJob(total_segments=3, output_directory=tmp_path)
        job.advance(2)
        assert job.fraction == pytest.approx(2 / 3)
        with pytest.raises(ValueError):
            job.advance(2)
        assert job.completed_count == 2


# =============================================================================
# Merger
# =============================================================================


def write_parts(tmp_path, parts):
    paths = []
    for i, data in enumerate(parts):
        p = tmp_path / f"{i:06d}.seg"
        p.write_bytes(data)
        paths.append(p)
    return paths


class TestMergeSegments:
    def test_init_then_segments(self, tmp_path):
        init = tmp_path / "init.seg"
        init.write_bytes(b"A")
        paths = write_parts(tmp_path, [b"B0", b"B1", b"B2"])
        out = merge_segments(init, paths, tmp_path / "out.mp4")
        assert out.read_bytes() == b"AB0B1B2"

    def test_order_independent_of_completion(self, tmp_path):
        segments = make_segments(3, "m4s")
        init = InitSegmentReference(BASE + "init.mp4")
        client = FakeSegmentClient(
            bodies={init.uri: b"A", segments[0].uri: b"B0", segments[1].uri: b"B1", segments[2].uri: b"B2"},
            # seg0 finishes last
            delays={segments[0].uri: 0.05, segments[1].uri: 0.02, segments[2].uri: 0.001},
        )
        init_path, paths = SegmentDownloader(client).download(segments, init, tmp_path, ProgressChannel())
        out = merge_segments(init_path, paths, tmp_path / "out.mp4")
        assert out.read_bytes() == b"AB0B1B2"

    def test_idempotent(self, tmp_path):
        paths = write_parts(tmp_path, [b"x" * 100, b"y" * 50])
        out = tmp_path / "out.ts"
        first = merge_segments(None, paths, out).read_bytes()
        out.unlink()
        assert merge_segments(None, paths, out).read_bytes() == first

    def test_cancel_between_writes(self, tmp_path):
        paths = write_parts(tmp_path, [b"1", b"2"])
        channel = ProgressChannel()
        channel.cancel()
        with pytest.raises(Cancelled):
            merge_segments(None, paths, tmp_path / "out.ts", channel)

    def test_reports_progress(self, tmp_path):
        paths = write_parts(tmp_path, [b"1", b"2", b"3", b"4"])
        reported = []
        merge_segments(None, paths, tmp_path / "out.ts", on_progress=reported.append)
        assert reported == [0.25, 0.5, 0.75, 1.0]


@pytest.mark.parametrize(
    "has_init,first,expected",
    [
        (True, BASE + "seg0.ts", ".mp4"),
        (False, BASE + "seg0.m4s", ".mp4"),
        (False, BASE + "SEG0.M4S?sig=1", ".mp4"),
        (False, BASE + "seg0.ts", ".ts"),
        (False, BASE + "chunk_0.aac", ".ts"),
        (False, None, ".ts"),
    ],
)
def test_infer_output_extension(has_init, first, expected):
    assert infer_output_extension(has_init, first) == expected


# =============================================================================
# HTTP client
# =============================================================================


def fake_response(status, chunks=()):
    resp = MagicMock()
    resp.status_code = status
    resp.iter_content.return_value = list(chunks)
    resp.__enter__.return_value = resp
    return resp


class TestHttpClient:
    def test_download_writes_body(self, tmp_path):
        session = MagicMock()
        session.get.return_value = fake_response(200, [b"ab", b"", b"cd"])
        dest = tmp_path / "000000.seg"
        assert HttpClient(session=session).download("u", dest, 60) == 200
        assert dest.read_bytes() == b"abcd"
        assert not (tmp_path / "000000.seg.part").exists()
        session.get.assert_called_once_with("u", timeout=60, stream=True)

    def test_download_non_2xx_writes_nothing(self, tmp_path):
        session = MagicMock()
        session.get.return_value = fake_response(404, [b"not found"])
        dest = tmp_path / "000000.seg"
        assert HttpClient(session=session).download("u", dest, 60) == 404
        assert not dest.exists()

    def test_download_stops_when_asked(self, tmp_path):
        session = MagicMock()
        session.get.return_value = fake_response(200, [b"ab", b"cd"])
        with pytest.raises(Cancelled):
            HttpClient(session=session).download("u", tmp_path / "s.seg", 60, should_stop=lambda: True)
        assert not (tmp_path / "s.seg").exists()

    def test_get(self):
        session = MagicMock()
        session.get.return_value.status_code = 200
        session.get.return_value.content = b"#EXTM3U"
        assert HttpClient(session=session).get("u", 30) == (200, b"#EXTM3U")


def test_build_headers():
    headers = build_headers("UA/1.0", "https://site.example/", ["X-Token: abc", "broken"])
    assert headers["User-Agent"] == "UA/1.0"
    assert headers["Referer"] == "https://site.example/"
    assert headers["Origin"] == "https://site.example"
    assert headers["X-Token"] == "abc"
    assert "broken" not in headers

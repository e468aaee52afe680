import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests

from hlsgrab.errors import PlaylistFetchFailed, PlaylistHTTPError, PlaylistNotUTF8


log = logging.getLogger(__name__)

STREAM_INF = "#EXT-X-STREAM-INF"
MAP_TAG = "#EXT-X-MAP:"
KEY_TAG = "#EXT-X-KEY"
EXTINF = "#EXTINF:"
MANIFEST_EXT = ".m3u8"
HD_MARKER = "hd.m3u8"

_MAP_URI = re.compile(r'URI="([^"]*)"')


class PlaylistKind(str, Enum):
    MASTER = "master"
    MEDIA = "media"


@dataclass(frozen=True)
class VariantReference:
    uri: str

    @property
    def is_preferred_hd(self) -> bool:
        return HD_MARKER in self.uri.lower()

    def sort_key(self) -> Tuple[bool, str]:
        # False sorts first, so HD variants lead
        return (not self.is_preferred_hd, self.uri)


@dataclass(frozen=True)
class SegmentReference:
    index: int
    uri: str


@dataclass(frozen=True)
class InitSegmentReference:
    uri: str


@dataclass(frozen=True)
class PlaylistDocument:
    kind: PlaylistKind
    base_uri: str
    lines: Tuple[str, ...]

    @property
    def is_master(self) -> bool:
        return self.kind is PlaylistKind.MASTER

    def variants(self) -> List[VariantReference]:
        """Collect the first URI line following each stream-variant marker."""
        variants: List[VariantReference] = []
        i = 0
        while i < len(self.lines):
            if self.lines[i].startswith(STREAM_INF):
                j = i + 1
                while j < len(self.lines) and self.lines[j].startswith("#"):
                    if self.lines[j].startswith(STREAM_INF):
                        break
                    j += 1
                if j < len(self.lines) and not self.lines[j].startswith("#"):
                    variants.append(VariantReference(self.lines[j]))
                    i = j + 1
                    continue
                i = j
            else:
                i += 1
        return variants

    def segments(self) -> List[SegmentReference]:
        segments: List[SegmentReference] = []
        for line in self.lines:
            if line.startswith("#") or MANIFEST_EXT in line.lower():
                continue
            uri = resolve_uri(line, self.base_uri)
            if uri is None:
                log.debug("Skipping unresolvable segment line %r", line)
                continue
            segments.append(SegmentReference(len(segments), uri))
        return segments

    def init_segment(self) -> Optional[InitSegmentReference]:
        for line in self.lines:
            if not line.startswith(MAP_TAG):
                continue
            m = _MAP_URI.search(line)
            if not m:
                continue
            uri = resolve_uri(m.group(1), self.base_uri)
            if uri:
                return InitSegmentReference(uri)
        return None

    @property
    def total_duration(self) -> float:
        total = 0.0
        for line in self.lines:
            if line.startswith(EXTINF):
                value = line[len(EXTINF):].split(",", 1)[0].strip()
                try:
                    total += float(value)
                except ValueError:
                    continue
        return total

    @property
    def is_encrypted(self) -> bool:
        return any(line.startswith(KEY_TAG) and "METHOD=NONE" not in line for line in self.lines)


def split_lines(text: str) -> Tuple[str, ...]:
    return tuple(line.strip() for line in text.splitlines() if line.strip())


def parse_playlist(text: str, base_uri: str) -> PlaylistDocument:
    lines = split_lines(text)
    if any(line.startswith(STREAM_INF) for line in lines):
        kind = PlaylistKind.MASTER
    else:
        kind = PlaylistKind.MEDIA
    return PlaylistDocument(kind, base_uri, lines)


def resolve_uri(raw_path: str, base_uri: str) -> Optional[str]:
    """Turn a playlist line into an absolute URI.

    Rules are tried in order: already absolute, scheme-relative (``//host``),
    host-absolute (``/path``), then relative to the base URI's directory.
    """
    path = raw_path.strip()
    if not path:
        return None

    if urlsplit(path).scheme:
        return path

    base = urlsplit(base_uri)
    if path.startswith("//"):
        if not base.scheme:
            return None
        return f"{base.scheme}:{path}"

    if path.startswith("/"):
        if not base.scheme or not base.hostname:
            return None
        # userinfo is not carried over
        netloc = base.netloc.rpartition("@")[2]
        parts = urlsplit(path)
        return urlunsplit((base.scheme, netloc, parts.path, parts.query, parts.fragment))

    resolved = urljoin(base_uri, path)
    if not urlsplit(resolved).scheme:
        return None
    return resolved


def variant_candidates(document: PlaylistDocument) -> Iterator[str]:
    """Yield media playlist URIs to probe, best candidate first."""
    variants = document.variants() if document.is_master else []
    if not variants:
        yield document.base_uri
        return
    for variant in sorted(variants, key=VariantReference.sort_key):
        uri = resolve_uri(variant.uri, document.base_uri)
        if uri is None:
            log.warning("Skipping unresolvable variant %r", variant.uri)
            continue
        yield uri


def fetch_playlist_text(client, uri: str, timeout: float) -> str:
    try:
        status, body = client.get(uri, timeout)
    except requests.RequestException as e:
        raise PlaylistFetchFailed(uri, reason=str(e)) from e
    if not 200 <= status <= 299:
        raise PlaylistHTTPError(uri, status)
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise PlaylistNotUTF8(uri) from e

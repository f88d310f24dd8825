# Copyright (C) 2025 grodz
#
# This file is part of Cadence.
#
# Cadence is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Media Provider Strategies

Each strategy is one way of getting metadata and a playable stream for a video
url. The resolver (core/resolver.py) only relies on the two-method contract:

    try_init(url)                     -> StrategyResult   (or raises)
    try_fetch(url, force_url, cache)  -> FetchResult      (or raises)

Strategies tag the raw provider response they return with their ``kind`` so a
cached response is only ever reused by a strategy that understands its shape.

Default order:
    0. yt-dlp, default player client
    1. yt-dlp, android player client
    2. Invidious API (fallback)
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp
import yt_dlp

logger = logging.getLogger(__name__)

from core.track import TrackMetadata


# Suppress yt-dlp's "please report this issue" footer on extraction errors
yt_dlp.utils.bug_reports_message = lambda *args, **kwargs: ''

_VIDEO_ID_PATTERN = re.compile(
    r'(?:youtube\.com/(?:watch\?(?:.*&)?v=|embed/|shorts/|live/|v/)|youtu\.be/)([A-Za-z0-9_-]{11})'
)
_PLAYLIST_ID_PATTERN = re.compile(r'[?&]list=([A-Za-z0-9_-]+)')


class CacheKind(str, Enum):
    """Tag for which provider response shape a StrategyCache holds."""
    YTDLP = "ytdlp"
    INVIDIOUS = "invidious"


@dataclass(frozen=True)
class StrategyCache:
    """Raw provider response tagged with the shape it has."""
    kind: CacheKind
    data: Dict[str, Any]


@dataclass
class StrategyResult:
    """Result of a metadata-only lookup."""
    data: TrackMetadata
    cache: StrategyCache


@dataclass
class StreamInfo:
    """
    Everything the voice transport needs to open a stream.

    ``stream_type`` is "url" for a direct provider url the transport opens
    itself, "proxied" when the url is served through the strategy's own host,
    and "hls" for a segmented live manifest.
    """
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    is_live: bool = False
    stream_type: str = "url"


@dataclass
class FetchResult:
    """Result of a playback lookup."""
    stream: StreamInfo
    info: TrackMetadata
    related: List[Dict[str, Any]] = field(default_factory=list)
    cache: Optional[StrategyCache] = None


def extract_video_id(url: str) -> Optional[str]:
    """Return the 11-character YouTube video id in a url, or None."""
    match = _VIDEO_ID_PATTERN.search(url or "")
    return match.group(1) if match else None


def extract_playlist_id(url: str) -> Optional[str]:
    match = _PLAYLIST_ID_PATTERN.search(url or "")
    return match.group(1) if match else None


def is_youtube_url(url: str) -> bool:
    return extract_video_id(url) is not None


def is_playlist_url(url: str) -> bool:
    """
    Check whether a url points at a playlist rather than a single video.

    "watch?v=...&list=..." links are treated as the single video.
    """
    return (
        extract_playlist_id(url) is not None
        and "v=" not in url
        and "/channel/" not in url
    )


def canonical_video_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


class Strategy:
    """Base class for media provider strategies."""

    kind: CacheKind
    provides_related = False

    def __init__(self, name: str):
        self.name = name

    async def try_init(self, url: str) -> StrategyResult:
        raise NotImplementedError

    async def try_fetch(self, url: str, force_url: bool = False,
                        cache: Optional[StrategyCache] = None) -> FetchResult:
        raise NotImplementedError

    def owns(self, cache: Optional[StrategyCache]) -> bool:
        """True if ``cache`` was produced by a strategy of this kind."""
        return cache is not None and cache.kind == self.kind

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name})"


# =============================================================================
# yt-dlp
# =============================================================================

def ytdlp_info_to_metadata(info: Dict[str, Any]) -> TrackMetadata:
    """Normalize a yt-dlp info dict."""
    is_live = bool(info.get("is_live")) or info.get("live_status") in ("is_live", "is_upcoming")
    return TrackMetadata(
        title=info.get("title") or "",
        description=info.get("description") or "",
        length=float(info.get("duration") or 0),
        channel=info.get("channel") or info.get("uploader") or "",
        channel_url=info.get("channel_url") or info.get("uploader_url") or "",
        thumbnail=info.get("thumbnail") or "",
        is_live=is_live,
    )


class YtDlpStrategy(Strategy):
    """
    Extract with the yt-dlp library (runs in a worker thread).

    ``player_client`` selects an alternative YouTube client, which is often
    still served when the default web client is throttled or blocked.

    yt-dlp does not expose related videos. With ``related_from`` set, they are
    taken from that Invidious instance's recommendations.
    """

    kind = CacheKind.YTDLP

    def __init__(self, name: str = "ytdlp", player_client: Optional[str] = None,
                 related_from: Optional["InvidiousStrategy"] = None):
        super().__init__(name)
        self.related_from = related_from
        self.provides_related = related_from is not None
        self._opts = {
            "format": "bestaudio/best",
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "skip_download": True,
            # Scheduled broadcasts have no formats yet; still return their metadata
            "ignore_no_formats_error": True,
            "source_address": "0.0.0.0",
        }
        if player_client:
            self._opts["extractor_args"] = {"youtube": {"player_client": [player_client]}}

    async def _related(self, url: str) -> List[Dict[str, Any]]:
        if self.related_from is None:
            return []
        try:
            return await self.related_from.related(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"{self.name}: no related videos for {url}: {e}")
            return []

    def _extract(self, url: str) -> Dict[str, Any]:
        with yt_dlp.YoutubeDL(self._opts) as ydl:
            info = ydl.extract_info(url, download=False)
        if not info:
            raise yt_dlp.utils.DownloadError(f"no info returned for {url}")
        if "entries" in info:
            info = next((e for e in info["entries"] if e), None)
            if not info:
                raise yt_dlp.utils.DownloadError(f"no playable entry in {url}")
        return info

    async def try_init(self, url: str) -> StrategyResult:
        info = await asyncio.to_thread(self._extract, url)
        return StrategyResult(
            data=ytdlp_info_to_metadata(info),
            cache=StrategyCache(self.kind, info),
        )

    async def try_fetch(self, url: str, force_url: bool = False,
                        cache: Optional[StrategyCache] = None) -> FetchResult:
        if self.owns(cache):
            info = cache.data
        else:
            info = await asyncio.to_thread(self._extract, url)

        metadata = ytdlp_info_to_metadata(info)
        headers = dict(info.get("http_headers") or {})

        if info.get("live_status") == "is_upcoming":
            raise ValueError("broadcast has not started yet")

        if metadata.is_live and info.get("manifest_url"):
            stream = StreamInfo(info["manifest_url"], headers, is_live=True, stream_type="hls")
        elif info.get("url"):
            stream = StreamInfo(info["url"], headers, is_live=metadata.is_live, stream_type="url")
        else:
            raise ValueError("yt-dlp selected no playable format")

        return FetchResult(
            stream=stream,
            info=metadata,
            related=await self._related(url),
            cache=StrategyCache(self.kind, info),
        )


async def extract_playlist(url: str, limit: int) -> Dict[str, Any]:
    """
    Flat-extract a playlist: returns its title and entry stubs without
    resolving each video.
    """
    opts = {
        "quiet": True,
        "no_warnings": True,
        "extract_flat": "in_playlist",
        "playlistend": max(limit, 0),
        "skip_download": True,
    }

    def _extract():
        with yt_dlp.YoutubeDL(opts) as ydl:
            return ydl.extract_info(url, download=False)

    info = await asyncio.to_thread(_extract)
    if not info or "entries" not in info:
        raise ValueError(f"{url} is not a playlist")
    return {
        "title": info.get("title") or "",
        "url": info.get("webpage_url") or url,
        "thumbnail": (info.get("thumbnails") or [{}])[-1].get("url", ""),
        "count": info.get("playlist_count") or 0,
        "entries": [entry for entry in info["entries"] if entry][:limit],
    }


def playlist_entry_to_export(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize one flat playlist entry to the portable entry layout."""
    video_id = entry.get("id")
    if not video_id:
        raise ValueError("playlist entry has no video id")
    is_live = entry.get("live_status") == "is_live"
    thumbnails = entry.get("thumbnails") or [{}]
    return {
        "url": canonical_video_url(video_id),
        "title": entry.get("title") or "",
        "description": "",
        "length": None if is_live else float(entry.get("duration") or 0),
        "channel": entry.get("channel") or entry.get("uploader") or "",
        "channelUrl": entry.get("channel_url") or "",
        "thumbnail": thumbnails[0].get("url", ""),
        "isLive": is_live,
    }


# =============================================================================
# Invidious
# =============================================================================

def invidious_to_metadata(data: Dict[str, Any], instance: str = "") -> TrackMetadata:
    """Normalize an Invidious /api/v1/videos response."""
    thumbnails = data.get("videoThumbnails") or [{}]
    author_url = data.get("authorUrl") or ""
    if author_url.startswith("/"):
        author_url = "https://www.youtube.com" + author_url
    return TrackMetadata(
        title=data.get("title") or "",
        description=data.get("description") or "",
        length=float(data.get("lengthSeconds") or 0),
        channel=data.get("author") or "",
        channel_url=author_url,
        thumbnail=thumbnails[0].get("url", ""),
        is_live=bool(data.get("liveNow")) or bool(data.get("isUpcoming")),
    )


def invidious_related(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Convert an Invidious ``recommendedVideos`` list to portable entry dicts."""
    return [
        {
            "url": canonical_video_url(video["videoId"]),
            "title": video.get("title") or "",
            "description": "",
            "length": float(video.get("lengthSeconds") or 0),
            "channel": video.get("author") or "",
            "channelUrl": "",
            "thumbnail": ((video.get("videoThumbnails") or [{}])[0]).get("url", ""),
            "isLive": False,
        }
        for video in data.get("recommendedVideos") or []
        if video.get("videoId")
    ]


class InvidiousStrategy(Strategy):
    """
    Query an Invidious instance's REST API over aiohttp.

    Without ``force_url`` the instance proxies the media (``local=true``);
    with it, the direct provider urls are returned.
    """

    kind = CacheKind.INVIDIOUS
    provides_related = True

    def __init__(self, instance: str, name: str = "invidious", timeout: float = 10.0):
        super().__init__(name)
        self.instance = instance.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_video(self, video_id: str, local: bool) -> Dict[str, Any]:
        params = {"local": "true"} if local else {}
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(f"{self.instance}/api/v1/videos/{video_id}", params=params) as resp:
                resp.raise_for_status()
                return await resp.json()

    def _video_id(self, url: str) -> str:
        video_id = extract_video_id(url)
        if not video_id:
            raise ValueError(f"not a video url: {url}")
        return video_id

    def _absolute(self, url: str) -> str:
        return self.instance + url if url.startswith("/") else url

    async def related(self, url: str) -> List[Dict[str, Any]]:
        """Recommended videos of ``url`` as portable entry dicts."""
        data = await self._get_video(self._video_id(url), local=False)
        return invidious_related(data)

    async def try_init(self, url: str) -> StrategyResult:
        data = await self._get_video(self._video_id(url), local=False)
        return StrategyResult(
            data=invidious_to_metadata(data, self.instance),
            cache=StrategyCache(self.kind, data),
        )

    async def try_fetch(self, url: str, force_url: bool = False,
                        cache: Optional[StrategyCache] = None) -> FetchResult:
        local = not force_url
        # Cached responses hold direct urls; only reuse them when direct urls were asked for
        if self.owns(cache) and not local:
            data = cache.data
        else:
            data = await self._get_video(self._video_id(url), local=local)

        metadata = invidious_to_metadata(data, self.instance)
        if data.get("isUpcoming"):
            raise ValueError("broadcast has not started yet")

        stream_type = "proxied" if local else "url"
        if metadata.is_live:
            if not data.get("hlsUrl"):
                raise ValueError("live stream without an hls manifest")
            stream = StreamInfo(self._absolute(data["hlsUrl"]), is_live=True, stream_type="hls")
        else:
            audio = [
                f for f in data.get("adaptiveFormats") or []
                if str(f.get("type", "")).startswith("audio") and f.get("url")
            ]
            if not audio:
                raise ValueError("no audio formats in response")
            best = max(audio, key=lambda f: int(f.get("bitrate") or 0))
            stream = StreamInfo(self._absolute(best["url"]), stream_type=stream_type)

        return FetchResult(
            stream=stream,
            info=metadata,
            related=invidious_related(data),
            cache=StrategyCache(self.kind, data),
        )


def default_strategies(invidious_instance: Optional[str] = None) -> List[Strategy]:
    """Build the default strategy list in priority order."""
    invidious = InvidiousStrategy(invidious_instance) if invidious_instance else None
    strategies: List[Strategy] = [
        YtDlpStrategy("ytdlp", related_from=invidious),
        YtDlpStrategy("ytdlp-android", player_client="android", related_from=invidious),
    ]
    if invidious:
        strategies.append(invidious)
    return strategies

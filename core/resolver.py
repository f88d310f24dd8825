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
Media Source Resolution

Turns a url into normalized metadata (init) and later into a stream the voice
transport can open (fetch), trying an ordered list of strategies until one works.

Key concepts:
- strategy_id: index of the strategy that last succeeded, tracked per call
- is_fallbacked: strategy_id at or above the primary threshold
- cache: raw provider response, only retained when explicitly requested
- available_after: start time of a scheduled live broadcast (None otherwise)
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

logger = logging.getLogger(__name__)

# Import from config
from config import (
    LIVE_WAIT_FLOOR, PRIMARY_STRATEGY_COUNT, RAW_AUDIO_EXTENSIONS, SECONDARY_USER_AGENT,
)

from core.strategies import (
    CacheKind, FetchResult, Strategy, StrategyCache, StrategyResult, StreamInfo,
    canonical_video_url, default_strategies, extract_video_id, is_youtube_url,
)
from core.track import SourceType, TrackMetadata


class ResolutionError(Exception):
    """Every strategy failed for a url."""


class NoPlayableUrlError(ResolutionError):
    """A strategy answered, but no playable url could be derived from its data."""


class NotUpcomingError(Exception):
    """wait_for_live() was called on a source that is not a scheduled broadcast."""


# Strategy list and primary threshold shared by every YouTubeSource
_strategies: List[Strategy] = default_strategies()
_primary_strategy_count: int = PRIMARY_STRATEGY_COUNT


def configure_strategies(strategies: Sequence[Strategy], primary_count: Optional[int] = None):
    """Replace the shared strategy list (called once at startup)."""
    global _strategies, _primary_strategy_count
    if not strategies:
        raise ValueError("at least one strategy is required")
    _strategies = list(strategies)
    if primary_count is not None:
        _primary_strategy_count = primary_count
    logger.info(
        f"Media strategies: {', '.join(s.name for s in _strategies)} "
        f"(primary: {_primary_strategy_count})"
    )


def related_available() -> bool:
    """True if some configured strategy can report related videos."""
    return any(strategy.provides_related for strategy in _strategies)


async def attempt_get_info_for_strategies(
    url: str, strategies: Optional[Sequence[Strategy]] = None
) -> Tuple[StrategyResult, int]:
    """
    Try each strategy's metadata lookup in priority order.

    Returns:
        (result, resolved) where resolved is the index of the first strategy that succeeded

    Raises:
        ResolutionError: every strategy failed
    """
    strategies = _strategies if strategies is None else strategies
    for index, strategy in enumerate(strategies):
        try:
            result = await strategy.try_init(url)
        except Exception as e:
            logger.warning(f"Strategy #{index} ({strategy.name}) failed to get info for {url}: {e}")
            continue
        logger.debug(f"Strategy #{index} ({strategy.name}) resolved info for {url}")
        return result, index
    raise ResolutionError(f"All strategies failed to get info for {url}")


async def attempt_fetch_for_strategies(
    url: str,
    force_url: bool = False,
    cache: Optional[StrategyCache] = None,
    strategies: Optional[Sequence[Strategy]] = None,
) -> Tuple[FetchResult, int]:
    """
    Try each strategy's stream lookup in priority order.

    A strategy of the same kind as ``cache`` may reuse it instead of querying again.

    Raises:
        ResolutionError: every strategy failed
    """
    strategies = _strategies if strategies is None else strategies
    for index, strategy in enumerate(strategies):
        try:
            result = await strategy.try_fetch(url, force_url=force_url, cache=cache)
        except Exception as e:
            logger.warning(f"Strategy #{index} ({strategy.name}) failed to fetch {url}: {e}")
            continue
        logger.debug(
            f"Strategy #{index} ({strategy.name}) fetched {url}"
            f"{' from cache' if strategy.owns(cache) else ''}"
        )
        return result, index
    raise ResolutionError(f"All strategies failed to fetch {url}")


def compute_live_wait(start: datetime, now: datetime) -> float:
    """Seconds to wait before polling a scheduled broadcast again."""
    return max((start - now).total_seconds(), LIVE_WAIT_FLOOR)


def detect_upcoming(cache: Optional[StrategyCache]) -> Optional[datetime]:
    """Scheduled start time if the cached response describes a not-yet-started broadcast."""
    if cache is None or not cache.data:
        return None
    data = cache.data

    if cache.kind == CacheKind.YTDLP:
        timestamp = data.get("release_timestamp")
        if data.get("live_status") == "is_upcoming" and timestamp:
            return datetime.fromtimestamp(timestamp, tz=timezone.utc)
        return None
    if cache.kind == CacheKind.INVIDIOUS:
        timestamp = data.get("premiereTimestamp")
        if data.get("isUpcoming") and not data.get("liveNow") and timestamp:
            return datetime.fromtimestamp(timestamp, tz=timezone.utc)
        return None
    raise ValueError(f"unknown cache kind: {cache.kind}")


def select_video_format(cache: Optional[StrategyCache]) -> str:
    """
    Pick a combined audio+video url out of a cached provider response.

    Raises:
        ResolutionError: nothing cached
        NoPlayableUrlError: cached data holds no usable url
    """
    if cache is None:
        raise ResolutionError("No available data found.")
    data = cache.data

    if cache.kind == CacheKind.YTDLP:
        is_live = bool(data.get("is_live")) or data.get("live_status") == "is_live"
        formats = [f for f in data.get("formats") or [] if f.get("url")]
        if is_live:
            hls = [f for f in formats if str(f.get("protocol", "")).startswith("m3u8")]
            url = data.get("manifest_url") or (hls[-1]["url"] if hls else None)
        else:
            video = [f for f in formats if f.get("vcodec") not in (None, "none")]
            best = max(video, key=lambda f: f.get("tbr") or 0, default=None)
            url = best["url"] if best else None
    elif cache.kind == CacheKind.INVIDIOUS:
        streams = [
            f for f in (data.get("formatStreams") or []) + (data.get("adaptiveFormats") or [])
            if str(f.get("type", "")).startswith("video") and f.get("url")
        ]
        if data.get("liveNow") and data.get("hlsUrl"):
            url = data["hlsUrl"]
        else:
            best = max(streams, key=lambda f: int(f.get("bitrate") or 0), default=None)
            url = best["url"] if best else data.get("hlsUrl")
    else:
        raise ValueError(f"unknown cache kind: {cache.kind}")

    if not url:
        raise NoPlayableUrlError("No url found.")
    return url


def is_available_raw_audio_url(url: str) -> bool:
    """True for http(s) urls that point straight at an audio file."""
    parsed = urlparse(url or "")
    return parsed.scheme in ("http", "https") and parsed.path.lower().endswith(RAW_AUDIO_EXTENSIONS)


class AudioSource:
    """Base for everything that can sit in a queue entry's ``source`` slot."""

    source_type: SourceType

    def __init__(self):
        self.url: str = ""
        self.metadata: Optional[TrackMetadata] = None
        self.related_videos: List[Dict[str, Any]] = []

    @property
    def title(self) -> str:
        return self.metadata.title if self.metadata else ""

    @property
    def is_cached(self) -> bool:
        return False

    @property
    def available_after(self) -> Optional[datetime]:
        return None

    async def init(self, url: str, prefetched: Optional[Dict[str, Any]] = None,
                   force_cache: bool = False) -> "AudioSource":
        raise NotImplementedError

    async def fetch(self, force_url: bool = False) -> StreamInfo:
        raise NotImplementedError

    def purge_cache(self):
        pass

    def export_data(self) -> Dict[str, Any]:
        return {"url": self.url, **self.metadata.export()}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(url={self.url})"


class CustomSource(AudioSource):
    """A direct audio-file url, played as-is."""

    source_type = SourceType.CUSTOM

    async def init(self, url, prefetched=None, force_cache=False):
        if not is_available_raw_audio_url(url):
            raise ResolutionError(f"not an audio file url: {url}")
        self.url = url
        if prefetched:
            self.metadata = TrackMetadata.from_export(prefetched)
        else:
            name = unquote(os.path.basename(urlparse(url).path)) or url
            self.metadata = TrackMetadata(title=name, description=url)
        return self

    async def fetch(self, force_url=False):
        return StreamInfo(self.url, stream_type="url")


class YouTubeSource(AudioSource):
    """
    A YouTube video resolved through the shared strategy list.

    Usage:
        source = await YouTubeSource().init(url)
        stream = await source.fetch()
    """

    source_type = SourceType.YOUTUBE

    def __init__(self, strategies: Optional[Sequence[Strategy]] = None,
                 primary_strategy_count: Optional[int] = None):
        super().__init__()
        self._strategies = strategies
        self._primary_strategy_count = primary_strategy_count
        self.strategy_id: Optional[int] = None
        self.cache: Optional[StrategyCache] = None
        self.upcoming_timestamp: Optional[datetime] = None

    @property
    def strategies(self) -> Sequence[Strategy]:
        return _strategies if self._strategies is None else self._strategies

    @property
    def is_fallbacked(self) -> bool:
        if self.strategy_id is None:
            return False
        threshold = (
            _primary_strategy_count if self._primary_strategy_count is None
            else self._primary_strategy_count
        )
        return self.strategy_id >= threshold

    @property
    def is_cached(self) -> bool:
        return self.cache is not None

    @property
    def available_after(self) -> Optional[datetime]:
        return self.upcoming_timestamp

    async def init(self, url, prefetched=None, force_cache=False):
        video_id = extract_video_id(url)
        self.url = canonical_video_url(video_id) if video_id else url

        if prefetched:
            self.metadata = TrackMetadata.from_export(prefetched)
            return self

        result, resolved = await attempt_get_info_for_strategies(self.url, self.strategies)
        self.strategy_id = resolved
        if self.is_fallbacked:
            logger.warning(f"Resolved {self.url} through fallback strategy #{resolved}")

        self.upcoming_timestamp = detect_upcoming(result.cache)
        if force_cache:
            self.cache = result.cache
        self.metadata = result.data
        return self

    async def fetch(self, force_url=False):
        result, resolved = await attempt_fetch_for_strategies(
            self.url, force_url, self.cache, self.strategies
        )
        self.strategy_id = resolved
        self.related_videos = list(result.related)
        self.metadata = result.info
        if force_url:
            logger.info("Returning a url instead of stream")
        if result.cache is not None:
            self.cache = result.cache
        return result.stream

    def purge_cache(self):
        self.cache = None

    def fetch_video(self) -> StreamInfo:
        """Combined audio+video url from the cached response, for video-capable players."""
        url = select_video_format(self.cache)
        return StreamInfo(
            url,
            headers={"User-Agent": SECONDARY_USER_AGENT},
            is_live=bool(self.metadata and self.metadata.is_live),
        )

    async def wait_for_live(self, abort: asyncio.Event, tick: Callable[[], Any]) -> None:
        """
        Poll a scheduled broadcast until it starts or ``abort`` is set.

        Raises:
            NotUpcomingError: the source is not a scheduled broadcast
        """
        if not self.available_after:
            raise NotUpcomingError("This is not a live stream")

        while not abort.is_set():
            tick()
            start = self.available_after
            if not start:
                return

            wait_time = compute_live_wait(start, datetime.now(timezone.utc))
            logger.info(f"Retrying {self.url} after {wait_time:.0f}s")

            timer = asyncio.ensure_future(asyncio.sleep(wait_time))
            aborted = asyncio.ensure_future(abort.wait())
            _, pending = await asyncio.wait({timer, aborted}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            if abort.is_set():
                return

            tick()
            self.purge_cache()
            await self.init(self.url)


def create_source(url: str, source_type: Optional[SourceType] = None) -> AudioSource:
    """
    Pick the source class for a url.

    Raises:
        ValueError: url is neither a YouTube video nor a direct audio file
    """
    if source_type is not None:
        source_type = SourceType(source_type)
    elif is_youtube_url(url):
        source_type = SourceType.YOUTUBE
    elif is_available_raw_audio_url(url):
        source_type = SourceType.CUSTOM
    else:
        raise ValueError(f"unsupported url: {url}")

    if source_type == SourceType.YOUTUBE:
        return YouTubeSource()
    return CustomSource()

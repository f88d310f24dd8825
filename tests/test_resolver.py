"""Tests for media source resolution (core/resolver.py)."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp

import pytest

from conftest import FakeStrategy, yt_url
from core.resolver import (
    CustomSource,
    NoPlayableUrlError,
    NotUpcomingError,
    ResolutionError,
    YouTubeSource,
    attempt_fetch_for_strategies,
    attempt_get_info_for_strategies,
    compute_live_wait,
    create_source,
    detect_upcoming,
    is_available_raw_audio_url,
    related_available,
    select_video_format,
)
from core.strategies import (
    CacheKind,
    InvidiousStrategy,
    StrategyCache,
    YtDlpStrategy,
    default_strategies,
    invidious_related,
    is_playlist_url,
)

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _chain(*failures: bool):
    calls = []
    return [FakeStrategy(f"s{i}", fail=f, calls=calls) for i, f in enumerate(failures)], calls


# ---------------------------------------------------------------------------
# Strategy fallback
# ---------------------------------------------------------------------------

class TestStrategyFallback:
    @pytest.mark.asyncio
    async def test_returns_index_of_first_success(self):
        strategies, calls = _chain(True, True, False)
        result, index = await attempt_get_info_for_strategies(yt_url(1), strategies)
        assert index == 2
        assert result.data.title == "from s2"
        assert calls == [("init", "s0"), ("init", "s1"), ("init", "s2")]

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self):
        strategies, calls = _chain(False, False)
        _, index = await attempt_get_info_for_strategies(yt_url(1), strategies)
        assert index == 0
        assert calls == [("init", "s0")]

    @pytest.mark.asyncio
    async def test_all_failing_raises(self):
        strategies, _ = _chain(True, True, True)
        with pytest.raises(ResolutionError):
            await attempt_get_info_for_strategies(yt_url(1), strategies)
        with pytest.raises(ResolutionError):
            await attempt_fetch_for_strategies(yt_url(1), strategies=strategies)

    @pytest.mark.asyncio
    async def test_fetch_hands_the_cache_to_strategies(self):
        strategies, _ = _chain(False)
        cache = StrategyCache(CacheKind.YTDLP, {"title": "cached"})
        await attempt_fetch_for_strategies(yt_url(1), cache=cache, strategies=strategies)
        assert strategies[0].fetch_caches == [cache]


# ---------------------------------------------------------------------------
# YouTubeSource
# ---------------------------------------------------------------------------

class TestYouTubeSource:
    @pytest.mark.asyncio
    async def test_fallback_flag_follows_threshold(self):
        strategies, _ = _chain(True, True, False)
        source = await YouTubeSource(strategies, primary_strategy_count=2).init(yt_url(1))
        assert source.strategy_id == 2
        assert source.is_fallbacked is True

        strategies, _ = _chain(True, True, False)
        source = await YouTubeSource(strategies, primary_strategy_count=3).init(yt_url(1))
        assert source.is_fallbacked is False

    @pytest.mark.asyncio
    async def test_init_canonicalizes_the_url(self):
        strategies, _ = _chain(False)
        source = await YouTubeSource(strategies).init("https://youtu.be/dQw4w9WgXcQ?t=42")
        assert source.url == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

    @pytest.mark.asyncio
    async def test_prefetched_data_skips_the_network(self):
        strategies, calls = _chain(False)
        source = await YouTubeSource(strategies).init(yt_url(1), prefetched={"title": "Known", "length": 60})
        assert source.title == "Known"
        assert calls == []
        assert source.strategy_id is None
        assert source.is_fallbacked is False

    @pytest.mark.asyncio
    async def test_cache_kept_only_on_request(self):
        strategies, _ = _chain(False)
        source = await YouTubeSource(strategies).init(yt_url(1))
        assert source.is_cached is False

        source = await YouTubeSource(strategies).init(yt_url(1), force_cache=True)
        assert source.is_cached is True
        source.purge_cache()
        assert source.is_cached is False

    @pytest.mark.asyncio
    async def test_fetch_records_strategy_and_related(self):
        strategies, _ = _chain(True, False)
        source = YouTubeSource(strategies, primary_strategy_count=1)
        source.url = yt_url(1)
        stream = await source.fetch()
        assert stream.url == "https://media.test/s1"
        assert source.strategy_id == 1
        assert source.is_fallbacked is True
        assert source.related_videos[0]["url"] == yt_url(999)
        assert source.title == "from s1"

    @pytest.mark.asyncio
    async def test_upcoming_broadcast_sets_available_after(self):
        start = NOW + timedelta(hours=1)
        strategy = FakeStrategy("s0", cache_data={
            "live_status": "is_upcoming", "release_timestamp": start.timestamp(),
        })
        source = await YouTubeSource([strategy]).init(yt_url(1))
        assert source.available_after == start


# ---------------------------------------------------------------------------
# Live waiting
# ---------------------------------------------------------------------------

class TestLiveWait:
    def test_wait_has_a_floor(self):
        assert compute_live_wait(NOW + timedelta(seconds=5), NOW) == 20
        assert compute_live_wait(NOW - timedelta(minutes=5), NOW) == 20

    def test_wait_until_far_start(self):
        assert compute_live_wait(NOW + timedelta(seconds=120), NOW) == 120

    @pytest.mark.asyncio
    async def test_not_upcoming_raises(self):
        source = YouTubeSource([FakeStrategy("s0")])
        with pytest.raises(NotUpcomingError):
            await source.wait_for_live(asyncio.Event(), lambda: None)

    @pytest.mark.asyncio
    async def test_abort_stops_waiting_without_refetching(self):
        strategy = FakeStrategy("s0")
        source = YouTubeSource([strategy])
        source.url = yt_url(1)
        source.upcoming_timestamp = datetime.now(timezone.utc) + timedelta(hours=1)
        abort = asyncio.Event()
        tick = MagicMock()

        asyncio.get_running_loop().call_later(0.01, abort.set)
        await asyncio.wait_for(source.wait_for_live(abort, tick), timeout=2)

        assert tick.call_count == 1
        assert strategy.calls == []

    @pytest.mark.asyncio
    async def test_returns_once_the_broadcast_started(self):
        strategy = FakeStrategy("s0", cache_data={"live_status": "is_live"})
        source = YouTubeSource([strategy])
        source.url = yt_url(1)
        source.upcoming_timestamp = datetime.now(timezone.utc) + timedelta(hours=1)

        with patch("core.resolver.compute_live_wait", return_value=0):
            await asyncio.wait_for(source.wait_for_live(asyncio.Event(), lambda: None), timeout=2)

        assert source.available_after is None
        assert strategy.calls == [("init", "s0")]


# ---------------------------------------------------------------------------
# Cache inspection
# ---------------------------------------------------------------------------

class TestDetectUpcoming:
    def test_ytdlp(self):
        cache = StrategyCache(CacheKind.YTDLP, {"live_status": "is_upcoming", "release_timestamp": NOW.timestamp()})
        assert detect_upcoming(cache) == NOW

    def test_invidious(self):
        cache = StrategyCache(CacheKind.INVIDIOUS, {"isUpcoming": True, "premiereTimestamp": int(NOW.timestamp())})
        assert detect_upcoming(cache) == NOW

    def test_regular_video(self):
        assert detect_upcoming(StrategyCache(CacheKind.YTDLP, {"live_status": "not_live"})) is None
        assert detect_upcoming(None) is None


class TestSelectVideoFormat:
    def test_without_cache(self):
        with pytest.raises(ResolutionError, match="No available data found."):
            select_video_format(None)

    def test_ytdlp_picks_highest_bitrate_video(self):
        cache = StrategyCache(CacheKind.YTDLP, {"formats": [
            {"url": "https://v.test/audio", "vcodec": "none", "tbr": 500},
            {"url": "https://v.test/360", "vcodec": "avc1", "tbr": 300},
            {"url": "https://v.test/720", "vcodec": "avc1", "tbr": 900},
        ]})
        assert select_video_format(cache) == "https://v.test/720"

    def test_ytdlp_live_prefers_manifest(self):
        cache = StrategyCache(CacheKind.YTDLP, {
            "is_live": True, "manifest_url": "https://v.test/live.m3u8",
            "formats": [{"url": "https://v.test/720", "vcodec": "avc1", "tbr": 900}],
        })
        assert select_video_format(cache) == "https://v.test/live.m3u8"

    def test_invidious_live_uses_hls(self):
        cache = StrategyCache(CacheKind.INVIDIOUS, {"liveNow": True, "hlsUrl": "https://inv.test/hls"})
        assert select_video_format(cache) == "https://inv.test/hls"

    def test_invidious_picks_highest_bitrate_video(self):
        cache = StrategyCache(CacheKind.INVIDIOUS, {
            "formatStreams": [{"type": "video/mp4", "url": "https://inv.test/360", "bitrate": "400"}],
            "adaptiveFormats": [
                {"type": "video/webm", "url": "https://inv.test/1080", "bitrate": "2500"},
                {"type": "audio/webm", "url": "https://inv.test/audio", "bitrate": "9000"},
            ],
        })
        assert select_video_format(cache) == "https://inv.test/1080"

    def test_no_usable_url(self):
        with pytest.raises(NoPlayableUrlError):
            select_video_format(StrategyCache(CacheKind.YTDLP, {"formats": []}))

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            select_video_format(StrategyCache("piped", {}))


# ---------------------------------------------------------------------------
# Url classification
# ---------------------------------------------------------------------------

class TestUrlClassification:
    def test_raw_audio_urls(self):
        assert is_available_raw_audio_url("https://cdn.test/song.mp3")
        assert is_available_raw_audio_url("https://cdn.test/song.OGG?token=1")
        assert not is_available_raw_audio_url("https://cdn.test/page.html")
        assert not is_available_raw_audio_url("ftp://cdn.test/song.mp3")

    def test_playlist_urls(self):
        assert is_playlist_url("https://www.youtube.com/playlist?list=PL123")
        assert not is_playlist_url("https://www.youtube.com/watch?v=dQw4w9WgXcQ&list=PL123")

    def test_create_source(self):
        assert isinstance(create_source(yt_url(1)), YouTubeSource)
        assert isinstance(create_source("https://cdn.test/a.mp3"), CustomSource)
        with pytest.raises(ValueError):
            create_source("https://example.com/")

    @pytest.mark.asyncio
    async def test_custom_source_title_from_file_name(self):
        source = await CustomSource().init("https://cdn.test/My%20Song.mp3")
        assert source.title == "My Song.mp3"
        stream = await source.fetch()
        assert stream.url == "https://cdn.test/My%20Song.mp3"


# ---------------------------------------------------------------------------
# Related videos
# ---------------------------------------------------------------------------

_YTDLP_INFO = {"title": "Song", "duration": 60, "url": "https://media.test/song"}


class TestRelatedVideos:
    def test_recommendations_become_portable_entries(self):
        related = invidious_related({"recommendedVideos": [
            {"videoId": "abcdefghijk", "title": "Next", "lengthSeconds": 90, "author": "Someone"},
            {"title": "no id"},
        ]})
        assert related == [{
            "url": "https://www.youtube.com/watch?v=abcdefghijk",
            "title": "Next",
            "description": "",
            "length": 90.0,
            "channel": "Someone",
            "channelUrl": "",
            "thumbnail": "",
            "isLive": False,
        }]

    @pytest.mark.asyncio
    async def test_ytdlp_borrows_recommendations(self):
        source = MagicMock()
        source.related = AsyncMock(return_value=[{"url": yt_url(7)}])
        strategy = YtDlpStrategy("ytdlp", related_from=source)

        result = await strategy.try_fetch(yt_url(1), cache=StrategyCache(CacheKind.YTDLP, dict(_YTDLP_INFO)))
        assert result.related == [{"url": yt_url(7)}]
        source.related.assert_awaited_once_with(yt_url(1))

    @pytest.mark.asyncio
    async def test_ytdlp_without_source_has_none(self):
        strategy = YtDlpStrategy("ytdlp")
        result = await strategy.try_fetch(yt_url(1), cache=StrategyCache(CacheKind.YTDLP, dict(_YTDLP_INFO)))
        assert result.related == []
        assert result.stream.url == "https://media.test/song"

    @pytest.mark.asyncio
    async def test_failed_lookup_still_plays(self):
        source = MagicMock()
        source.related = AsyncMock(side_effect=aiohttp.ClientError("instance down"))
        strategy = YtDlpStrategy("ytdlp", related_from=source)

        result = await strategy.try_fetch(yt_url(1), cache=StrategyCache(CacheKind.YTDLP, dict(_YTDLP_INFO)))
        assert result.related == []
        assert result.stream.url == "https://media.test/song"

    def test_default_strategies_share_the_instance(self):
        strategies = default_strategies("https://inv.test")
        invidious = strategies[-1]
        assert isinstance(invidious, InvidiousStrategy)
        assert all(s.related_from is invidious for s in strategies[:2])

    def test_availability_follows_configuration(self):
        with patch("core.resolver._strategies", default_strategies()):
            assert related_available() is False
        with patch("core.resolver._strategies", default_strategies("https://inv.test")):
            assert related_available() is True

"""Pytest configuration: make the repo's top-level packages importable and
provide the fakes shared by the test modules."""

from __future__ import annotations

import sys
from pathlib import Path

# The bot uses a flat layout (core/, systems/, utils/, config/ at the root)
_root = str(Path(__file__).resolve().parent.parent)
if _root not in sys.path:
    sys.path.insert(0, _root)

import pytest

from core.strategies import CacheKind, FetchResult, Strategy, StrategyCache, StrategyResult, StreamInfo
from core.track import Submitter, TrackMetadata


def yt_url(n: int) -> str:
    """A syntactically valid YouTube watch url with an 11-character id."""
    return f"https://www.youtube.com/watch?v=vid{n:08d}"


def portable_item(n: int, user_id: str = "1", **overrides) -> dict:
    """One entry of the portable queue format."""
    item = {
        "url": yt_url(n),
        "title": f"Track {n}",
        "description": "",
        "length": 180,
        "channel": "Channel",
        "channelUrl": "https://www.youtube.com/channel/abc",
        "thumbnail": "",
        "isLive": False,
        "sourceType": "youtube",
        "addedBy": {"userId": user_id, "displayName": f"user{user_id}"},
    }
    item.update(overrides)
    return item


class FakeStrategy(Strategy):
    """In-memory strategy: succeeds with canned data or fails on demand."""

    kind = CacheKind.YTDLP

    def __init__(self, name: str, fail: bool = False, cache_data: dict | None = None,
                 calls: list | None = None):
        super().__init__(name)
        self.fail = fail
        self.cache_data = cache_data if cache_data is not None else {"title": name}
        self.calls = calls if calls is not None else []
        self.fetch_caches = []

    async def try_init(self, url):
        self.calls.append(("init", self.name))
        if self.fail:
            raise RuntimeError(f"{self.name} unavailable")
        return StrategyResult(
            TrackMetadata(title=f"from {self.name}", length=200),
            StrategyCache(self.kind, dict(self.cache_data)),
        )

    async def try_fetch(self, url, force_url=False, cache=None):
        self.calls.append(("fetch", self.name))
        self.fetch_caches.append(cache)
        if self.fail:
            raise RuntimeError(f"{self.name} unavailable")
        return FetchResult(
            stream=StreamInfo(f"https://media.test/{self.name}"),
            info=TrackMetadata(title=f"from {self.name}", length=200),
            related=[{"url": yt_url(999), "title": "Related"}],
            cache=StrategyCache(self.kind, dict(self.cache_data)),
        )


@pytest.fixture
def submitter():
    return Submitter("1", "user1")


@pytest.fixture(autouse=True)
def _clear_sessions():
    """Every test starts without guild sessions."""
    from core import session as session_module
    session_module.sessions.clear()
    yield
    session_module.sessions.clear()

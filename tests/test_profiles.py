"""
tests/test_profiles.py -- Unit tests for auth/profiles.py and cache/store.py.

Coverage:
  - XML tag reading (CDATA, plain, missing)
  - GetPlayerSummaries batching (<= 100 ids per call) when an API key is set
  - Community XML fallback without a key, or for ids the API did not return
  - Cache hits skip the network; TTL expiry with an injected clock
  - Failures are swallowed: fetch_one returns None, never raises
  - Unresolved ids are remembered briefly so repeat lookups stay offline
  - The cache is bounded: a full set() purges expired keys, then the oldest
"""

from __future__ import annotations

import re

import httpx
import pytest

from auth.profiles import MISS_TTL_SECONDS, SteamProfileProvider, read_xml_tag
from cache.store import TTLCache

IDS = [f"7656119800000{n:04d}" for n in range(150)]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _xml(name: str, avatar: str) -> str:
    return f"<profile><steamID><![CDATA[{name}]]></steamID><avatarFull><![CDATA[{avatar}]]></avatarFull></profile>"


class Recorder:
    """MockTransport handler serving both Steam endpoints."""

    def __init__(self, summaries: bool = True, xml: bool = True) -> None:
        self.summaries = summaries
        self.xml = xml
        self.summary_batches: list[list[str]] = []
        self.xml_ids: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.steampowered.com":
            ids = request.url.params["steamids"].split(",")
            self.summary_batches.append(ids)
            if not self.summaries:
                return httpx.Response(403, text="forbidden")
            players = [{"steamid": i, "personaname": f"P{i[-4:]}", "avatarfull": f"https://a.test/{i}.jpg"} for i in ids]
            return httpx.Response(200, json={"response": {"players": players}})
        match = re.search(r"/profiles/(\d{17})", request.url.path)
        if match:
            self.xml_ids.append(match.group(1))
            if not self.xml:
                raise httpx.ConnectError("down", request=request)
            return httpx.Response(200, text=_xml(f"X{match.group(1)[-4:]}", "https://a.test/x.jpg"))
        return httpx.Response(404)


def _provider(recorder: Recorder, api_key: str = "", clock=None) -> tuple[SteamProfileProvider, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    if clock is None:
        return SteamProfileProvider(http, TTLCache(ttl=300), api_key=api_key), http
    misses: TTLCache = TTLCache(ttl=MISS_TTL_SECONDS, clock=clock)
    return SteamProfileProvider(http, TTLCache(ttl=300, clock=clock), api_key=api_key, misses=misses), http


class TestReadXmlTag:
    def test_cdata(self) -> None:
        assert read_xml_tag("<steamID><![CDATA[ Gabe ]]></steamID>", "steamID") == "Gabe"

    def test_plain(self) -> None:
        assert read_xml_tag("<avatarIcon> https://a.test/i.jpg </avatarIcon>", "avatarIcon") == "https://a.test/i.jpg"

    def test_missing(self) -> None:
        assert read_xml_tag("<profile></profile>", "steamID") == ""
        assert read_xml_tag("", "steamID") == ""


class TestSteamProfileProvider:
    @pytest.mark.asyncio
    async def test_summaries_are_batched_by_100(self) -> None:
        recorder = Recorder()
        provider, http = _provider(recorder, api_key="k")
        async with http:
            profiles = await provider.fetch_many(IDS)
        assert [len(b) for b in recorder.summary_batches] == [100, 50]
        assert len(profiles) == 150
        assert recorder.xml_ids == []
        assert profiles[IDS[0]].profile_url == f"https://steamcommunity.com/profiles/{IDS[0]}"

    @pytest.mark.asyncio
    async def test_without_key_uses_xml(self) -> None:
        recorder = Recorder()
        provider, http = _provider(recorder)
        async with http:
            profile = await provider.fetch_one(IDS[0])
        assert recorder.summary_batches == []
        assert profile is not None
        assert profile.display_name == f"X{IDS[0][-4:]}"
        assert profile.avatar == "https://a.test/x.jpg"

    @pytest.mark.asyncio
    async def test_api_failure_falls_back_to_xml(self) -> None:
        recorder = Recorder(summaries=False)
        provider, http = _provider(recorder, api_key="k")
        async with http:
            profiles = await provider.fetch_many(IDS[:2])
        assert set(profiles) == set(IDS[:2])
        assert recorder.xml_ids == IDS[:2]

    @pytest.mark.asyncio
    async def test_total_failure_returns_nothing(self) -> None:
        recorder = Recorder(summaries=False, xml=False)
        provider, http = _provider(recorder, api_key="k")
        async with http:
            assert await provider.fetch_one(IDS[0]) is None
            assert await provider.fetch_many(IDS[:3]) == {}

    @pytest.mark.asyncio
    async def test_invalid_and_duplicate_ids_ignored(self) -> None:
        recorder = Recorder()
        provider, http = _provider(recorder, api_key="k")
        async with http:
            profiles = await provider.fetch_many([IDS[0], IDS[0], "123", "", None])
        assert list(profiles) == [IDS[0]]
        assert recorder.summary_batches == [[IDS[0]]]

    @pytest.mark.asyncio
    async def test_cache_hit_and_expiry(self) -> None:
        clock = FakeClock()
        recorder = Recorder()
        provider, http = _provider(recorder, clock=clock)
        async with http:
            await provider.fetch_one(IDS[0])
            await provider.fetch_one(IDS[0])
            assert recorder.xml_ids == [IDS[0]]
            clock.now += 300
            await provider.fetch_one(IDS[0])
        assert recorder.xml_ids == [IDS[0], IDS[0]]

    @pytest.mark.asyncio
    async def test_miss_is_cached_briefly(self) -> None:
        """An id neither source resolves is not re-requested until the miss expires."""
        clock = FakeClock()
        recorder = Recorder(summaries=False, xml=False)
        provider, http = _provider(recorder, api_key="k", clock=clock)
        async with http:
            assert await provider.fetch_one(IDS[0]) is None
            assert await provider.fetch_one(IDS[0]) is None
            assert recorder.xml_ids == [IDS[0]]
            assert len(recorder.summary_batches) == 1

            recorder.summaries = True
            clock.now += MISS_TTL_SECONDS
            profile = await provider.fetch_one(IDS[0])
        assert profile is not None
        assert len(recorder.summary_batches) == 2

    @pytest.mark.asyncio
    async def test_miss_does_not_block_other_ids(self) -> None:
        recorder = Recorder(xml=False)
        provider, http = _provider(recorder)
        async with http:
            await provider.fetch_one(IDS[0])
            recorder.xml = True
            profiles = await provider.fetch_many(IDS[:2])
        assert list(profiles) == [IDS[1]]
        assert recorder.xml_ids == [IDS[0], IDS[1]]


class TestTTLCache:
    def test_get_set_and_expiry_boundary(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now += 9.5
        assert cache.get("k") == "v"
        clock.now += 0.5
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_purge_expired(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(ttl=10, clock=clock)
        cache.set("old", "1")
        clock.now += 5
        cache.set("new", "2")
        clock.now += 5
        assert cache.purge_expired() == 1
        assert cache.get("new") == "2"

    def test_set_purges_expired_when_full(self) -> None:
        """A full cache drops expired entries before accepting a new key."""
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(ttl=10, clock=clock, max_entries=3)
        cache.set("a", "1")
        cache.set("b", "2")
        clock.now += 10
        cache.set("c", "3")
        cache.set("d", "4")
        assert len(cache) == 2
        assert cache.get("c") == "3"
        assert cache.get("d") == "4"

    def test_set_evicts_oldest_write_when_full(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(ttl=10, clock=clock, max_entries=2)
        cache.set("a", "1")
        cache.set("b", "2")
        cache.set("a", "1b")
        cache.set("c", "3")
        assert len(cache) == 2
        assert cache.get("b") is None
        assert cache.get("a") == "1b"
        assert cache.get("c") == "3"

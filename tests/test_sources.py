import asyncio
from urllib.parse import quote

import httpx
import pytest

from conftest import FakeCache, Recorder, make_settings, sources_payload
from models import SourceResult
from resources import ApiError, CacheStatus
from sources import FETCH_FAILED, NO_SOURCES, FanOutPolicy, SourceFanOut, source_cache_key


async def no_sleep(delay):
    return None


def fan_out(handler, cache=None, settings=None):
    """Run ``operation(fanout)`` against a mocked upstream; returns (result, recorder)."""
    recorder = Recorder(handler)
    cache = cache if cache is not None else FakeCache()
    settings = settings or make_settings()

    def run(operation):
        async def main():
            async with httpx.AsyncClient(transport=recorder.transport) as client:
                return await operation(SourceFanOut(client, cache, settings, sleep=no_sleep))

        return asyncio.run(main())

    return run, recorder, cache


def by_server(responses):
    def handler(request):
        return responses[request.url.params["server"]]()

    return handler


def test_policy_caches_all_but_always_fresh_servers():
    policy = FanOutPolicy()
    assert not policy.is_cacheable("hd-1")
    assert policy.is_cacheable("hd-2")
    assert policy.is_cacheable("hd-3")
    assert not policy.is_cacheable("hd-9")
    assert policy.ttl_for(SourceResult(server="hd-2", error=NO_SOURCES)) == 7200
    assert policy.ttl_for(SourceResult(server="hd-2", sources=[])) == 172800


def test_cold_cache_fans_out_and_caches_siblings():
    run, recorder, cache = fan_out(by_server({
        "hd-1": lambda: httpx.Response(200, json=sources_payload("https://cdn.test/one.m3u8")),
        "hd-2": lambda: httpx.Response(200, json=sources_payload("https://cdn.test/two.m3u8")),
        "hd-3": lambda: httpx.Response(500, text="down"),
    }))

    result, status = run(lambda f: f.get("ep-1", "hd-2", "sub"))

    assert status == CacheStatus.MISS
    assert {r.url.params["server"] for r in recorder.requests} == {"hd-1", "hd-2", "hd-3"}

    hd2_key = source_cache_key("ep-1", "hd-2", "sub")
    hd3_key = source_cache_key("ep-1", "hd-3", "sub")
    assert cache.ttls == {hd2_key: 172800, hd3_key: 7200}
    assert cache.data[hd3_key]["error"] == FETCH_FAILED
    assert source_cache_key("ep-1", "hd-1", "sub") not in cache.data

    # Raw URL is cached; the response carries the proxied one
    assert cache.data[hd2_key]["sources"][0]["url"] == "https://cdn.test/two.m3u8"
    playlist = result.sources[0]["url"]
    assert playlist.startswith("https://proxy.test/m3u8-proxy?url=")
    assert quote("https://cdn.test/two.m3u8", safe="") in playlist
    assert result.used_referer == "https://rapid-cloud.co/"
    assert result.to_payload()["tracks"][0]["kind"] == "captions"


def test_failing_server_does_not_break_siblings():
    def hd1_fails():
        raise httpx.ConnectError("refused")

    run, _, cache = fan_out(by_server({
        "hd-1": hd1_fails,
        "hd-2": lambda: httpx.Response(200, json={"success": False}),
        "hd-3": lambda: httpx.Response(200, json=sources_payload()),
    }))

    results = run(lambda f: f.fetch_all("ep-2", "dub"))

    errors = {r.server: r.error for r in results}
    assert errors == {"hd-1": FETCH_FAILED, "hd-2": NO_SOURCES, "hd-3": None}


def test_cache_hit_skips_upstream():
    cached = SourceResult(
        server="hd-2",
        sources=[{"url": "https://cdn.test/two.m3u8", "type": "hls"}],
        usedReferer="https://hianime.to/",
    ).to_payload()
    cache = FakeCache({source_cache_key("ep-3", "hd-2", "sub"): cached})
    run, recorder, _ = fan_out(lambda request: httpx.Response(500), cache=cache)

    result, status = run(lambda f: f.get("ep-3", "hd-2", "sub"))

    assert status == CacheStatus.HIT
    assert recorder.requests == []
    assert result.sources[0]["url"].startswith("https://proxy.test/m3u8-proxy?url=")


def test_always_fresh_server_ignores_cache():
    cache = FakeCache({source_cache_key("ep-4", "hd-1", "sub"): {"server": "hd-1", "sources": []}})
    run, recorder, _ = fan_out(lambda request: httpx.Response(200, json=sources_payload()), cache=cache)

    result, status = run(lambda f: f.get("ep-4", "hd-1", "sub"))

    assert status == CacheStatus.NONE
    assert len(recorder.requests) == 3
    assert result.error is None


def test_disabled_cache_reports_none():
    run, _, cache = fan_out(lambda request: httpx.Response(200, json=sources_payload()), cache=FakeCache(enabled=False))

    _, status = run(lambda f: f.get("ep-5", "hd-2", "sub"))

    assert status == CacheStatus.NONE
    assert cache.data == {}


def test_unknown_server_is_rejected():
    run, recorder, _ = fan_out(lambda request: httpx.Response(200, json=sources_payload()))

    with pytest.raises(ApiError) as excinfo:
        run(lambda f: f.get("ep-6", "hd-9", "sub"))
    assert excinfo.value.status_code == 400
    assert recorder.requests == []


def test_playlists_untouched_without_proxy():
    settings = make_settings(m3u8_proxy="")
    run, _, _ = fan_out(lambda request: httpx.Response(200, json=sources_payload()), settings=settings)

    result, _ = run(lambda f: f.get("ep-7", "hd-2", "sub"))

    assert result.sources[0]["url"] == "https://cdn.test/master.m3u8"


def test_per_server_proxy_override():
    settings = make_settings(m3u8_proxy_hd1="https://hd1-proxy.test/")
    run, _, _ = fan_out(lambda request: httpx.Response(200, json=sources_payload()), settings=settings)

    result, _ = run(lambda f: f.get("ep-8", "hd-1", "sub"))

    assert result.sources[0]["url"].startswith("https://hd1-proxy.test/m3u8-proxy?url=")


def test_invalidate_deletes_every_server_key():
    run, _, cache = fan_out(lambda request: httpx.Response(200))

    keys = run(lambda f: f.invalidate("ep-9", "sub"))

    assert keys == [source_cache_key("ep-9", s, "sub") for s in ("hd-1", "hd-2", "hd-3")]
    assert cache.deleted == keys


def test_invalidate_requires_cache():
    run, _, _ = fan_out(lambda request: httpx.Response(200), cache=FakeCache(enabled=False))

    with pytest.raises(ApiError) as excinfo:
        run(lambda f: f.invalidate("ep-9", "sub"))
    assert excinfo.value.status_code == 500

import json
from typing import Any, Dict, Iterable, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from app import create_app
from cache import CacheStore
from config import Settings


class FakeCache(CacheStore):
    """In-memory CacheStore recording every write and its TTL."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, enabled: bool = True):
        self.enabled = enabled
        self.data: Dict[str, Any] = dict(data or {})
        self.ttls: Dict[str, int] = {}
        self.deleted: List[str] = []

    async def get(self, key: str) -> Optional[Any]:
        if not self.enabled or key not in self.data:
            return None
        # Mimic the JSON round trip of the real backend
        return json.loads(json.dumps(self.data[key]))

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if not self.enabled:
            return
        self.data[key] = json.loads(json.dumps(value))
        self.ttls[key] = ttl_seconds

    async def delete(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.deleted.append(key)
            self.data.pop(key, None)


class ChunkedBody(httpx.AsyncByteStream):
    """Response body that is only produced when the proxy iterates it."""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


class Recorder:
    """Wraps a request handler for httpx.MockTransport and keeps the requests it saw."""

    def __init__(self, handler):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        return self.handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def make_settings(**overrides) -> Settings:
    values = dict(
        anime_api_url="https://anime.test",
        hanime_api_url="https://hanime.test",
        consumet_api_url="https://consumet.test",
        m3u8_proxy="https://proxy.test",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def make_client(settings, cache):
    """Build a TestClient whose upstream traffic is served by ``handler``."""

    def build(handler, app_settings: Optional[Settings] = None, app_cache: Optional[CacheStore] = None):
        recorder = Recorder(handler)
        app = create_app(
            settings=app_settings or settings,
            cache=app_cache if app_cache is not None else cache,
            transport=recorder.transport,
        )
        return TestClient(app), recorder

    return build


def sources_payload(url: str = "https://cdn.test/master.m3u8") -> Dict[str, Any]:
    return {
        "success": True,
        "data": {
            "sources": [{"url": url, "type": "hls"}],
            "tracks": [{"file": "https://cdn.test/en.vtt", "kind": "captions"}],
        },
    }

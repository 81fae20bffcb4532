# sources.py
"""
Episode source fan-out.

Every miss queries all configured servers concurrently, so sibling servers stay warm
in the cache for the player's next server switch. Each server fails independently:
a transport error, a non-2xx status or an empty payload becomes a tagged error result
instead of failing the whole request.

Servers listed in ``always_fresh`` are fetched on every call and never cached; their
results are requested on virtually every page load and freshness matters more there.
Errors are cached briefly so that upstream outages heal on their own, successes for
two days.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple
from urllib.parse import quote, urlencode, urlsplit

from httpx import AsyncClient
from pydantic import ValidationError

from cache import CacheStore
from config import Settings
from models import SourceResult
from resources import ApiError, CacheStatus
from upstream import UpstreamError, fetch_with_retry

logger = logging.getLogger(__name__)

SOURCE_SERVERS: Tuple[str, ...] = ("hd-1", "hd-2", "hd-3")
PLAYLIST_ORIGIN = "https://hianime.to"

NO_SOURCES = "no_sources"
FETCH_FAILED = "fetch_failed"


@dataclass(frozen=True)
class FanOutPolicy:
    servers: Tuple[str, ...] = SOURCE_SERVERS
    always_fresh: FrozenSet[str] = frozenset({"hd-1"})
    success_ttl: int = 172800  # 2 days
    error_ttl: int = 7200  # 2 hours

    def is_cacheable(self, server: str) -> bool:
        return server in self.servers and server not in self.always_fresh

    def ttl_for(self, result: SourceResult) -> int:
        return self.error_ttl if result.error else self.success_ttl


def source_cache_key(episode_id: str, server: str, category: str) -> str:
    return f"anime_sources_{episode_id}_{server}_{category}"


def is_valid_url(url: str) -> bool:
    parts = urlsplit(url)
    return bool(parts.scheme) and bool(parts.netloc)


class SourceFanOut:
    def __init__(self, client: AsyncClient, cache: CacheStore, settings: Settings, policy: Optional[FanOutPolicy] = None, sleep=asyncio.sleep):
        self.client = client
        self.cache = cache
        self.settings = settings
        self.policy = policy or FanOutPolicy()
        self.sleep = sleep

    def sources_url(self, episode_id: str, server: str, category: str) -> str:
        query = urlencode({"animeEpisodeId": episode_id, "server": server, "category": category})
        return f"{self.settings.anime_api_url}/api/v2/hianime/episode/sources?{query}"

    async def fetch_server(self, episode_id: str, server: str, category: str) -> SourceResult:
        url = self.sources_url(episode_id, server, category)
        try:
            response, identity = await fetch_with_retry(self.client, url, sleep=self.sleep)
            payload = response.json()
        except (UpstreamError, ValueError) as e:
            logger.warning(f"Sources fetch failed for {episode_id} on {server}: {e}")
            return SourceResult(server=server, error=FETCH_FAILED, serverUrl=url)

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or not payload.get("success") or not data.get("sources"):
            logger.info(f"No sources for {episode_id} on {server}")
            return SourceResult(server=server, error=NO_SOURCES, serverUrl=url)

        fields = {k: v for k, v in data.items() if k not in ("server", "usedReferer", "serverUrl", "error")}
        try:
            return SourceResult(
                **fields,
                server=server,
                usedReferer=identity.referer,
                serverUrl=url,
            )
        except ValidationError as e:
            logger.warning(f"Unexpected sources payload for {episode_id} on {server}: {e}")
            return SourceResult(server=server, error=NO_SOURCES, serverUrl=url)

    async def fetch_all(self, episode_id: str, category: str) -> List[SourceResult]:
        # Per-server failures are already converted to tagged results
        return list(await asyncio.gather(
            *(self.fetch_server(episode_id, server, category) for server in self.policy.servers)
        ))

    async def store(self, episode_id: str, category: str, results: List[SourceResult]) -> None:
        for result in results:
            if not self.policy.is_cacheable(result.server):
                continue
            key = source_cache_key(episode_id, result.server, category)
            await self.cache.set(key, result.to_payload(), self.policy.ttl_for(result))

    async def cached(self, episode_id: str, server: str, category: str) -> Optional[SourceResult]:
        raw = await self.cache.get(source_cache_key(episode_id, server, category))
        if raw is None:
            return None
        try:
            return SourceResult.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring cached sources for {episode_id} on {server}: {e}")
            return None

    def proxied(self, result: SourceResult) -> SourceResult:
        """Rewrite playlist URLs to go through the downstream playlist proxy."""
        proxy_base = self.settings.playlist_proxy_for(result.server)
        if result.error or not result.sources or not proxy_base:
            return result
        headers = json.dumps({"Referer": result.used_referer, "Origin": PLAYLIST_ORIGIN}, separators=(",", ":"))
        sources = []
        for source in result.sources:
            url = source.get("url") if isinstance(source, dict) else None
            if isinstance(url, str) and url.endswith(".m3u8") and is_valid_url(url):
                source = {
                    **source,
                    "url": f"{proxy_base}/m3u8-proxy?url={quote(url, safe='')}&headers={quote(headers, safe='')}",
                }
            sources.append(source)
        return result.model_copy(update={"sources": sources})

    async def get(self, episode_id: str, server: str, category: str) -> Tuple[SourceResult, CacheStatus]:
        server = server.lower()
        if server not in self.policy.servers:
            raise ApiError(400, f"Invalid server: {server}")

        cacheable = self.policy.is_cacheable(server)
        if cacheable:
            hit = await self.cached(episode_id, server, category)
            if hit is not None:
                logger.info(f"Sources cache HIT {episode_id} {server} {category}")
                return self.proxied(hit), CacheStatus.HIT

        results = await self.fetch_all(episode_id, category)
        await self.store(episode_id, category, results)

        by_server: Dict[str, SourceResult] = {r.server: r for r in results}
        result = by_server.get(server)
        if result is None:
            raise ApiError(500, "No sources found for requested server")

        if cacheable and self.cache.enabled:
            status = CacheStatus.MISS
        else:
            status = CacheStatus.NONE
        return self.proxied(result), status

    async def invalidate(self, episode_id: str, category: str) -> List[str]:
        if not self.cache.enabled:
            raise ApiError(500, "Cache not configured")
        keys = [source_cache_key(episode_id, server, category) for server in self.policy.servers]
        await self.cache.delete(keys)
        return keys

#  app.py
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
import httpx
from httpx import AsyncClient
from starlette.exceptions import HTTPException as StarletteHTTPException

from cache import CacheStore, init_cache
from config import Settings, load_settings
from models import ErrorResponse
from normalizers import (
    PayloadShapeError,
    count_chapter_pages,
    extract_genres,
    extract_studios,
    format_catalog,
    map_brand_item,
    map_catalog_item,
    map_monthly_item,
    map_search_item,
    map_tvshow_item,
    normalize_listing,
    passthrough_item,
    validate_manga_details,
    validate_manga_genre,
    validate_manga_pages,
)
from resources import (
    ApiError,
    CacheStatus,
    cached_resource,
    error_body,
    from_upstream,
    json_response,
    refreshed_resource,
    success_body,
)
from sources import SourceFanOut
from streaming import (
    MediaFetchError,
    MediaStreamProxy,
    PassthroughProxy,
    fetch_manga_image,
    image_etag,
)
from upstream import UpstreamError, fetch_json, fetch_with_retry, get_http_client

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

ANIME_INFO_TIMEZONE = "Asia/Tokyo"

HANIME_LISTING_TTL = 900  # 15 minutes
HANIME_CATALOG_TTL = 86400  # 24 hours
HANIME_MANGA_DETAILS_TTL = 7200
HANIME_MANGA_READ_TTL = 86400
HANIME_MANGA_LIST_TTL = 3600

MANGA_INFO_TTL = 1800
MANGA_READ_TTL = 432000  # 5 days
MANGA_PROVIDERS = ("mangahere", "mangapill")
DEFAULT_MANGA_PROVIDER = "mangahere"

PLAYLIST_IDENTITY = {
    "Referer": "https://hianimez.to/",
    "Origin": "https://hianimez.to",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
}
DEFAULT_VTT_REFERER = "https://rapid-cloud.co/"

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing or invalid parameters"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
    502: {"model": ErrorResponse, "description": "Failed to fetch data from source"},
    504: {"model": ErrorResponse, "description": "Upstream timeout"},
}


def seconds_until_midnight(tz_name: str = ANIME_INFO_TIMEZONE, now: Optional[datetime] = None) -> int:
    """Seconds left until the next midnight in ``tz_name``; anime info refreshes daily."""
    tz = ZoneInfo(tz_name)
    local_now = (now or datetime.now(timezone.utc)).astimezone(tz)
    tomorrow = (local_now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(int((tomorrow - local_now).total_seconds()), 1)


def require(value: Optional[str], message: str) -> str:
    if value is None or not value.strip():
        raise ApiError(400, message)
    return value


def parse_page(page: Optional[str]) -> int:
    try:
        return max(int(page or 1), 1)
    except ValueError:
        raise ApiError(400, "Page must be a positive integer")


# Dependencies

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache(request: Request) -> CacheStore:
    return request.app.state.cache


def get_stream_proxy(request: Request) -> MediaStreamProxy:
    return request.app.state.stream_proxy


def get_passthrough_proxy(request: Request) -> PassthroughProxy:
    return request.app.state.passthrough_proxy


def create_app(settings: Optional[Settings] = None, cache: Optional[CacheStore] = None, transport=None) -> FastAPI:
    """
    Build the API. ``cache`` and ``transport`` replace the configured cache backend and
    the upstream network transport (tests pass fakes here).
    """
    settings = settings or load_settings()
    logging.getLogger().setLevel(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.cache.close()

    app = FastAPI(
        title="Anime Aggregation API",
        description="Caching aggregation layer over anime, hentai-anime and manga provider APIs, with media streaming proxies.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.cache = cache if cache is not None else init_cache(settings)
    app.state.transport = transport
    app.state.stream_proxy = MediaStreamProxy(transport=transport)
    app.state.passthrough_proxy = PassthroughProxy(transport=transport)

    register_error_handlers(app)
    app.include_router(router)
    return app


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(error_body(exc.message, exc.details), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = ".".join(str(p) for p in errors[0].get("loc", ())[1:]) if errors else ""
        message = f"Invalid parameter: {field}" if field else "Invalid request parameters"
        return JSONResponse(error_body(message), status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(error_body(str(exc.detail)), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception(f"Unexpected error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(error_body("Internal server error"), status_code=500)


router = APIRouter()


# Root endpoint
@router.get("/", tags=["Root"])
async def root():
    return {
        "message": "Anime Aggregation API",
        "version": "1.0.0",
        "endpoints": {
            "anime": "/api/anime?action={info|episodes|servers|sources|delete-source-cache}",
            "hanime": {
                "genres": "/api/hanime/genre",
                "by_genre": "/api/hanime/genre/{genre}?page={page}",
                "brands": "/api/hanime/brand",
                "by_brand": "/api/hanime/brand/{id}?page={page}",
                "tv_shows": "/api/hanime/tvshow?page={page}",
                "monthly": "/api/hanime/monthly-release?page={page}",
                "recent": "/api/hanime/recent-ep?page={page}",
                "search": "/api/hanime/search?query={query}&page={page}",
                "manga": "/api/hanime/manga/{search|info|read|genre}",
                "stream": "/api/hanime/proxy-mp4?url={url}&referer={referer}",
            },
            "manga": "/api/manga?type={search|info|read|image}&provider={mangahere|mangapill}",
            "proxy": ["/api/proxy", "/api/proxy/m3u8", "/api/proxy/image", "/api/proxy/vtt"],
        },
        "documentation": "/docs",
    }


@router.get("/health", tags=["Root"])
async def health(cache: CacheStore = Depends(get_cache)):
    return {"status": "healthy", "cache": "enabled" if cache.enabled else "disabled"}


# Anime

@router.get(
    "/api/anime",
    tags=["Anime"],
    responses=ERROR_RESPONSES,
    summary="Anime info, episodes, servers and sources",
    description="Single action endpoint. Example: `?action=sources&animeEpisodeId=one-piece-100?ep=2142&server=hd-2&category=sub`",
)
async def anime(
    action: Optional[str] = Query(None, description="info, episodes, servers, sources or delete-source-cache"),
    animeId: Optional[str] = Query(None, description="Anime identifier"),
    animeEpisodeId: Optional[str] = Query(None, description="Episode identifier"),
    server: str = Query("hd-1", description="Source server: hd-1, hd-2 or hd-3"),
    category: str = Query("sub", description="sub, dub or raw"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    if not settings.anime_api_url:
        raise ApiError(500, "API configuration error")
    if not action:
        raise ApiError(400, "Action parameter required")

    base = f"{settings.anime_api_url}/api/v2/hianime"
    try:
        if action == "info":
            anime_id = require(animeId, "animeId required")

            async def produce():
                response, _ = await fetch_with_retry(client, f"{base}/anime/{quote(anime_id, safe='')}")
                return response.json()

            data, status = await cached_resource(cache, f"anime_info_{anime_id}", seconds_until_midnight(), produce)
            return json_response(data, status)

        if action == "episodes":
            anime_id = require(animeId, "animeId required")
            response, _ = await fetch_with_retry(client, f"{base}/anime/{quote(anime_id, safe='')}/episodes")
            return json_response(response.json(), CacheStatus.NONE)

        if action == "servers":
            episode_id = require(animeEpisodeId, "animeEpisodeId required")
            response, _ = await fetch_with_retry(client, f"{base}/episode/servers?animeEpisodeId={quote(episode_id, safe='')}")
            return json_response(response.json(), CacheStatus.NONE)

        if action == "sources":
            episode_id = require(animeEpisodeId, "animeEpisodeId required")
            result, status = await SourceFanOut(client, cache, settings).get(episode_id, server, category)
            return json_response(success_body(result.to_payload()), status)

        if action == "delete-source-cache":
            episode_id = require(animeEpisodeId, "animeEpisodeId required")
            keys = await SourceFanOut(client, cache, settings).invalidate(episode_id, category)
            return json_response({"success": True, "deleted": keys}, CacheStatus.NONE)
    except UpstreamError as e:
        raise ApiError(500, e.message)
    except ValueError as e:
        raise ApiError(500, f"Invalid JSON from upstream: {e}")

    raise ApiError(400, f"Invalid action: {action}")


# Hentai-anime listings

async def hanime_listing(client: AsyncClient, cache: CacheStore, url: str, key: Optional[str], mapper, page: int, failure: str) -> Response:
    async def produce():
        try:
            raw = await fetch_json(client, url)
        except UpstreamError as e:
            raise from_upstream(e, failure)
        return normalize_listing(raw, mapper, requested_page=page).to_payload()

    if key is None:
        return json_response(success_body(await produce()))
    data, status = await cached_resource(cache, key, HANIME_LISTING_TTL, produce)
    return json_response(success_body(data), status)


@router.get("/api/hanime/genre", tags=["Hanime"], responses=ERROR_RESPONSES, summary="List genres")
async def hanime_genres(settings: Settings = Depends(get_settings), cache: CacheStore = Depends(get_cache), client: AsyncClient = Depends(get_http_client)):
    async def produce():
        try:
            raw = await fetch_json(client, f"{settings.hanime_api_url}/api/hen/mama/genres")
        except UpstreamError as e:
            raise from_upstream(e, "Failed to fetch genres")
        return format_catalog("genre-list", "genres", extract_genres(raw))

    def accept(cached: Any):
        # Trust the cache only when it still yields genres, whatever its shape
        genres = extract_genres(cached)
        return format_catalog("genre-list", "genres", genres) if genres else None

    data, status = await cached_resource(cache, "hanime_genre_list_v1", HANIME_CATALOG_TTL, produce, accept=accept)
    return json_response(success_body(data, timestamp=datetime.now(timezone.utc).isoformat()), status)


@router.get("/api/hanime/genre/{genre}", tags=["Hanime"], responses=ERROR_RESPONSES, summary="Titles in a genre")
async def hanime_genre(
    genre: str = Path(..., description="Genre slug"),
    page: Optional[str] = Query("1", description="Page number"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    genre = require(genre, "Missing genre parameter")
    page_number = parse_page(page)
    url = f"{settings.hanime_api_url}/api/hen/mama/genre/{quote(genre, safe='')}/{page_number}"
    return await hanime_listing(client, cache, url, f"hanime_genre_{genre}_{page_number}_v1", map_catalog_item, page_number, "Failed to fetch genre data")


@router.get("/api/hanime/brand", tags=["Hanime"], responses=ERROR_RESPONSES, summary="List studios")
async def hanime_brands(settings: Settings = Depends(get_settings), cache: CacheStore = Depends(get_cache), client: AsyncClient = Depends(get_http_client)):
    async def produce():
        try:
            raw = await fetch_json(client, f"{settings.hanime_api_url}/api/hen/mama/studios")
        except UpstreamError as e:
            raise from_upstream(e, "Failed to fetch brands")
        return format_catalog("studio-list", "results", extract_studios(raw))

    def accept(cached: Any):
        return format_catalog("studio-list", "results", extract_studios(cached))

    data, status = await cached_resource(cache, "hanime_brand_list_v1", HANIME_CATALOG_TTL, produce, accept=accept)
    return json_response(success_body(data, timestamp=datetime.now(timezone.utc).isoformat()), status)


@router.get("/api/hanime/brand/{brand_id}", tags=["Hanime"], responses=ERROR_RESPONSES, summary="Titles by a studio")
async def hanime_brand(
    brand_id: str = Path(..., description="Studio slug"),
    page: Optional[str] = Query("1", description="Page number"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    brand_id = require(brand_id, "Missing brand id parameter")
    page_number = parse_page(page)
    url = f"{settings.hanime_api_url}/api/hen/mama/studios/{quote(brand_id, safe='')}/{page_number}"
    return await hanime_listing(client, cache, url, f"hanime_brand_{brand_id}_{page_number}_v1", map_brand_item, page_number, "Failed to fetch brand data")


@router.get("/api/hanime/tvshow", tags=["Hanime"], responses=ERROR_RESPONSES, summary="TV show archive")
async def hanime_tvshows(
    page: Optional[str] = Query("1", description="Page number"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    page_number = parse_page(page)
    url = f"{settings.hanime_api_url}/api/hen/mama/tvshows/{page_number}"
    return await hanime_listing(client, cache, url, f"hanime_tvshows_{page_number}_v1", map_tvshow_item, page_number, "Failed to fetch tv shows")


@router.get("/api/hanime/monthly-release", tags=["Hanime"], responses=ERROR_RESPONSES, summary="New releases of the month")
async def hanime_monthly(
    page: Optional[str] = Query("1", description="Page number"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    page_number = parse_page(page)
    url = f"{settings.hanime_api_url}/api/hen/mama/new-monthly/{page_number}"
    return await hanime_listing(client, cache, url, f"hanime_monthly_releases_{page_number}_v1", map_monthly_item, page_number, "Failed to fetch monthly releases")


@router.get("/api/hanime/recent-ep", tags=["Hanime"], responses=ERROR_RESPONSES, summary="Recently added episodes")
async def hanime_recent(
    page: Optional[str] = Query("1", description="Page number"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    page_number = parse_page(page)
    url = f"{settings.hanime_api_url}/api/hen/mama/recent-episodes/{page_number}"

    async def produce():
        try:
            raw = await fetch_json(client, url)
        except UpstreamError as e:
            raise from_upstream(e, "Failed to fetch recent episodes")
        return normalize_listing(raw, passthrough_item, requested_page=page_number).to_payload()

    # Always fetched: the cache only tells whether anything changed
    data, status = await refreshed_resource(cache, f"hanime_recent_ep_v1_page_{page_number}", HANIME_LISTING_TTL, produce)
    return json_response(success_body(data), status)


@router.get("/api/hanime/search", tags=["Hanime"], responses=ERROR_RESPONSES, summary="Search titles")
async def hanime_search(
    query: Optional[str] = Query(None, description="Search term"),
    page: Optional[str] = Query("1", description="Page number"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    query = require(query, "Missing query parameter")
    page_number = parse_page(page)
    url = f"{settings.hanime_api_url}/api/hen/mama/search/{quote(query, safe='')}/{page_number}"
    return await hanime_listing(client, cache, url, None, map_search_item, page_number, "Failed to fetch search data")


# Hentai manga

async def hanime_manga(client: AsyncClient, cache: CacheStore, url: str, key: str, ttl: int, validate, failure: str) -> Response:
    async def produce():
        try:
            raw = await fetch_json(client, url)
        except UpstreamError as e:
            raise from_upstream(e, failure)
        try:
            return validate(raw)
        except PayloadShapeError as e:
            raise ApiError(500, str(e))

    data, status = await cached_resource(cache, key, ttl, produce)
    return json_response(success_body(data), status)


@router.get("/api/hanime/manga/search", tags=["Hanime manga"], responses=ERROR_RESPONSES, summary="Search manga")
async def hanime_manga_search(
    q: Optional[str] = Query(None, description="Search term"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    q = require(q, 'Query parameter "q" is required')
    url = f"{settings.hanime_api_url}/api/manga/h20/search?q={quote(q, safe='')}"
    return await hanime_manga(client, cache, url, f"hanime_manga_search_{q.lower()}", HANIME_MANGA_LIST_TTL, lambda raw: raw, "Failed to fetch manga search results")


@router.get("/api/hanime/manga/info/{slug}", tags=["Hanime manga"], responses=ERROR_RESPONSES, summary="Manga details")
async def hanime_manga_info(
    slug: str = Path(..., description="Manga slug"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    slug = require(slug, "Slug parameter is required")
    url = f"{settings.hanime_api_url}/api/manga/h20/details/{quote(slug, safe='')}"
    return await hanime_manga(client, cache, url, f"hanime_manga_details_{slug}", HANIME_MANGA_DETAILS_TTL, validate_manga_details, "Failed to fetch manga details")


@router.get("/api/hanime/manga/read/{slug}", tags=["Hanime manga"], responses=ERROR_RESPONSES, summary="Chapter pages")
async def hanime_manga_read(
    slug: str = Path(..., description="Chapter slug"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    slug = require(slug, "Slug parameter is required")
    url = f"{settings.hanime_api_url}/api/manga/h20/read/{quote(slug, safe='')}"
    return await hanime_manga(client, cache, url, f"hanime_manga_read_{slug}", HANIME_MANGA_READ_TTL, validate_manga_pages, "Failed to fetch chapter pages")


@router.get("/api/hanime/manga/genre/{slug}", tags=["Hanime manga"], responses=ERROR_RESPONSES, summary="Manga in a genre")
async def hanime_manga_genre(
    slug: str = Path(..., description="Genre slug"),
    page: Optional[str] = Query("1", description="Page number"),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
):
    slug = require(slug, "Genre slug parameter is required")
    page_number = parse_page(page)
    url = f"{settings.hanime_api_url}/api/manga/h20/genre/{quote(slug, safe='')}?page={page_number}"
    return await hanime_manga(client, cache, url, f"hanime_manga_genre_{slug}_page_{page_number}", HANIME_MANGA_LIST_TTL, validate_manga_genre, "Failed to fetch manga by genre")


# Media streaming proxy

@router.get("/api/hanime/proxy-mp4", tags=["Proxy"], summary="Seekable video proxy")
async def proxy_mp4(
    request: Request,
    url: Optional[str] = Query(None, description="Absolute media URL"),
    referer: Optional[str] = Query(None, description="Page URL the media is embedded in"),
    cookies: Optional[str] = Query(None, description="Cookie header to send upstream"),
    proxy: MediaStreamProxy = Depends(get_stream_proxy),
):
    return await proxy.stream(url or "", request.headers, referer=referer, cookies=cookies)


@router.head("/api/hanime/proxy-mp4", tags=["Proxy"], include_in_schema=False)
async def proxy_mp4_head(
    url: Optional[str] = Query(None),
    referer: Optional[str] = Query(None),
    proxy: MediaStreamProxy = Depends(get_stream_proxy),
):
    return await proxy.head(url or "", referer=referer)


@router.options("/api/hanime/proxy-mp4", tags=["Proxy"], include_in_schema=False)
async def proxy_mp4_options():
    return MediaStreamProxy.preflight()


# Manga

def manga_provider(provider: Optional[str]) -> str:
    if provider in MANGA_PROVIDERS:
        return provider
    if provider:
        logger.warning(f'Unsupported manga provider "{provider}" requested. Falling back to "{DEFAULT_MANGA_PROVIDER}".')
    return DEFAULT_MANGA_PROVIDER


@router.get("/api/manga", tags=["Manga"], responses=ERROR_RESPONSES, summary="Manga search, info, chapter pages and images")
async def manga(
    type: Optional[str] = Query(None, description="search, info, read or image"),
    provider: Optional[str] = Query(None, description="mangahere or mangapill"),
    q: Optional[str] = Query(None),
    page: Optional[str] = Query("1"),
    id: Optional[str] = Query(None),
    chapterId: Optional[str] = Query(None),
    url: Optional[str] = Query(None),
    referer: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    cache: CacheStore = Depends(get_cache),
    client: AsyncClient = Depends(get_http_client),
    passthrough: PassthroughProxy = Depends(get_passthrough_proxy),
):
    provider = manga_provider(provider)
    base = f"{settings.consumet_api_url}/meta/anilist-manga"

    async def fetch(upstream_url: str, failure: str):
        try:
            return await fetch_json(client, upstream_url)
        except UpstreamError as e:
            raise from_upstream(e, failure)

    if type == "search":
        q = require(q, "Missing search query")
        data = await fetch(f"{base}/{quote(q, safe='')}?page={parse_page(page)}&provider={provider}", "Failed to search manga")
        return json_response(success_body(data))

    if type == "info":
        manga_id = require(id, "Missing manga id")
        data, status = await cached_resource(
            cache, f"manga_info_{provider}_{manga_id}", MANGA_INFO_TTL,
            lambda: fetch(f"{base}/info/{quote(manga_id, safe='')}?provider={provider}", "Failed to fetch manga info"),
        )
        return json_response(success_body(data), status)

    if type == "read":
        chapter_id = require(chapterId, "Missing chapterId")

        async def produce():
            data = await fetch(f"{base}/read?chapterId={quote(chapter_id, safe='')}&provider={provider}", "Failed to fetch chapter")
            logger.info(f"Chapter {chapter_id} from {provider}: {count_chapter_pages(data)} pages")
            return data

        data, status = await cached_resource(cache, f"manga_read_{provider}_{chapter_id}", MANGA_READ_TTL, produce)
        return json_response(success_body(data), status)

    if type == "image":
        image_url = require(url, "Missing image URL")
        try:
            image = await fetch_manga_image(passthrough, image_url, provider, referer)
        except (MediaFetchError, httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Image fetch error for {image_url[:100]}: {e}")
            raise ApiError(500, f"Failed to fetch image: {e}")
        return Response(
            content=image["content"],
            status_code=200,
            headers={
                "Content-Type": image["content_type"],
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Methods": "GET, OPTIONS",
                "Access-Control-Allow-Headers": "Content-Type",
                "Cache-Control": "public, max-age=86400",
                "X-Cache": CacheStatus.NONE.value,
                "ETag": image_etag(image_url),
                "Vary": "Accept-Encoding",
            },
        )

    raise ApiError(400, "Invalid type parameter")


@router.options("/api/manga", tags=["Manga"], include_in_schema=False)
async def manga_options():
    return Response(
        status_code=204,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        },
    )


# Passthrough proxies

@router.get("/api/proxy", tags=["Proxy"], summary="Playlist proxy with the streaming site's identity")
async def proxy_playlist(url: Optional[str] = Query(None), passthrough: PassthroughProxy = Depends(get_passthrough_proxy)):
    if not url:
        return Response("Missing url", status_code=400)
    return await passthrough.relay(url, PLAYLIST_IDENTITY, "application/vnd.apple.mpegurl", "public, max-age=3600")


@router.get("/api/proxy/m3u8", tags=["Proxy"], summary="m3u8 playlist proxy")
async def proxy_m3u8(
    url: Optional[str] = Query(None),
    headers: Optional[str] = Query(None, description="JSON object of headers to send upstream"),
    settings: Settings = Depends(get_settings),
    passthrough: PassthroughProxy = Depends(get_passthrough_proxy),
):
    if not url:
        return Response("Missing m3u8 url", status_code=400)
    upstream_headers = {"User-Agent": PLAYLIST_IDENTITY["User-Agent"]}
    if headers:
        try:
            parsed = json_loads_object(headers)
            upstream_headers.update(parsed)
        except ValueError:
            logger.debug("Ignoring malformed headers parameter")
    proxy_base = settings.m3u8_proxy
    if proxy_base:
        target = f"{proxy_base}/m3u8-proxy?url={quote(url, safe='')}&headers={quote(json_dumps(upstream_headers), safe='')}"
        return await passthrough.relay(target, {}, "application/vnd.apple.mpegurl", "public, max-age=600")
    return await passthrough.relay(url, upstream_headers, "application/vnd.apple.mpegurl", "public, max-age=600")


@router.get("/api/proxy/image", tags=["Proxy"], summary="Image proxy")
async def proxy_image(url: Optional[str] = Query(None), passthrough: PassthroughProxy = Depends(get_passthrough_proxy)):
    if not url:
        return Response("Missing image url", status_code=400)
    return await passthrough.image(url)


@router.get("/api/proxy/vtt", tags=["Proxy"], summary="Subtitle proxy")
async def proxy_vtt(
    url: Optional[str] = Query(None),
    referer: Optional[str] = Query(None),
    passthrough: PassthroughProxy = Depends(get_passthrough_proxy),
):
    if not url:
        return Response("Missing url parameter", status_code=400)
    return await passthrough.subtitles(url, referer or DEFAULT_VTT_REFERER)


def json_loads_object(text: str) -> dict:
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError("headers must be a JSON object")
    return {str(k): str(v) for k, v in value.items()}


def json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


app = create_app()

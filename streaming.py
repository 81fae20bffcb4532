# streaming.py
"""
Media proxies.

``MediaStreamProxy`` relays a remote mp4/m3u8 resource byte-for-byte while keeping it
seekable: the caller's Range header is forwarded, redirects are followed and a fixed
whitelist of upstream headers is mirrored back. Upstream bodies are streamed raw
(still encoded) since Content-Encoding is mirrored to the client.

The smaller passthrough proxies (playlist, subtitles, images) buffer the body.
"""
import asyncio
import base64
import logging
import random
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from resources import error_body

logger = logging.getLogger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

VIDEO_ACCEPT = "video/webm,video/ogg,video/*;q=0.9,application/ogg;q=0.7,audio/*;q=0.6,*/*;q=0.5"
ACCEPT_LANGUAGE = "en-US,en;q=0.9"
ACCEPT_ENCODING = "gzip, deflate, br"

DEFAULT_PLAYER_REFERER = "https://nhplayer.com/"
DEFAULT_PLAYER_ORIGIN = "https://nhplayer.com"

MIRRORED_HEADERS = (
    "content-type",
    "content-length",
    "content-range",
    "accept-ranges",
    "content-encoding",
    "etag",
    "last-modified",
)
HEAD_MIRRORED_HEADERS = ("content-type", "content-length", "accept-ranges")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Range, Cookie, Authorization",
}
PREFLIGHT_HEADERS = {**CORS_HEADERS, "Access-Control-Max-Age": "86400"}

STREAM_TIMEOUT = 30.0
STREAM_MAX_RETRIES = 2
RETRY_DELAY = 1.0
STREAM_CHUNK_SIZE = 64 * 1024
ERROR_TEXT_LIMIT = 200


class MediaFetchError(Exception):
    """Raised when a proxied media resource cannot be delivered."""


class MediaRejected(Exception):
    """Upstream refused the request (401/403); retried with another User-Agent."""

    def __init__(self, status_code: int):
        super().__init__(f"upstream returned {status_code}")
        self.status_code = status_code


def canonical_header(name: str) -> str:
    return "-".join(part[:1].upper() + part[1:] for part in name.split("-"))


def mirror_headers(headers: Mapping[str, str], names) -> Dict[str, str]:
    mirrored = {}
    for name in names:
        value = headers.get(name)
        if value:
            mirrored[canonical_header(name)] = value
    return mirrored


def filter_cookies(cookie_header: Optional[str]) -> Optional[str]:
    """Drop ``__Host-`` prefixed cookies; they are bound to our own origin."""
    if not cookie_header:
        return None
    cookies = [c.strip() for c in cookie_header.split(";")]
    kept = [c for c in cookies if c and not c.lower().startswith("__host-")]
    return "; ".join(kept) or None


def is_absolute_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def browser_headers(referer: Optional[str] = None, choose: Callable[[list], str] = random.choice) -> Dict[str, str]:
    origin = DEFAULT_PLAYER_ORIGIN
    if referer:
        parts = urlsplit(referer)
        if parts.scheme and parts.netloc:
            origin = f"{parts.scheme}://{parts.netloc}"
    return {
        "User-Agent": choose(USER_AGENTS),
        "Accept": VIDEO_ACCEPT,
        "Accept-Language": ACCEPT_LANGUAGE,
        "Accept-Encoding": ACCEPT_ENCODING,
        "Referer": referer or DEFAULT_PLAYER_REFERER,
        "Origin": origin,
        "DNT": "1",
        "Sec-Fetch-Dest": "video",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Site": "cross-site",
        "Sec-Ch-Ua": '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
        "Sec-Ch-Ua-Mobile": "?0",
        "Sec-Ch-Ua-Platform": '"Windows"',
    }


class MediaStreamProxy:
    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = STREAM_TIMEOUT,
        max_retries: int = STREAM_MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        sleep=asyncio.sleep,
        choose: Callable[[list], str] = random.choice,
    ):
        self.transport = transport
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.choose = choose

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
        )

    def upstream_headers(self, request_headers: Mapping[str, str], referer: Optional[str], cookies: Optional[str]) -> Dict[str, str]:
        headers = browser_headers(referer, choose=self.choose)
        if request_headers.get("range"):
            headers["Range"] = request_headers["range"]
        cookie = cookies or filter_cookies(request_headers.get("cookie"))
        if cookie:
            headers["Cookie"] = cookie
        if request_headers.get("authorization"):
            headers["Authorization"] = request_headers["authorization"]
        return headers

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        # A rejected User-Agent is swapped right away; network errors get a pause
        if isinstance(retry_state.outcome.exception(), MediaRejected):
            return 0
        return self.retry_delay

    async def _open(self, client: httpx.AsyncClient, url: str, headers: Dict[str, str]) -> httpx.Response:
        """Send with up to ``max_retries`` retries: a new User-Agent on 401/403, a fixed pause on network errors."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._retry_wait,
            retry=retry_if_exception_type((MediaRejected, httpx.RequestError))
            & retry_if_not_exception_type(httpx.TimeoutException),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                request = client.build_request("GET", url, headers=headers)
                response = await client.send(request, stream=True)
                last_attempt = attempt.retry_state.attempt_number > self.max_retries
                if response.status_code in (401, 403) and not last_attempt:
                    await response.aclose()
                    headers["User-Agent"] = self.choose(USER_AGENTS)
                    raise MediaRejected(response.status_code)
                return response

    async def stream(self, url: str, request_headers: Mapping[str, str], referer: Optional[str] = None, cookies: Optional[str] = None) -> Response:
        if not url:
            return JSONResponse(error_body("Missing url parameter"), status_code=400)
        if not is_absolute_url(url):
            return JSONResponse(error_body("Invalid URL format"), status_code=400)

        headers = self.upstream_headers(request_headers, referer, cookies)
        client = self._client()
        try:
            response = await asyncio.wait_for(self._open(client, url, headers), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            await client.aclose()
            logger.error(f"Stream proxy timeout for {url}")
            return JSONResponse(
                {**error_body("Request timeout"), "details": str(e) or "upstream did not respond in time"},
                status_code=504,
                headers={"Access-Control-Allow-Origin": "*"},
            )
        except httpx.InvalidURL as e:
            await client.aclose()
            logger.warning(f"Rejected stream URL {url!r}: {e}")
            return JSONResponse(error_body("Invalid URL format"), status_code=400)
        except httpx.RequestError as e:
            await client.aclose()
            logger.error(f"Stream proxy error for {url}: {e}")
            return JSONResponse(
                {**error_body("Internal server error"), "details": str(e)},
                status_code=500,
                headers={"Access-Control-Allow-Origin": "*"},
            )

        if not response.is_success and response.status_code != 206:
            return await self._upstream_failure(response, client)

        out_headers = {
            **CORS_HEADERS,
            "Access-Control-Expose-Headers": "Content-Length, Content-Range, Content-Type, Accept-Ranges",
            "Cache-Control": "public, max-age=86400, immutable",
            "Vary": "Origin, Range",
        }
        out_headers.update(mirror_headers(response.headers, MIRRORED_HEADERS))
        out_headers.setdefault("Accept-Ranges", "bytes")
        logger.debug(f"Streaming {url} status={response.status_code}")
        return StreamingResponse(
            self._body(response, client),
            status_code=response.status_code,
            headers=out_headers,
        )

    async def _upstream_failure(self, response: httpx.Response, client: httpx.AsyncClient) -> JSONResponse:
        details = f"{response.status_code} {response.reason_phrase}"
        try:
            text = (await response.aread()).decode("utf-8", errors="replace")
            if len(text) < ERROR_TEXT_LIMIT:
                details += f": {text}"
        except httpx.HTTPError as e:
            logger.debug(f"Could not read upstream error body: {e}")
        finally:
            await response.aclose()
            await client.aclose()
        logger.warning(f"Upstream media error: {details}")
        status_code = 502 if response.status_code >= 500 else response.status_code
        return JSONResponse(
            {**error_body(f"Failed to fetch video: {details}"), "status": response.status_code},
            status_code=status_code,
        )

    async def _body(self, response: httpx.Response, client: httpx.AsyncClient) -> AsyncIterator[bytes]:
        # Closing here also runs when the client disconnects mid-stream
        try:
            async for chunk in response.aiter_raw(STREAM_CHUNK_SIZE):
                yield chunk
        finally:
            await response.aclose()
            await client.aclose()

    async def head(self, url: str, referer: Optional[str] = None) -> Response:
        if not url or not is_absolute_url(url):
            return Response(status_code=400)
        client = self._client()
        try:
            response = await client.head(url, headers=browser_headers(referer, choose=self.choose))
        except httpx.InvalidURL:
            return Response(status_code=400)
        except httpx.HTTPError as e:
            logger.error(f"HEAD proxy error for {url}: {e}")
            return Response(status_code=500)
        finally:
            await client.aclose()
        headers = {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Expose-Headers": "Content-Length, Content-Type, Accept-Ranges",
        }
        headers.update(mirror_headers(response.headers, HEAD_MIRRORED_HEADERS))
        return Response(status_code=response.status_code, headers=headers)

    @staticmethod
    def preflight() -> Response:
        return Response(status_code=204, headers=PREFLIGHT_HEADERS)


class PassthroughProxy:
    """Buffered GET proxies for playlists, subtitles and images."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 15.0):
        self.transport = transport
        self.timeout = timeout

    async def fetch(self, url: str, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout, follow_redirects=True) as client:
            return await client.get(url, headers=headers)

    async def relay(self, url: str, headers: Dict[str, str], default_type: str, cache_control: str) -> Response:
        try:
            resp = await self.fetch(url, headers)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Proxy error for {url}: {e}")
            return Response("Failed to fetch resource", status_code=500)
        return Response(
            content=resp.content,
            status_code=resp.status_code,
            headers={
                "Content-Type": resp.headers.get("content-type") or default_type,
                "Access-Control-Allow-Origin": "*",
                "Cache-Control": cache_control,
            },
        )

    async def image(self, url: str) -> Response:
        try:
            resp = await self.fetch(url, {"User-Agent": USER_AGENTS[0]})
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Image proxy error for {url}: {e}")
            return Response("Failed to fetch image", status_code=500)
        if not resp.is_success:
            return Response("Failed to fetch image", status_code=resp.status_code)
        return Response(
            content=resp.content,
            status_code=200,
            headers={
                "Content-Type": resp.headers.get("content-type") or "image/jpeg",
                "Access-Control-Allow-Origin": "*",
                "Cache-Control": "public, max-age=86400",
                "Vary": "Accept-Encoding",
            },
        )

    async def subtitles(self, url: str, referer: str) -> Response:
        try:
            resp = await self.fetch(url, {"Referer": referer})
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"VTT proxy error for {url}: {e}")
            return Response("Error fetching VTT", status_code=500)
        if not resp.is_success:
            return Response("Failed to fetch VTT", status_code=502)
        return Response(
            content=resp.text,
            status_code=200,
            headers={"Content-Type": resp.headers.get("content-type") or "text/vtt"},
        )


# Manga image referers, checked in order against the provider and image host
MANGA_REFERERS = (
    ("mangapill", "https://mangapill.com/"),
    ("mangahere", "https://www.mangahere.cc/"),
    ("manganelo", "https://manganato.com/"),
    ("manganato", "https://manganato.com/"),
    ("mangakakalot", "https://mangakakalot.com/"),
    ("mangadex", "https://mangadex.org/"),
)
MANGA_ORIGINS = {
    "mangapill": "https://mangapill.com",
    "mangahere": "https://www.mangahere.cc",
}
MANGA_IMAGE_TIMEOUT = 15.0


def manga_referer(provider: str, image_url: str) -> str:
    host = urlsplit(image_url).hostname or ""
    for needle, referer in MANGA_REFERERS:
        if needle == provider or needle in host:
            return referer
    return "https://mangapill.com/" if provider == "mangapill" else "https://www.mangahere.cc/"


def image_etag(image_url: str) -> str:
    return '"' + base64.b64encode(image_url.encode()).decode()[:16] + '"'


async def fetch_manga_image(proxy: PassthroughProxy, image_url: str, provider: str, referer: Optional[str]) -> Dict[str, Any]:
    """Fetch a manga page image with provider-appropriate headers; returns content and type."""
    headers = {
        "User-Agent": USER_AGENTS[0],
        "Accept": "image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
        "Accept-Language": ACCEPT_LANGUAGE,
        "DNT": "1",
        "Sec-Fetch-Dest": "image",
        "Sec-Fetch-Mode": "no-cors",
        "Sec-Fetch-Site": "cross-site",
        "Referer": referer or manga_referer(provider, image_url),
    }
    if provider in MANGA_ORIGINS:
        headers["Origin"] = MANGA_ORIGINS[provider]

    async with httpx.AsyncClient(transport=proxy.transport, timeout=MANGA_IMAGE_TIMEOUT, follow_redirects=True) as client:
        resp = await client.get(image_url, headers=headers)
    if not resp.is_success:
        raise MediaFetchError(f"HTTP {resp.status_code}: {resp.reason_phrase}")
    if not resp.content:
        raise MediaFetchError("Received empty image data")
    return {
        "content": resp.content,
        "content_type": resp.headers.get("content-type") or "image/jpeg",
    }

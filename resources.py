# resources.py
"""
The lookup -> fetch -> normalize -> store -> respond protocol shared by the resource
endpoints, plus the JSON envelope and error helpers used at the HTTP boundary.
"""
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi.responses import JSONResponse

from cache import CacheStore
from upstream import UpstreamError, UpstreamStatusError

logger = logging.getLogger(__name__)


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"
    NONE = "NONE"
    UPDATE = "UPDATE"


class ApiError(Exception):
    """An error that maps directly to an HTTP status and a client-facing message."""

    def __init__(self, status_code: int, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details


def from_upstream(error: UpstreamError, message: str) -> ApiError:
    """Translate a fetch failure into the client error for one resource; upstream statuses pass through."""
    if isinstance(error, UpstreamStatusError):
        return ApiError(error.status_code, message)
    return ApiError(error.status_code, message, details=error.message)


def success_body(data: Any, **extra: Any) -> Dict[str, Any]:
    body = {"success": True, "data": data}
    body.update(extra)
    return body


def error_body(message: str, details: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "error": message}
    if details:
        body["details"] = details
    return body


def json_response(body: Any, cache_status: Optional[CacheStatus] = None, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    headers = dict(headers or {})
    if cache_status is not None:
        headers["X-Cache"] = cache_status.value
    return JSONResponse(content=body, status_code=status_code, headers=headers)


async def cached_resource(
    cache: CacheStore,
    key: str,
    ttl_seconds: int,
    produce: Callable[[], Awaitable[Any]],
    accept: Optional[Callable[[Any], Any]] = None,
) -> Tuple[Any, CacheStatus]:
    """
    Serve ``key`` from the cache, or produce, store and return a fresh value.

    ``accept`` may reshape a cached value; returning None from it rejects the entry
    (stale shape) and falls through to a fresh fetch.
    """
    if not cache.enabled:
        return await produce(), CacheStatus.NONE

    cached = await cache.get(key)
    if cached is not None:
        value = accept(cached) if accept else cached
        if value is not None:
            logger.info(f"Cache HIT {key}")
            return value, CacheStatus.HIT
        logger.info(f"Ignoring cached {key}: unexpected shape")

    logger.info(f"Cache MISS {key}")
    value = await produce()
    await cache.set(key, value, ttl_seconds)
    return value, CacheStatus.MISS


async def refreshed_resource(
    cache: CacheStore,
    key: str,
    ttl_seconds: int,
    produce: Callable[[], Awaitable[Any]],
) -> Tuple[Any, CacheStatus]:
    """
    Always fetch; report HIT when the fresh value equals the cached one, UPDATE when it
    replaced a different cached value and MISS when nothing was cached.
    """
    cached = await cache.get(key)
    value = await produce()
    if not cache.enabled:
        return value, CacheStatus.NONE
    if cached is not None and cached == value:
        return cached, CacheStatus.HIT
    await cache.set(key, value, ttl_seconds)
    return value, CacheStatus.UPDATE if cached is not None else CacheStatus.MISS

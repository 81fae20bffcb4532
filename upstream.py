# upstream.py
"""
Upstream HTTP access for the provider APIs.

Some providers check the Referer/Origin of every request, and the accepted value
differs between their mirrors. ``fetch_with_retry`` walks a short ordered list of
identity profiles, moving to the next one after any transport error or non-2xx
status, with a linearly growing pause between attempts.

Only transport errors and non-2xx statuses are retried here. A 200 whose payload
carries a failure flag is returned as-is; interpreting it is up to the caller.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, Tuple

from fastapi import Request
from httpx import AsyncClient, AsyncHTTPTransport, RequestError, Response, TimeoutException
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from models import IdentityProfile

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

DEFAULT_IDENTITIES: Tuple[IdentityProfile, ...] = (
    IdentityProfile(referer="https://rapid-cloud.co/", origin="https://rapid-cloud.co", user_agent=DEFAULT_USER_AGENT),
    IdentityProfile(referer="https://hianime.to/", origin="https://hianime.to", user_agent=DEFAULT_USER_AGENT),
)

# Longest upstream error text kept in error messages
ERROR_EXCERPT_LENGTH = 200

# Pause before identity N+1 is N times this many seconds
IDENTITY_BACKOFF = 0.5


class UpstreamError(Exception):
    """Raised when an upstream provider could not deliver a usable response."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class UpstreamStatusError(UpstreamError):
    def __init__(self, url: str, status_code: int, body: str = ""):
        self.url = url
        self.body = body[:ERROR_EXCERPT_LENGTH]
        super().__init__(f"HTTP {status_code}: {self.body}", status_code=status_code)


class UpstreamTransportError(UpstreamError):
    def __init__(self, url: str, cause: RequestError):
        self.url = url
        self.cause = cause
        status_code = 504 if isinstance(cause, TimeoutException) else 502
        super().__init__(f"{type(cause).__name__}: {cause}", status_code=status_code)


def identity_retrying(
    attempts: int,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    backoff: float = IDENTITY_BACKOFF,
) -> AsyncRetrying:
    """Retry controller for ``attempts`` upstream tries: 0.5 s, 1 s, 1.5 s... between them."""
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_incrementing(start=backoff, increment=backoff),
        retry=retry_if_exception_type(UpstreamError),
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        reraise=True,
    )


async def fetch_with_retry(
    client: AsyncClient,
    url: str,
    method: str = "GET",
    identities: Sequence[IdentityProfile] = DEFAULT_IDENTITIES,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> Tuple[Response, IdentityProfile]:
    """
    Request ``url`` once per identity profile, in order, until one gets a 2xx.

    Returns the successful response and the identity that produced it. Raises the
    last ``UpstreamError`` when every identity has been tried.
    """
    if not identities:
        raise ValueError("At least one identity profile is required")
    base_headers = dict(kwargs.pop("headers", None) or {})

    async for attempt in identity_retrying(len(identities), sleep=sleep):
        with attempt:
            number = attempt.retry_state.attempt_number
            identity = identities[number - 1]
            logger.info(f"Attempt {number}: {method} {url} with referer {identity.referer}")
            headers = {**base_headers, **identity.headers()}
            try:
                response = await client.request(method, url, headers=headers, **kwargs)
            except RequestError as e:
                logger.error(f"Attempt {number} network error for {url}: {e}")
                raise UpstreamTransportError(url, e) from e
            if not response.is_success:
                error = UpstreamStatusError(url, response.status_code, response.text)
                logger.error(f"Attempt {number} failed for {url}: {error}")
                raise error
            return response, identity


async def fetch_json(client: AsyncClient, url: str, **kwargs: Any) -> Any:
    """Single GET against a provider without referer checks; returns the decoded JSON body."""
    logger.info(f"Fetching {url}")
    try:
        response = await client.get(url, **kwargs)
    except RequestError as e:
        logger.error(f"Network error while fetching {url}: {e}")
        raise UpstreamTransportError(url, e) from e
    if not response.is_success:
        error = UpstreamStatusError(url, response.status_code, response.text)
        logger.error(f"Upstream error for {url}: {error}")
        raise error
    try:
        return response.json()
    except ValueError as e:
        logger.error(f"Invalid JSON from {url}: {e}")
        raise UpstreamError("Invalid JSON from upstream", status_code=502) from e


def build_http_client(transport=None) -> AsyncClient:
    return AsyncClient(
        transport=transport or AsyncHTTPTransport(retries=3),
        headers={"User-Agent": DEFAULT_USER_AGENT},
        timeout=15.0,
        follow_redirects=True,
    )


async def get_http_client(request: Request):
    # FastAPI dependency: one client per request, closed afterwards
    client = build_http_client(getattr(request.app.state, "transport", None))
    try:
        yield client
    finally:
        await client.aclose()

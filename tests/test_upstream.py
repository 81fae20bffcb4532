import asyncio

import httpx
import pytest

from conftest import Recorder
from models import IdentityProfile
from upstream import (
    DEFAULT_IDENTITIES,
    UpstreamError,
    UpstreamStatusError,
    UpstreamTransportError,
    fetch_json,
    fetch_with_retry,
    identity_retrying,
)


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def run_with_client(handler, call):
    recorder = Recorder(handler)

    async def main():
        async with httpx.AsyncClient(transport=recorder.transport) as client:
            return await call(client)

    return asyncio.run(main()), recorder


def test_identity_retrying_waits_longer_each_attempt():
    sleep = FakeSleep()
    attempts = []

    async def main():
        async for attempt in identity_retrying(4, sleep=sleep):
            with attempt:
                attempts.append(attempt.retry_state.attempt_number)
                raise UpstreamError("still failing")

    with pytest.raises(UpstreamError, match="still failing"):
        asyncio.run(main())
    assert attempts == [1, 2, 3, 4]
    # No pause after the final attempt
    assert sleep.delays == [0.5, 1.0, 1.5]


def test_identity_retrying_does_not_retry_other_errors():
    attempts = []

    async def main():
        async for attempt in identity_retrying(3, sleep=FakeSleep()):
            with attempt:
                attempts.append(attempt.retry_state.attempt_number)
                raise KeyError("boom")

    with pytest.raises(KeyError):
        asyncio.run(main())
    assert attempts == [1]


def test_fetch_with_retry_first_success_does_not_sleep():
    sleep = FakeSleep()

    (response, identity), recorder = run_with_client(
        lambda request: httpx.Response(200, json={"ok": True}),
        lambda client: fetch_with_retry(client, "https://anime.test/x", sleep=sleep),
    )

    assert identity == DEFAULT_IDENTITIES[0]
    assert len(recorder.requests) == 1
    assert sleep.delays == []


def test_fetch_with_retry_tries_every_identity_in_order():
    sleep = FakeSleep()
    identities = [
        IdentityProfile(referer=f"https://mirror{i}.test/", origin=f"https://mirror{i}.test", user_agent="UA")
        for i in range(3)
    ]

    with pytest.raises(UpstreamStatusError) as excinfo:
        run_with_client(
            lambda request: httpx.Response(403, text="denied"),
            lambda client: fetch_with_retry(client, "https://anime.test/x", identities=identities, sleep=sleep),
        )

    assert excinfo.value.status_code == 403
    assert "denied" in excinfo.value.message
    assert sleep.delays == [0.5, 1.0]


def test_fetch_with_retry_sends_identity_headers_and_returns_winner():
    sleep = FakeSleep()

    def handler(request):
        if request.headers["Referer"] == DEFAULT_IDENTITIES[0].referer:
            return httpx.Response(403)
        return httpx.Response(200, json={"ok": True})

    (response, identity), recorder = run_with_client(
        handler, lambda client: fetch_with_retry(client, "https://anime.test/x", sleep=sleep)
    )

    assert response.json() == {"ok": True}
    assert identity == DEFAULT_IDENTITIES[1]
    assert [r.headers["Referer"] for r in recorder.requests] == [p.referer for p in DEFAULT_IDENTITIES]
    assert recorder.requests[1].headers["Origin"] == "https://hianime.to"
    assert sleep.delays == [0.5]


def test_fetch_with_retry_wraps_network_errors():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamTransportError) as excinfo:
        run_with_client(handler, lambda client: fetch_with_retry(client, "https://anime.test/x", sleep=FakeSleep()))
    assert excinfo.value.status_code == 502


def test_fetch_json_decodes_body():
    data, _ = run_with_client(
        lambda request: httpx.Response(200, json={"data": [1, 2]}),
        lambda client: fetch_json(client, "https://hanime.test/api"),
    )
    assert data == {"data": [1, 2]}


def test_fetch_json_rejects_invalid_json():
    with pytest.raises(UpstreamError, match="Invalid JSON"):
        run_with_client(
            lambda request: httpx.Response(200, text="<html>"),
            lambda client: fetch_json(client, "https://hanime.test/api"),
        )


def test_fetch_json_truncates_error_body():
    with pytest.raises(UpstreamStatusError) as excinfo:
        run_with_client(
            lambda request: httpx.Response(500, text="x" * 1000),
            lambda client: fetch_json(client, "https://hanime.test/api"),
        )
    assert excinfo.value.status_code == 500
    assert len(excinfo.value.body) == 200

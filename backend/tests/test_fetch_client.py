import asyncio
import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.fetch_client import (
    ResilientFetchClient,
    TransientFetchError,
    UnavailableError,
    build_url,
)
from utils.retry import RetryConfig

API = "https://api.test/api/v1"


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _client(handler, clock=None, max_retries=2, timeout=5.0, ttl=30.0, max_concurrent=10, delay=0):
    return ResilientFetchClient(
        max_concurrent=max_concurrent,
        timeout_seconds=timeout,
        cache_ttl_seconds=ttl,
        retry_config=RetryConfig(max_retries=max_retries, delay_seconds=delay),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        clock=clock or _Clock(),
    )


def test_build_url_includes_query_string():
    url = build_url(f"{API}/account", {"by": "l1_address", "value": "0xabc"})
    assert url == f"{API}/account?by=l1_address&value=0xabc"
    assert build_url(f"{API}/account") == f"{API}/account"


@pytest.mark.asyncio
async def test_second_fetch_within_ttl_is_served_from_cache():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={"accounts": []})

    clock = _Clock()
    client = _client(handler, clock=clock)

    first = await client.fetch(f"{API}/account", params={"by": "l1_address", "value": "0xabc"})
    clock.now += 29
    second = await client.fetch(f"{API}/account", params={"by": "l1_address", "value": "0xabc"})

    assert first == second == {"accounts": []}
    assert len(calls) == 1
    assert client.get_status()["stats"]["cache_hits"] == 1


@pytest.mark.asyncio
async def test_fetch_after_ttl_expiry_hits_upstream():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={"n": len(calls)})

    clock = _Clock()
    client = _client(handler, clock=clock)

    await client.fetch(f"{API}/account")
    clock.now += 30
    result = await client.fetch(f"{API}/account")

    assert len(calls) == 2
    assert result == {"n": 2}


@pytest.mark.asyncio
async def test_cache_is_keyed_by_full_url():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params.get("value"))
        return httpx.Response(200, json={})

    client = _client(handler)

    await client.fetch(f"{API}/account", params={"value": "a"})
    await client.fetch(f"{API}/account", params={"value": "b"})
    await client.fetch(f"{API}/account", params={"value": "a"})

    assert calls == ["a", "b"]


@pytest.mark.asyncio
async def test_transient_failures_are_retried_then_succeed():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json={"ok": True})

    client = _client(handler, max_retries=3)

    assert await client.fetch(f"{API}/account") == {"ok": True}
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_unavailable_and_do_not_cache():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler, max_retries=2)

    with pytest.raises(UnavailableError) as exc_info:
        await client.fetch(f"{API}/account")

    assert len(attempts) == 3  # first try + 2 retries
    assert isinstance(exc_info.value.__cause__, TransientFetchError)
    assert client.get_status()["cache_size"] == 0
    assert client.get_status()["stats"]["unavailable"] == 1


@pytest.mark.asyncio
async def test_undecodable_body_is_a_transient_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>oops</html>")

    client = _client(handler, max_retries=1)

    with pytest.raises(UnavailableError):
        await client.fetch(f"{API}/account")


@pytest.mark.asyncio
async def test_slow_call_times_out_and_is_retried():
    attempts = []

    async def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            await asyncio.sleep(1)
        return httpx.Response(200, json={"ok": True})

    client = _client(handler, timeout=0.05, max_retries=1)

    assert await client.fetch(f"{API}/account") == {"ok": True}
    assert len(attempts) == 2
    assert client.get_status()["stats"]["failed_attempts"] == 1


@pytest.mark.asyncio
async def test_concurrency_is_bounded_by_gate():
    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200, json={})

    client = _client(handler, max_concurrent=2)

    await asyncio.gather(*(client.fetch(f"{API}/account", params={"value": str(i)}) for i in range(8)))

    assert peak == 2
    assert client.get_status()["in_flight"] == 0


@pytest.mark.asyncio
async def test_prune_and_invalidate():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    clock = _Clock()
    client = _client(handler, clock=clock)
    await client.fetch(f"{API}/a")
    clock.now += 20
    await client.fetch(f"{API}/b")
    clock.now += 15

    assert client.prune_cache() == 1
    assert client.invalidate(f"{API}/b") is True
    assert client.invalidate(f"{API}/b") is False
    assert client.get_status()["cache_size"] == 0


@pytest.mark.asyncio
async def test_gate_waiters_enter_in_arrival_order():
    order = []
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        value = request.url.params["value"]
        order.append(value)
        if value == "holder":
            await release.wait()
        return httpx.Response(200, json={})

    client = _client(handler, max_concurrent=1)

    holder = asyncio.create_task(client.fetch(f"{API}/account", params={"value": "holder"}))
    await asyncio.sleep(0.01)
    waiters = [
        asyncio.create_task(client.fetch(f"{API}/account", params={"value": value}))
        for value in ("c", "a", "b")
    ]
    await asyncio.sleep(0.01)
    assert order == ["holder"]

    release.set()
    await asyncio.gather(holder, *waiters)

    assert order == ["holder", "c", "a", "b"]


@pytest.mark.asyncio
async def test_retry_delay_is_spent_outside_the_gate():
    order = []

    async def handler(request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        order.append(name)
        if name == "flaky" and order.count("flaky") == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"name": name})

    client = _client(handler, max_concurrent=1, max_retries=1, delay=0.5)

    flaky = asyncio.create_task(client.fetch(f"{API}/flaky"))
    await asyncio.sleep(0.05)
    # The only slot is free while the flaky call waits out its delay.
    other = await asyncio.wait_for(client.fetch(f"{API}/other"), timeout=0.2)

    assert other == {"name": "other"}
    assert not flaky.done()
    assert await flaky == {"name": "flaky"}
    # The retry took a fresh slot after the other call released it.
    assert order == ["flaky", "other", "flaky"]
    assert client.get_status()["stats"]["failed_attempts"] == 1


@pytest.mark.asyncio
async def test_own_client_allows_responses_up_to_the_configured_timeout():
    delay = 5.5

    async def slow_server(reader, writer):
        await reader.readuntil(b"\r\n\r\n")
        await asyncio.sleep(delay)
        body = b'{"ok": true}'
        writer.write(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
            + f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n".encode()
            + body
        )
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(slow_server, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    client = ResilientFetchClient(
        timeout_seconds=8.0,
        retry_config=RetryConfig(max_retries=0, delay_seconds=0),
    )
    try:
        assert await client.fetch(f"http://127.0.0.1:{port}/slow") == {"ok": True}
        assert client._client.timeout.read == 8.0
    finally:
        await client.close()
        server.close()
        await server.wait_closed()

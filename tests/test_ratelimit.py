"""Tests for the per-bucket dispatcher: ordering, concurrency, 429 and
5xx handling, global pauses and lifecycle.
"""

import asyncio
import logging

import aiohttp
import pytest

from restcord import (
    CancelledError,
    RateLimitExhaustedError,
    Route,
    TransportError,
)

from .fakes import Reply, drain, make_client, ok

# discord's timers are not exact and neither is the loop's clock
SLACK = 0.01


def channel_route(channel_id=1):
    return Route("GET", "/channels/{channel_id}/messages", channel_id=channel_id)


def ratelimited(retry_after, **body):
    return Reply(
        429,
        {"message": "You are being rate limited.", "retry_after": retry_after, **body},
    )


def now():
    return asyncio.get_running_loop().time()


class TestOrdering:
    @pytest.mark.asyncio
    async def test_same_bucket_runs_in_submission_order(self):
        client, session = make_client(
            lambda call: ok({"id": call.params["n"]}, delay=0.005)
        )
        route = channel_route()

        futures = [
            client.action(route.with_query(n=n)).submit() for n in range(5)
        ]
        results = await asyncio.gather(*futures)

        assert [r["id"] for r in results] == ["0", "1", "2", "3", "4"]
        assert [c.params["n"] for c in session.calls] == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_one_request_in_flight_per_bucket(self):
        client, session = make_client(lambda call: ok({}, delay=0.02))

        futures = [client.action(channel_route(1)).submit() for _ in range(3)]
        futures += [client.action(channel_route(2)).submit() for _ in range(3)]
        await asyncio.gather(*futures)

        assert session.max_in_flight["GET /channels/1/messages"] == 1
        assert session.max_in_flight["GET /channels/2/messages"] == 1
        assert session.max_total_in_flight == 2

    @pytest.mark.asyncio
    async def test_ratelimited_request_keeps_its_place(self):
        replies = iter([ratelimited(0.01), ok({}), ok({})])
        client, session = make_client(lambda call: next(replies))
        route = channel_route()

        first = client.action(route.with_query(n="first")).submit()
        second = client.action(route.with_query(n="second")).submit()
        await asyncio.gather(first, second)

        assert [c.params["n"] for c in session.calls] == ["first", "first", "second"]


class TestRateLimits:
    @pytest.mark.asyncio
    async def test_429_is_retried_after_waiting(self):
        times = []

        def handler(call):
            times.append(now())
            if len(times) == 1:
                return ratelimited(0.1)
            return ok({"id": "1"})

        client, session = make_client(handler)

        assert await client.action(channel_route()) == {"id": "1"}
        assert len(session.calls) == 2
        assert times[1] - times[0] >= 0.1 - SLACK

    @pytest.mark.asyncio
    async def test_429_uses_retry_after_header_without_body(self):
        times = []

        def handler(call):
            times.append(now())
            if len(times) == 1:
                return Reply(429, headers={"Retry-After": "0.05"})
            return ok({})

        client, _ = make_client(handler)

        await client.action(channel_route())
        assert times[1] - times[0] >= 0.05 - SLACK

    @pytest.mark.asyncio
    async def test_429_gives_up_after_the_cap(self):
        client, session = make_client(
            lambda call: ratelimited(0.001), max_ratelimit_retries=2
        )

        with pytest.raises(RateLimitExhaustedError):
            await client.action(channel_route())
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_bucket_waits_for_reset(self):
        times = []

        def handler(call):
            times.append(now())
            return ok(
                {},
                headers={
                    "X-RateLimit-Limit": "1",
                    "X-RateLimit-Remaining": "0" if len(times) == 1 else "1",
                    "X-RateLimit-Reset-After": "0.1",
                    "X-RateLimit-Bucket": "abcd1234",
                },
            )

        client, _ = make_client(handler)
        route = channel_route()

        await asyncio.gather(client.action(route).submit(), client.action(route).submit())

        assert times[1] - times[0] >= 0.1 - SLACK
        assert client.ratelimiter.get_bucket(route).hash == "abcd1234"

    @pytest.mark.asyncio
    async def test_global_ratelimit_pauses_every_bucket(self):
        times = {}

        def handler(call):
            times.setdefault(call.path, []).append(now())
            if call.path == "/channels/1/messages" and len(times[call.path]) == 1:
                return ratelimited(0.1, **{"global": True})
            return ok({})

        client, _ = make_client(handler)

        first = client.action(channel_route(1)).submit()
        await asyncio.sleep(0.02)
        assert client.ratelimiter.is_globally_limited

        second = client.action(channel_route(2)).submit()
        await asyncio.gather(first, second)

        started = times["/channels/1/messages"][0]
        assert times["/channels/2/messages"][0] - started >= 0.1 - SLACK
        assert not client.ratelimiter.is_globally_limited

    @pytest.mark.asyncio
    async def test_cloudflare_ban_pauses_every_bucket(self, caplog):
        replies = iter([Reply(429, headers={"Via": None, "Retry-After": "0.05"}), ok({})])
        client, session = make_client(lambda call: next(replies))

        with caplog.at_level(logging.ERROR, logger="restcord.rest.ratelimit"):
            future = client.action(channel_route()).submit()
            await asyncio.sleep(0.01)
            assert client.ratelimiter.is_globally_limited
            await future

        assert len(session.calls) == 2
        assert any("cloudflare" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_overlapping_pauses_extend_to_the_latest(self):
        client, _ = make_client(lambda call: ok({}))
        limiter = client.ratelimiter

        limiter.pause(0.05)
        limiter.pause(0.01)
        await asyncio.sleep(0.03)
        assert limiter.is_globally_limited

        await asyncio.sleep(0.04)
        assert not limiter.is_globally_limited


class TestServerErrors:
    @pytest.mark.asyncio
    async def test_5xx_is_retried(self):
        replies = iter([Reply(502, "Bad Gateway"), Reply(500), ok({"id": "1"})])
        client, session = make_client(lambda call: next(replies))

        assert await client.action(channel_route()) == {"id": "1"}
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_5xx_fails_once_retries_run_out(self):
        client, session = make_client(lambda call: Reply(503), max_server_retries=2)

        with pytest.raises(TransportError) as info:
            await client.action(channel_route())

        assert info.value.status == 503
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_connection_errors_become_transport_errors(self):
        def handler(call):
            raise aiohttp.ClientConnectionError("connection reset")

        client, session = make_client(handler)

        with pytest.raises(TransportError) as info:
            await client.action(channel_route())

        assert info.value.status is None
        assert len(session.calls) == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_requests_only_touches_queued_actions(self):
        gate = asyncio.Event()

        async def handler(call):
            await gate.wait()
            return ok({})

        client, session = make_client(handler)
        route = channel_route()

        first = client.action(route).submit()
        queued = [client.action(route).submit() for _ in range(2)]
        while not session.calls:
            await asyncio.sleep(0)

        assert client.ratelimiter.cancel_requests() == 2
        gate.set()

        assert await first == {}
        for future in queued:
            with pytest.raises(CancelledError):
                await future
        await drain(client)
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_idle_buckets_expire(self):
        client, _ = make_client(lambda call: ok({}))

        await client.action(channel_route(1))
        await drain(client)

        limiter = client.ratelimiter
        assert limiter.cleanup() == 0
        assert limiter.cleanup(now() + client.config.bucket_expiry + 1) == 1
        assert limiter.buckets == {}

    @pytest.mark.asyncio
    async def test_close_fails_pending_work(self):
        async def handler(call):
            await asyncio.Event().wait()

        client, session = make_client(handler)
        route = channel_route()

        in_flight = client.action(route).submit()
        queued = client.action(route).submit()
        while not session.calls:
            await asyncio.sleep(0)

        await client.close()

        with pytest.raises(CancelledError, match="closing"):
            await in_flight
        with pytest.raises(CancelledError):
            await queued
        assert all(bucket.worker is None for bucket in client.ratelimiter.buckets.values())

    @pytest.mark.asyncio
    async def test_client_as_context_manager(self):
        client, session = make_client(lambda call: ok({}))

        async with client:
            response = await client.request(channel_route())

        assert response.code == 200
        assert len(session.calls) == 1

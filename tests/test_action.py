"""Tests for the RestAction lifecycle: configuration, submission,
callbacks, blocking completion and cancellation.
"""

import asyncio
import logging
import threading

import pytest

from restcord import (
    ActionState,
    CancelledError,
    IllegalStateError,
    RequestTimeoutError,
    RESTClient,
    RESTConfig,
    Route,
    UnknownEntity,
)

from .fakes import BASE_URL, FakeSession, Reply, drain, make_client, ok

ROUTE = Route("GET", "/channels/{channel_id}", channel_id=1)


def gated(gate: asyncio.Event, body=None):
    async def handler(call):
        await gate.wait()
        return ok(body)

    return handler


class TestSubmission:
    @pytest.mark.asyncio
    async def test_nothing_is_sent_before_submit(self):
        client, session = make_client(lambda call: ok({"id": "1"}))

        action = client.action(ROUTE).reason("because")
        await asyncio.sleep(0.01)

        assert session.calls == []
        assert action.state is ActionState.IDLE

    @pytest.mark.asyncio
    async def test_submit_resolves_with_transformed_value(self):
        client, session = make_client(lambda call: ok({"id": "1", "name": "general"}))
        seen = []

        def transform(response):
            seen.append(response)
            return response.json()["name"]

        assert await client.action(ROUTE, transform).submit() == "general"
        assert len(seen) == 1
        assert len(session.calls) == 1
        assert session.calls[0].headers["Authorization"] == "Bot token"

    @pytest.mark.asyncio
    async def test_action_can_be_awaited(self):
        client, _ = make_client(lambda call: ok({"id": "1"}))

        assert await client.action(ROUTE) == {"id": "1"}

    @pytest.mark.asyncio
    async def test_empty_body_resolves_to_none(self):
        client, _ = make_client(lambda call: Reply(204))

        assert await client.action(ROUTE) is None

    @pytest.mark.asyncio
    async def test_submit_twice_is_an_error(self):
        client, _ = make_client(lambda call: ok({}))
        action = client.action(ROUTE)

        future = action.submit()
        with pytest.raises(IllegalStateError):
            action.submit()
        await future

    @pytest.mark.asyncio
    async def test_configure_after_submit_is_an_error(self):
        client, _ = make_client(lambda call: ok({}))
        action = client.action(ROUTE)
        future = action.submit()

        with pytest.raises(IllegalStateError):
            action.configure(audit_reason="too late")
        with pytest.raises(IllegalStateError):
            action.header("X-Test", "1")
        await future

    @pytest.mark.asyncio
    async def test_audit_reason_header(self):
        client, session = make_client(lambda call: ok({}))

        await client.action(ROUTE).configure(audit_reason="bye / later")

        assert session.calls[0].headers["X-Audit-Log-Reason"] == "bye %2F later"

    @pytest.mark.asyncio
    async def test_audit_reason_can_be_removed(self):
        client, session = make_client(lambda call: ok({}))

        await client.action(ROUTE, reason="first").configure(audit_reason=None)

        assert "X-Audit-Log-Reason" not in session.calls[0].headers

    @pytest.mark.asyncio
    async def test_semantic_errors_are_not_retried(self):
        client, session = make_client(
            lambda call: Reply(404, {"code": 10003, "message": "Unknown Channel"})
        )

        with pytest.raises(UnknownEntity) as info:
            await client.action(ROUTE)

        assert info.value.errno == 10003
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_transform_errors_fail_the_future(self):
        client, session = make_client(lambda call: ok({}))

        def transform(response):
            raise KeyError("name")

        with pytest.raises(KeyError):
            await client.action(ROUTE, transform)
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_future_stays_inspectable(self):
        client, _ = make_client(lambda call: Reply(403, {"code": 50013, "message": "Missing Permissions"}))
        action = client.action(ROUTE)
        action.submit()

        await drain(client)

        assert action.future.done()
        assert action.future.exception().errno == 50013


class TestQueue:
    @pytest.mark.asyncio
    async def test_callbacks_receive_the_result(self):
        client, _ = make_client(lambda call: ok({"id": "1"}))
        results = []

        client.action(ROUTE).queue(results.append, pytest.fail)
        await drain(client)

        assert results == [{"id": "1"}]

    @pytest.mark.asyncio
    async def test_default_failure_logs_errors(self, caplog):
        client, _ = make_client(lambda call: Reply(404, {"code": 10003, "message": "Unknown Channel"}))

        with caplog.at_level(logging.ERROR, logger="restcord.rest.action"):
            client.action(ROUTE).queue()
            await drain(client)

        assert any("RestAction queue returned failure" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_default_failure_keeps_cancellations_quiet(self, caplog):
        gate = asyncio.Event()
        client, _ = make_client(gated(gate))

        with caplog.at_level(logging.ERROR, logger="restcord.rest.action"):
            client.action(ROUTE).queue()
            action = client.action(ROUTE)
            action.queue()
            action.cancel()
            gate.set()
            await drain(client)

        assert caplog.records == []

    @pytest.mark.asyncio
    async def test_default_failure_can_be_replaced(self):
        client, _ = make_client(lambda call: Reply(404, {"code": 10003, "message": "?"}))
        failures = []
        client.default_failure = failures.append

        client.action(ROUTE).queue()
        await drain(client)

        assert len(failures) == 1
        assert isinstance(failures[0], UnknownEntity)

    @pytest.mark.asyncio
    async def test_callback_errors_go_to_the_uncaught_handler(self):
        client, _ = make_client(lambda call: ok({}))
        uncaught = []
        client.uncaught_handler = uncaught.append

        def explode(value):
            raise RuntimeError("boom")

        client.action(ROUTE).queue(explode)
        client.action(ROUTE).queue()
        await drain(client)

        assert len(uncaught) == 1
        assert str(uncaught[0]) == "boom"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_dispatch_makes_no_call(self):
        gate = asyncio.Event()
        client, session = make_client(gated(gate, {}))

        first = client.action(ROUTE).submit()
        second_action = client.action(ROUTE)
        second = second_action.submit()

        assert second_action.cancel()
        gate.set()
        await first
        await drain(client)

        assert len(session.calls) == 1
        with pytest.raises(CancelledError):
            second.result()

    @pytest.mark.asyncio
    async def test_cancelling_the_future_removes_the_action(self):
        gate = asyncio.Event()
        client, session = make_client(gated(gate, {}))

        first = client.action(ROUTE).submit()
        action = client.action(ROUTE)
        action.submit().cancel()
        await asyncio.sleep(0)

        bucket = client.ratelimiter.get_bucket(ROUTE)
        assert action not in bucket.requests
        assert action.state is ActionState.DONE

        gate.set()
        await first
        await drain(client)
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_in_flight_discards_the_response(self):
        gate = asyncio.Event()
        client, session = make_client(gated(gate, {}))
        transformed = []

        action = client.action(ROUTE, transformed.append)
        future = action.submit()
        while not session.calls:
            await asyncio.sleep(0)

        assert action.state is ActionState.IN_FLIGHT
        assert action.cancel()
        gate.set()
        await drain(client)

        with pytest.raises(CancelledError, match="in flight"):
            future.result()
        assert transformed == []

    @pytest.mark.asyncio
    async def test_cancel_before_submit(self):
        client, session = make_client(lambda call: ok({}))
        action = client.action(ROUTE)

        assert action.cancel()
        assert not action.cancel()

        with pytest.raises(CancelledError, match="before submission"):
            await action
        with pytest.raises(IllegalStateError):
            action.submit()
        await drain(client)
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_cancel_before_queue_reaches_the_failure_callback(self):
        client, session = make_client(lambda call: ok({}))
        failures = []

        action = client.action(ROUTE)
        action.cancel()
        action.queue(pytest.fail, failures.append)
        await asyncio.sleep(0)

        assert len(failures) == 1
        assert isinstance(failures[0], CancelledError)
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_cancel_after_resolution(self):
        client, _ = make_client(lambda call: ok({}))
        action = client.action(ROUTE)

        await action
        assert not action.cancel()

    @pytest.mark.asyncio
    async def test_failing_check_cancels_without_a_call(self):
        client, session = make_client(lambda call: ok({}))

        with pytest.raises(CancelledError):
            await client.action(ROUTE).set_check(lambda: False)
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_check_is_skipped_when_disabled(self):
        client, session = make_client(lambda call: ok({}))

        action = client.action(ROUTE).set_check(lambda: False)
        await action.configure(check_permissions=False)

        assert len(session.calls) == 1


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_timeout_fails_the_action(self):
        client, _ = make_client(gated(asyncio.Event()))

        with pytest.raises(RequestTimeoutError):
            await client.action(ROUTE).timeout(0.05)
        await client.close()

    @pytest.mark.asyncio
    async def test_timeout_while_queued(self):
        gate = asyncio.Event()
        client, session = make_client(gated(gate, {}))

        first = client.action(ROUTE).submit()
        with pytest.raises(RequestTimeoutError):
            await client.action(ROUTE).timeout(0.05)

        gate.set()
        await first
        await drain(client)
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_default_timeout_comes_from_config(self):
        client, _ = make_client(gated(asyncio.Event()), default_timeout=0.05)

        with pytest.raises(RequestTimeoutError):
            await client.action(ROUTE)
        await client.close()

    @pytest.mark.asyncio
    async def test_deadline_in_the_past(self):
        client, session = make_client(lambda call: ok({}))

        with pytest.raises(RequestTimeoutError):
            await client.action(ROUTE).deadline(0)
        assert session.calls == []


class TestComplete:
    @pytest.mark.asyncio
    async def test_complete_refuses_to_block_the_loop(self):
        client, session = make_client(lambda call: ok({}))

        with pytest.raises(IllegalStateError):
            client.action(ROUTE).complete()
        assert session.calls == []

    def test_complete_from_another_thread(self):
        loop = asyncio.new_event_loop()
        thread = threading.Thread(target=loop.run_forever, daemon=True)
        thread.start()
        try:
            session = FakeSession(lambda call: ok({"id": "1"}))
            client = RESTClient(
                session=session, token="token", config=RESTConfig(base_url=BASE_URL), loop=loop
            )

            assert client.action(ROUTE).complete(timeout=5) == {"id": "1"}
            assert len(session.calls) == 1
        finally:
            loop.call_soon_threadsafe(loop.stop)
            thread.join()
            loop.close()

    def test_complete_without_a_running_loop(self):
        client = RESTClient(session=FakeSession(lambda call: ok({})), token="token")

        with pytest.raises(IllegalStateError):
            client.action(ROUTE).complete()

    def test_submit_outside_of_a_loop(self):
        client = RESTClient(session=FakeSession(lambda call: ok({})), token="token")

        with pytest.raises(IllegalStateError):
            client.action(ROUTE).submit()

from __future__ import annotations

import asyncio
import enum
import logging
import time
import typing
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    TypeVar,
)
from urllib import parse

import attr

from .builders import FormBuilder, JSONBuilder
from .errors import (
    CancelledError,
    HTTPException,
    IllegalStateError,
    RequestTimeoutError,
    ValidationError,
    map_http_error,
)
from .response import Response
from .route import Route

if typing.TYPE_CHECKING:
    from .client import RESTClient

__all__ = (
    "BaseAction",
    "RestAction",
    "DerivedAction",
    "ActionState",
    "all_of",
    "default_failure",
    "default_success",
    "default_uncaught",
    "json_transform",
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

_UNSET: Any = object()

AUDIT_LOG_REASON = "X-Audit-Log-Reason"


class ActionState(enum.Enum):
    IDLE = "idle"
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    DONE = "done"


def json_transform(response: Response) -> Any:
    """The default transform, parsed JSON (or None for empty bodies)"""

    if not response.data:
        return None
    return response.json_or_text()


def default_success(value: Any) -> None:
    pass


def default_failure(exc: BaseException) -> None:
    """Failure handler used by `RestAction.queue` when none is given.
    Cancellations and timeouts are only interesting while debugging,
    everything else is logged as an error.
    """

    if isinstance(exc, (CancelledError, RequestTimeoutError)):
        logger.debug("RestAction queue returned failure: %s", exc)
    elif isinstance(exc, HTTPException) and not logger.isEnabledFor(logging.DEBUG):
        logger.error(
            "RestAction queue returned failure: [%s] %s",
            type(exc).__name__,
            exc,
        )
    else:
        logger.error("RestAction queue returned failure", exc_info=exc)


def default_uncaught(exc: BaseException) -> None:
    logger.error("Uncaught exception in RestAction callback", exc_info=exc)


def _cancelled_future(
    loop: asyncio.AbstractEventLoop, message: str
) -> asyncio.Future:
    future = loop.create_future()
    future.set_exception(CancelledError(message))
    return future


class BaseAction(Generic[T]):
    """What every action can do once it knows how to `submit` itself:
    callbacks, blocking completion, awaiting and the composition
    operators. Subclasses provide `client`, `state`, `future`, `submit`
    and `cancel`.

    Operators never submit anything, they return a new `DerivedAction`
    that submits its sources when it is submitted itself. A source handed
    to an operator belongs to the result and must not be submitted on its
    own.
    """

    __slots__ = ()

    client: RESTClient
    state: ActionState

    def submit(self) -> asyncio.Future:
        raise NotImplementedError

    def cancel(self) -> bool:
        raise NotImplementedError

    @property
    def future(self) -> Optional[asyncio.Future]:
        raise NotImplementedError

    def _ensure_idle(self) -> None:
        if self.state is not ActionState.IDLE:
            raise IllegalStateError("action has already been submitted")

    def _running_loop(self) -> asyncio.AbstractEventLoop:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise IllegalStateError(
                "submit() must be called from the client's event loop, "
                "use complete() from other threads"
            ) from None

        self.client.bind_loop(loop)
        return loop

    def _claim(self) -> asyncio.AbstractEventLoop:
        self._ensure_idle()
        loop = self._running_loop()
        self.state = ActionState.QUEUED
        return loop

    def queue(
        self,
        on_success: Optional[Callable[[T], Any]] = None,
        on_failure: Optional[Callable[[BaseException], Any]] = None,
    ) -> None:
        """Fire and forget. The callbacks run on the event loop once the
        action resolves, exceptions raised by them are passed to the
        client's `uncaught_handler`.
        """

        future = self.submit()
        success = on_success if on_success is not None else self.client.default_success
        failure = on_failure if on_failure is not None else self.client.default_failure

        def callback(fut: asyncio.Future) -> None:
            try:
                if fut.cancelled():
                    failure(CancelledError("future was cancelled"))
                elif fut.exception() is not None:
                    failure(fut.exception())
                else:
                    success(fut.result())
            except Exception as exc:
                self.client.uncaught_handler(exc)

        future.add_done_callback(callback)

    async def _submit_and_wait(self) -> T:
        return await self.submit()

    def complete(self, timeout: Optional[float] = None) -> T:
        """Submit the action and block the calling thread until it
        resolves.

        This must not be called from a thread running an event loop (the
        loop would stop draining the buckets and never resolve it), use
        ``await action`` there instead.

        Raises
        ------
        restcord.rest.errors.IllegalStateError
            Called from an event loop thread, or the client is not bound
            to a running loop.
        """

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            raise IllegalStateError(
                "complete() would block the event loop, await the action instead"
            )

        loop = self.client.loop
        if loop is None or not loop.is_running() or loop.is_closed():
            raise IllegalStateError("the client's event loop is not running")

        return asyncio.run_coroutine_threadsafe(self._submit_and_wait(), loop).result(
            timeout
        )

    def __await__(self):
        return self.submit().__await__()

    # operators

    def map(self, function: Callable[[T], U]) -> DerivedAction[U]:
        """Apply `function` to the result once this action succeeds"""

        async def run() -> U:
            return function(await self.submit())

        return DerivedAction(self.client, run)

    def flat_map(self, function: Callable[[T], BaseAction[U]]) -> DerivedAction[U]:
        """Chain a follow-up request built from this action's result.

        Parameters
        ----------
        function : typing.Callable[[T], restcord.rest.action.BaseAction]
            Receives the result and returns the action to run next, which
            is submitted right away.
        """

        async def run() -> U:
            return await function(await self.submit()).submit()

        return DerivedAction(self.client, run)

    def on_error_map(
        self,
        function: Callable[[Exception], T],
        condition: Optional[Callable[[Exception], bool]] = None,
    ) -> DerivedAction[T]:
        """Turn a failure into a fallback value. Only failures for which
        `condition` returns True are handled (all of them by default),
        others propagate unchanged.
        """

        async def run() -> T:
            try:
                return await self.submit()
            except Exception as exc:
                if condition is not None and not condition(exc):
                    raise
                return function(exc)

        return DerivedAction(self.client, run)

    def on_error_flat_map(
        self,
        function: Callable[[Exception], BaseAction[T]],
        condition: Optional[Callable[[Exception], bool]] = None,
    ) -> DerivedAction[T]:
        """Like `on_error_map` but the fallback is another request"""

        async def run() -> T:
            try:
                return await self.submit()
            except Exception as exc:
                if condition is not None and not condition(exc):
                    raise
                fallback = function(exc)
            return await fallback.submit()

        return DerivedAction(self.client, run)

    def delay(self, seconds: float) -> DerivedAction[T]:
        """Hold the result back for `seconds` after this action succeeded"""

        async def run() -> T:
            value = await self.submit()
            await asyncio.sleep(seconds)
            return value

        return DerivedAction(self.client, run)

    def combine(
        self, other: BaseAction[U], accumulator: Callable[[T, U], Any]
    ) -> DerivedAction[Any]:
        """Run both actions concurrently and merge their results"""
        return all_of(self, other).map(lambda values: accumulator(*values))

    def zip(self, *others: BaseAction[Any]) -> DerivedAction[List[Any]]:
        """Run this and `others` concurrently, see `all_of`"""
        return all_of(self, *others)

    def _after(self, seconds: float) -> DerivedAction[T]:
        async def run() -> T:
            await asyncio.sleep(seconds)
            return await self.submit()

        return DerivedAction(self.client, run)

    def submit_after(self, seconds: float) -> asyncio.Future:
        """Submit this action `seconds` from now. Cancelling the returned
        future before then means the request is never sent.
        """

        return self._after(seconds).submit()

    def queue_after(
        self,
        seconds: float,
        on_success: Optional[Callable[[T], Any]] = None,
        on_failure: Optional[Callable[[BaseException], Any]] = None,
    ) -> DerivedAction[T]:
        """`queue` this action `seconds` from now. Returns the scheduled
        action, cancel it to call the request off.
        """

        scheduled = self._after(seconds)
        scheduled.queue(on_success, on_failure)
        return scheduled


@attr.define(eq=False)
class RestAction(BaseAction[T]):
    """A deferred HTTP request plus the function that turns the response
    into a value. Nothing is sent until the action is submitted (through
    `submit`, `queue`, `complete` or by awaiting it) and an action can
    only be submitted once.

    Execution happens on the client's event loop, in submission order per
    rate limit bucket.
    """

    client: RESTClient = attr.field()
    """ The client whose dispatcher will execute the action """

    route: Route = attr.field()
    """ Where the request goes """

    transform: Callable[[Response], T] = attr.field(default=json_transform)
    """ Applied exactly once to a successful response """

    json: Optional[JSONBuilder] = attr.field(default=None, kw_only=True)
    form: Optional[FormBuilder] = attr.field(default=None, kw_only=True)

    headers: Dict[str, str] = attr.field(factory=dict, kw_only=True)
    """ Extra headers sent with the request """

    check_permissions: bool = attr.field(default=True, kw_only=True)
    """ Whether the pre-flight check (see `set_check`) is evaluated """

    state: ActionState = attr.field(default=ActionState.IDLE, init=False)

    ratelimit_hits: int = attr.field(default=0, init=False)
    server_attempts: int = attr.field(default=0, init=False)

    _timeout: Optional[float] = attr.field(init=False)
    _deadline: Optional[float] = attr.field(default=None, init=False)
    _check: Optional[Callable[[], bool]] = attr.field(default=None, init=False)
    _cancelled: bool = attr.field(default=False, init=False)
    _future: Optional[asyncio.Future] = attr.field(default=None, init=False)
    _timer: Optional[asyncio.TimerHandle] = attr.field(default=None, init=False)
    _expires_at: Optional[float] = attr.field(default=None, init=False)

    def __attrs_post_init__(self):
        self._timeout = self.client.config.default_timeout

    # configuration, only allowed while idle

    def configure(
        self,
        *,
        audit_reason: Optional[str] = _UNSET,
        timeout_override: Optional[float] = _UNSET,
        check_permissions: Optional[bool] = _UNSET,
    ) -> RestAction[T]:
        """Change the action's configuration before it is submitted.

        Parameters
        ----------
        audit_reason : typing.Optional[builtins.str]
            Reason shown in the guild's audit log (`None` removes it).
        timeout_override : typing.Optional[builtins.float]
            Seconds before the action fails with a timeout, `None`
            disables the timeout.
        check_permissions : builtins.bool
            Whether the pre-flight check is evaluated.

        Raises
        ------
        restcord.rest.errors.IllegalStateError
            The action was already submitted.
        """

        self._ensure_idle()

        if audit_reason is not _UNSET:
            if audit_reason is None:
                self.headers.pop(AUDIT_LOG_REASON, None)
            else:
                self.headers[AUDIT_LOG_REASON] = parse.quote(audit_reason, safe=" ")

        if timeout_override is not _UNSET:
            self._timeout = timeout_override

        if check_permissions is not _UNSET:
            self.check_permissions = bool(check_permissions)

        return self

    def reason(self, reason: Optional[str]) -> RestAction[T]:
        return self.configure(audit_reason=reason)

    def timeout(self, seconds: Optional[float]) -> RestAction[T]:
        return self.configure(timeout_override=seconds)

    def deadline(self, timestamp: Optional[float]) -> RestAction[T]:
        """Fail the action if it has not resolved by `timestamp` (unix
        time, as returned by `time.time`).
        """

        self._ensure_idle()
        self._deadline = timestamp
        return self

    def header(self, name: str, value: str) -> RestAction[T]:
        self._ensure_idle()
        self.headers[name] = value
        return self

    def set_check(self, check: Optional[Callable[[], bool]]) -> RestAction[T]:
        """A callable evaluated right before the request is executed, if
        it returns False the action is cancelled without a network call.
        """

        self._ensure_idle()
        self._check = check
        return self

    # execution

    @property
    def future(self) -> Optional[asyncio.Future]:
        """The future returned by `submit`, kept for diagnostics"""
        return self._future

    @property
    def is_submitted(self) -> bool:
        return self.state is not ActionState.IDLE

    @property
    def is_done(self) -> bool:
        return self._future is not None and self._future.done()

    def _effective_timeout(self) -> Optional[float]:
        timeout = self._timeout
        if self._deadline is not None:
            left = self._deadline - time.time()
            timeout = left if timeout is None else min(timeout, left)
        return timeout

    def submit(self) -> asyncio.Future:
        """Queue the action on its rate limit bucket.

        Returns
        -------
        asyncio.Future
            Resolves to the transformed response, or fails with one of the
            errors in `restcord.rest.errors`. Network errors never escape
            this call itself.

        Raises
        ------
        restcord.rest.errors.IllegalStateError
            The action was already submitted, or there is no running
            event loop.
        """

        loop = self._claim()
        if self._cancelled:
            future = _cancelled_future(loop, f"{self.route} was cancelled before submission")
        else:
            future = loop.create_future()
        future.add_done_callback(self._on_future_done)
        self._future = future
        if future.done():
            return future

        timeout = self._effective_timeout()
        if timeout is not None:
            self._expires_at = loop.time() + timeout
            self._timer = loop.call_later(max(timeout, 0), self._expire)

        self.client.ratelimiter.enqueue(self)
        return future

    def cancel(self) -> bool:
        """Cancel the action. A queued action is removed from its bucket
        without any network effect, an in-flight one has its response
        discarded. The future fails with `CancelledError`. An action that
        was not submitted yet hands out an already failed future once it
        is.

        Returns False if the action already resolved (or was cancelled).
        """

        if self._future is None:
            if self._cancelled:
                return False
            self._cancelled = True
            return True

        if self.is_done:
            return False

        self._cancelled = True
        started = self.state is ActionState.IN_FLIGHT
        self._fail(
            CancelledError(
                f"{self.route} was cancelled"
                + (" while in flight" if started else "")
            )
        )
        return True

    # dispatcher side

    def _on_future_done(self, future: asyncio.Future) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        if self.state is ActionState.QUEUED:
            self.client.ratelimiter.discard(self)

        self.state = ActionState.DONE

    def _expire(self) -> None:
        self._timer = None
        if not self.is_done:
            self._fail(RequestTimeoutError(f"{self.route} timed out"))

    def _remaining_time(self, now: float) -> Optional[float]:
        if self._expires_at is None:
            return None
        return self._expires_at - now

    def _preflight(self) -> bool:
        """Evaluated by the bucket worker when the action reaches the head
        of the queue. Returns False (and fails the action) if it should
        not be executed.
        """

        if self.is_done:
            return False

        if self.check_permissions and self._check is not None:
            try:
                allowed = self._check()
            except Exception as exc:
                self._fail(exc)
                return False

            if not allowed:
                self._fail(CancelledError(f"check failed for {self.route}"))
                return False

        return True

    def _begin(self) -> None:
        self.state = ActionState.IN_FLIGHT

    def _requeue(self) -> None:
        if not self.is_done:
            self.state = ActionState.QUEUED

    def _fail(self, exc: BaseException) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_exception(exc)

    def _handle_response(self, response: Response) -> None:
        if self.is_done:
            logger.debug(
                "Discarding response %s for %s, the action is already done",
                response.code,
                self.route,
            )
            return

        if not response.ok:
            self._fail(map_http_error(response.code, response.json_or_text()))
            return

        try:
            value = self.transform(response)
        except Exception as exc:
            logger.debug("Transform for %s raised", self.route, exc_info=exc)
            self._fail(exc)
            return

        self._future.set_result(value)


@attr.define(eq=False)
class DerivedAction(BaseAction[T]):
    """An action built from other actions by an operator (`map`,
    `flat_map`, `all_of`...). `run` submits the sources and computes the
    result, it only starts once this action is submitted.
    """

    client: RESTClient = attr.field()

    _run: Callable[[], Awaitable[T]] = attr.field()

    state: ActionState = attr.field(default=ActionState.IDLE, init=False)

    _cancelled: bool = attr.field(default=False, init=False)
    _future: Optional[asyncio.Future] = attr.field(default=None, init=False)
    _task: Optional[asyncio.Task] = attr.field(default=None, init=False)

    @property
    def future(self) -> Optional[asyncio.Future]:
        return self._future

    def submit(self) -> asyncio.Future:
        loop = self._claim()
        if self._cancelled:
            future = _cancelled_future(loop, "action was cancelled before submission")
        else:
            future = loop.create_future()
            self._task = loop.create_task(self._run())
            self._task.add_done_callback(self._on_task_done)

        future.add_done_callback(self._on_future_done)
        self._future = future
        return future

    def cancel(self) -> bool:
        """Cancel the action, along with whatever source is still running"""

        if self._future is None:
            if self._cancelled:
                return False
            self._cancelled = True
            return True

        if self._future.done():
            return False

        self._cancelled = True
        self._future.set_exception(CancelledError("action was cancelled"))
        return True

    def _on_task_done(self, task: asyncio.Task) -> None:
        if self._future.done():
            if not task.cancelled():
                # retrieved so asyncio does not report it
                task.exception()
            return

        if task.cancelled():
            self._future.set_exception(CancelledError("action was cancelled"))
        elif task.exception() is not None:
            self._future.set_exception(task.exception())
        else:
            self._future.set_result(task.result())

    def _on_future_done(self, future: asyncio.Future) -> None:
        self.state = ActionState.DONE
        if self._task is not None and not self._task.done():
            self._task.cancel()


def all_of(*actions: BaseAction[Any]) -> DerivedAction[List[Any]]:
    """Run every action concurrently, resolving to the list of their
    results in the given order. If one of them fails the others are
    cancelled and the combined action fails with the same error.

    Raises
    ------
    restcord.rest.errors.ValidationError
        No action was given.
    """

    if not actions:
        raise ValidationError("all_of needs at least one action")

    async def run() -> List[Any]:
        futures = []
        try:
            for action in actions:
                futures.append(action.submit())
            return list(await asyncio.gather(*futures))
        except BaseException:
            for action in actions:
                action.cancel()
            raise

    return DerivedAction(actions[0].client, run)

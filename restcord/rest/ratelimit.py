from __future__ import annotations

import asyncio
import collections
import logging
import typing
from typing import Deque, Dict, Final, Optional, Set

import aiohttp
import attr

from .errors import (
    CancelledError,
    RateLimitExhaustedError,
    RequestTimeoutError,
    TransportError,
)
from .response import Response
from .route import Route

if typing.TYPE_CHECKING:
    from .action import RestAction
    from .client import RESTClient

__all__ = ("Bucket", "RateLimiter")

logger = logging.getLogger(__name__)

RESET_AFTER_HEADER: Final[str] = "X-RateLimit-Reset-After"
LIMIT_HEADER: Final[str] = "X-RateLimit-Limit"
REMAINING_HEADER: Final[str] = "X-RateLimit-Remaining"
GLOBAL_HEADER: Final[str] = "X-RateLimit-Global"
HASH_HEADER: Final[str] = "X-RateLimit-Bucket"
SCOPE_HEADER: Final[str] = "X-RateLimit-Scope"
RETRY_AFTER_HEADER: Final[str] = "Retry-After"

LONG_RATELIMIT: Final[float] = 30 * 60.0


@attr.define(eq=False)
class Bucket:
    """Rate limit state and pending requests for one bucket key. Only
    the bucket's own worker task touches `remaining`/`reset_at` and pops
    from `requests`.
    """

    key: str = attr.field()

    remaining: int = attr.field(default=1)
    """ Requests left before `reset_at` """

    reset_at: float = attr.field(default=0.0)
    """ Loop time at which `remaining` is refilled """

    hash: Optional[str] = attr.field(default=None)
    """ The bucket hash discord reported for the route, if any """

    requests: Deque[RestAction] = attr.field(factory=collections.deque)
    worker: Optional[asyncio.Task] = attr.field(default=None)
    last_used: float = attr.field(default=0.0)

    def backoff(self, now: float) -> float:
        """Seconds to wait before the next request may be sent"""

        if self.reset_at <= now:
            # the window passed, we don't know better than one more
            self.remaining = max(self.remaining, 1)
            return 0.0
        if self.remaining < 1:
            return self.reset_at - now
        return 0.0

    @property
    def is_idle(self) -> bool:
        return not self.requests and self.worker is None


@attr.define(eq=False)
class RateLimiter:
    """Dispatches `RestAction`s: one FIFO queue and one worker task per
    bucket, so requests to the same bucket run one at a time and in
    submission order while different buckets run concurrently.

    This is the only place that performs HTTP calls.
    """

    client: RESTClient = attr.field()

    buckets: Dict[str, Bucket] = attr.field(factory=dict, init=False)

    global_ratelimit: asyncio.Event = attr.field(init=False)
    """ Set while requests may be sent, cleared during a global rate limit """

    _global_handle: Optional[asyncio.TimerHandle] = attr.field(
        default=None, init=False
    )
    _global_reset_at: float = attr.field(default=0.0, init=False)
    _hit_ratelimit: Set[str] = attr.field(factory=set, init=False)
    _last_cleanup: float = attr.field(default=0.0, init=False)

    def __attrs_post_init__(self):
        self.global_ratelimit = asyncio.Event()
        self.global_ratelimit.set()

    @property
    def config(self):
        return self.client.config

    @property
    def is_globally_limited(self) -> bool:
        return not self.global_ratelimit.is_set()

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def get_bucket(self, route: Route) -> Bucket:
        key = route.bucket
        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = self.buckets[key] = Bucket(key)
            logger.debug("Created bucket %s", key)
        return bucket

    def enqueue(self, action: RestAction) -> None:
        bucket = self.get_bucket(action.route)
        bucket.requests.append(action)
        self._run(bucket)
        self._maybe_cleanup()

    def discard(self, action: RestAction) -> None:
        """Remove a queued action from its bucket (it was cancelled or
        timed out before its turn came).
        """

        bucket = self.buckets.get(action.route.bucket)
        if bucket is None:
            return
        try:
            bucket.requests.remove(action)
        except ValueError:
            pass

    def _run(self, bucket: Bucket) -> None:
        if bucket.worker is None:
            bucket.worker = asyncio.get_running_loop().create_task(
                self._drain(bucket)
            )

    async def _drain(self, bucket: Bucket) -> None:
        logger.debug("Bucket %s is running %d requests", bucket.key, len(bucket.requests))
        try:
            while bucket.requests:
                await self.global_ratelimit.wait()

                delay = bucket.backoff(self._now())
                if delay > 0:
                    route = bucket.requests[0].route
                    if delay >= LONG_RATELIMIT:
                        logger.warning(
                            "Encountered long %d minutes rate limit on route %s",
                            delay // 60,
                            route,
                        )
                    logger.debug(
                        "Backing off %.3f s for bucket %s on route %s",
                        delay,
                        bucket.key,
                        route,
                    )
                    await asyncio.sleep(delay)
                    continue

                action = bucket.requests.popleft()
                if not action._preflight():
                    continue

                await self._execute(bucket, action)
        finally:
            bucket.worker = None
            bucket.last_used = self._now()

    async def _execute(self, bucket: Bucket, action: RestAction) -> None:
        action._begin()
        route = action.route

        remaining = action._remaining_time(self._now())
        if remaining is not None and remaining <= 0:
            action._fail(RequestTimeoutError(f"{route} timed out"))
            return

        try:
            response = await asyncio.wait_for(
                self.client.perform(
                    route,
                    json=action.json,
                    form=action.form,
                    headers=action.headers,
                ),
                remaining,
            )
        except asyncio.TimeoutError:
            action._fail(RequestTimeoutError(f"{route} timed out"))
            return
        except asyncio.CancelledError:
            action._fail(CancelledError(f"{route} was cancelled, the client is closing"))
            raise
        except (aiohttp.ClientError, OSError) as exc:
            logger.error(
                "There was an I/O error while executing %s: %s", route, exc
            )
            action._fail(TransportError(f"{route} failed: {exc}"))
            return
        except Exception as exc:
            logger.error(
                "There was an unexpected error while executing %s",
                route,
                exc_info=exc,
            )
            action._fail(exc)
            return

        self._update_bucket(bucket, route, response)

        if response.code == 429:
            action.ratelimit_hits += 1
            if action.ratelimit_hits > self.config.max_ratelimit_retries:
                logger.error(
                    "Giving up on %s after %d rate limited attempts",
                    route,
                    action.ratelimit_hits,
                )
                action._fail(
                    RateLimitExhaustedError(
                        f"{route} was rate limited {action.ratelimit_hits} times"
                    )
                )
                return

            action._requeue()
            bucket.requests.appendleft(action)
            return

        if response.code >= 500:
            if action.server_attempts < self.config.max_server_retries:
                delay = self.config.server_backoff(action.server_attempts)
                action.server_attempts += 1
                logger.debug(
                    "Requesting %s returned status %d... retrying in %.2f s (attempt %d)",
                    route,
                    response.code,
                    delay,
                    action.server_attempts,
                )
                await asyncio.sleep(delay)
                action._requeue()
                bucket.requests.appendleft(action)
                return

            logger.error(
                "Requesting %s returned status %d, giving up after %d attempts",
                route,
                response.code,
                action.server_attempts + 1,
            )
            action._fail(
                TransportError(
                    f"{route} failed with status {response.code}",
                    status=response.code,
                )
            )
            return

        action._handle_response(response)

    def _retry_after(self, response: Response) -> float:
        data = response.json_or_text()
        if isinstance(data, dict):
            try:
                return float(data["retry_after"])
            except (KeyError, TypeError, ValueError):
                pass

        header = response.header_float(RETRY_AFTER_HEADER)
        if header is not None:
            return header

        return self.config.global_ratelimit_fallback

    def _is_global(self, response: Response) -> bool:
        if response.headers.get(GLOBAL_HEADER, "").lower() == "true":
            return True
        data = response.json_or_text()
        return isinstance(data, dict) and bool(data.get("global", False))

    def _update_bucket(self, bucket: Bucket, route: Route, response: Response) -> None:
        now = self._now()
        headers = response.headers

        bucket_hash = headers.get(HASH_HEADER)
        if bucket_hash is not None and bucket.hash != bucket_hash:
            logger.debug("Caching bucket hash %s -> %s", route, bucket_hash)
            bucket.hash = bucket_hash

        if response.code == 429:
            retry_after = self._retry_after(response)
            scope = headers.get(SCOPE_HEADER)

            if self._is_global(response):
                logger.error(
                    "Encountered global rate limit! Retry-After: %.3f s Scope: %s",
                    retry_after,
                    scope,
                )
                self.pause(retry_after)
            elif "Via" not in headers:
                # cloudflare bans don't go through discord's proxy
                logger.error(
                    "Encountered cloudflare rate limit! Retry-After: %.3f s",
                    retry_after,
                )
                self.pause(retry_after)
            else:
                bucket.remaining = 0
                bucket.reset_at = now + retry_after

                first_hit = bucket.key not in self._hit_ratelimit and retry_after < 60
                self._hit_ratelimit.add(bucket.key)
                log = logger.debug if first_hit else logger.warning
                log(
                    "Encountered 429 on route %s with bucket %s Retry-After: %.3f s Scope: %s",
                    route,
                    bucket.key,
                    retry_after,
                    scope,
                )
            return

        remaining = headers.get(REMAINING_HEADER)
        reset_after = response.header_float(RESET_AFTER_HEADER)
        if remaining is None or reset_after is None:
            return

        try:
            bucket.remaining = int(remaining)
        except ValueError:
            return
        bucket.reset_at = now + reset_after

        logger.debug(
            "Updated bucket %s to (%s/%s, %.3f)",
            bucket.key,
            remaining,
            headers.get(LIMIT_HEADER),
            reset_after,
        )

    def pause(self, seconds: float) -> None:
        """Stop every bucket from dequeuing for `seconds`. Overlapping
        pauses extend to the latest end.
        """

        loop = asyncio.get_running_loop()
        reset_at = loop.time() + seconds
        if self.is_globally_limited and reset_at <= self._global_reset_at:
            return

        if self._global_handle is not None:
            self._global_handle.cancel()

        self._global_reset_at = reset_at
        self.global_ratelimit.clear()
        self._global_handle = loop.call_at(reset_at, self._resume)

    def _resume(self) -> None:
        self._global_handle = None
        self.global_ratelimit.set()

    def _maybe_cleanup(self) -> None:
        now = self._now()
        if now - self._last_cleanup < self.config.bucket_expiry:
            return
        self._last_cleanup = now
        self.cleanup(now)

    def cleanup(self, now: Optional[float] = None) -> int:
        """Drop buckets that are idle, past their reset and unused for
        `bucket_expiry` seconds. Returns how many were removed.
        """

        if now is None:
            now = self._now()

        expired = [
            key
            for key, bucket in self.buckets.items()
            if bucket.is_idle
            and bucket.reset_at <= now
            and now - bucket.last_used >= self.config.bucket_expiry
        ]
        for key in expired:
            del self.buckets[key]

        if expired:
            logger.debug("Removed %d expired buckets", len(expired))
        return len(expired)

    def cancel_requests(self) -> int:
        """Fail every queued (not in flight) action with `CancelledError`"""

        cancelled = 0
        for bucket in self.buckets.values():
            while bucket.requests:
                action = bucket.requests.popleft()
                if action.cancel():
                    cancelled += 1

        if cancelled == 1:
            logger.warning("Cancelled 1 request!")
        elif cancelled > 1:
            logger.warning("Cancelled %d requests!", cancelled)
        return cancelled

    async def close(self) -> None:
        """Cancel queued work, stop the workers and wait for them"""

        self.cancel_requests()

        workers = [b.worker for b in self.buckets.values() if b.worker is not None]
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

        if self._global_handle is not None:
            self._global_handle.cancel()
            self._global_handle = None
        self.global_ratelimit.set()

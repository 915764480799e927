from __future__ import annotations

import asyncio
import logging
from typing import (
    Any,
    Callable,
    Collection,
    Final,
    Mapping,
    MutableMapping,
    Optional,
    TypeVar,
)

import aiohttp
import attr

from .. import __version__
from .action import (
    RestAction,
    default_failure,
    default_success,
    default_uncaught,
    json_transform,
)
from .builders import FormBuilder, JSONBuilder
from .config import RESTConfig
from .pagination import PaginationAction, PaginationDirection, snowflake_key
from .ratelimit import RateLimiter
from .response import Response
from .route import Route

__all__ = ("RESTClient",)

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_AGENT: Final[
    str
] = f"DiscordBot (https://github.com/restcord/restcord, {__version__})"


def _identity(response: Response) -> Response:
    return response


@attr.define(kw_only=True, eq=False)
class RESTClient:
    """Client that handles HTTP request to discord's REST API,
    this does not create a session itself and needs one passed to
    it.

    Requests are described by `RestAction` objects (see `action` and
    `paginate`) and executed by the client's `RateLimiter`.
    """

    session: aiohttp.ClientSession = attr.field()
    """ The actual session that the client uses for its HTTP
    requests, try not to use directly as that may mess up the
    ratelimit handling :)
    """

    token: str = attr.field(repr=False)
    """ The token that the client will use for authorization,
    it is important to note that you should not share this with
    anyone!
    """

    user_agent: str = attr.field(default=USER_AGENT)
    """ The user agent that you want to use for your HTTP client
    (recommended to use this format `DiscordBot ($url, $versionNumber)`)
    """

    config: RESTConfig = attr.field(factory=RESTConfig)

    default_success: Callable[[Any], Any] = attr.field(default=default_success)
    """ Used by `RestAction.queue` when no success callback is given """

    default_failure: Callable[[BaseException], Any] = attr.field(
        default=default_failure
    )
    """ Used by `RestAction.queue` when no failure callback is given """

    uncaught_handler: Callable[[BaseException], Any] = attr.field(
        default=default_uncaught
    )
    """ Receives exceptions raised by `queue` callbacks """

    loop: Optional[asyncio.AbstractEventLoop] = attr.field(default=None)
    """ The event loop the dispatcher runs on, picked up on first use
    if the client was not created inside a coroutine
    """

    ratelimiter: RateLimiter = attr.field(init=False)

    def __attrs_post_init__(self):
        if self.loop is None:
            try:
                self.loop = asyncio.get_running_loop()
            except RuntimeError:
                pass

        self.ratelimiter = RateLimiter(self)

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.loop is None or self.loop.is_closed():
            self.loop = loop

    async def perform(
        self,
        route: Route,
        *,
        json: Optional[JSONBuilder] = None,
        form: Optional[FormBuilder] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Response:
        """Makes exactly one HTTP request to the provided `Route`, with no
        rate limit handling whatsoever. This is what the `RateLimiter`
        calls, use `action` or `request` instead.

        Parameters
        ----------
        route : restcord.rest.route.Route
            The route to request to (query parameters included).
        json : typing.Optional[restcord.rest.builders.JSONBuilder]
            JSON body of the request.
        form : typing.Optional[restcord.rest.builders.FormBuilder]
            The form to attach to the request, takes precedence over
            `json`.
        headers : typing.Optional[typing.Mapping[builtins.str, builtins.str]]
            Extra headers, such as `X-Audit-Log-Reason`.

        Returns
        -------
        restcord.rest.response.Response
            What discord sent back, whatever the status.
        """

        request_headers: MutableMapping[str, str] = dict(headers or {})
        request_headers["Authorization"] = "Bot " + self.token
        request_headers["User-Agent"] = self.user_agent

        kwargs: MutableMapping[str, Any] = {"headers": request_headers}
        if form is not None:
            kwargs["data"] = form.build()
        elif json is not None:
            request_headers["Content-Type"] = "application/json"
            kwargs["json"] = json.build()
        if route.query:
            kwargs["params"] = list(route.query)

        url = route.url(self.config.base_url)
        logger.debug("Executing request %s %s", route.method, url)

        async with self.session.request(route.method, url, **kwargs) as response:
            text = await response.text(encoding="utf-8")

            logger.debug(
                "Finished request %s %s with code %d", route.method, url, response.status
            )
            return Response(
                response.status,
                data=text,
                content_type=response.headers.get("Content-Type"),
                headers=response.headers,
            )

    def action(
        self,
        route: Route,
        transform: Callable[[Response], T] = json_transform,
        *,
        json: Optional[JSONBuilder] = None,
        form: Optional[FormBuilder] = None,
        reason: Optional[str] = None,
    ) -> RestAction[T]:
        """Describe a request without sending it.

        Returns
        -------
        restcord.rest.action.RestAction
            An idle action, submit it (or await it) to execute it.
        """

        action: RestAction[T] = RestAction(self, route, transform, json=json, form=form)
        if reason is not None:
            action.reason(reason)
        return action

    def paginate(
        self,
        route: Route,
        item: Callable[[Any], T] = lambda data: data,
        *,
        key: Callable[[T], Any] = snowflake_key,
        min_limit: int = 1,
        max_limit: int = 100,
        default_limit: Optional[int] = None,
        directions: Collection[PaginationDirection] = tuple(PaginationDirection),
    ) -> PaginationAction[T]:
        """Describe a paginated endpoint. `item` converts each element of
        a page and `key` extracts the snowflake used as the cursor.
        """

        return PaginationAction(
            self,
            route,
            item=item,
            key=key,
            min_limit=min_limit,
            max_limit=max_limit,
            default_limit=default_limit,
            directions=frozenset(directions),
        )

    async def request(
        self,
        route: Route,
        *,
        json: Optional[JSONBuilder] = None,
        form: Optional[FormBuilder] = None,
        reason: Optional[str] = None,
    ) -> Response:
        """Submit a one-off request and wait for the raw response.

        Raises
        ------
        restcord.rest.errors.HTTPException
            Discord answered with an error status.
        restcord.rest.errors.TransportError
            The request could not be completed.
        restcord.rest.errors.RateLimitExhaustedError
            The request kept being rate limited.
        """

        return await self.action(
            route, _identity, json=json, form=form, reason=reason
        ).submit()

    async def close(self) -> None:
        """Cancel everything that is still queued and stop the bucket
        workers. The session is not closed, it belongs to the caller.
        """

        await self.ratelimiter.close()

    async def __aenter__(self) -> RESTClient:
        self.bind_loop(asyncio.get_running_loop())
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

from __future__ import annotations

import asyncio
import collections
import enum
import logging
from typing import (
    Any,
    Callable,
    Deque,
    FrozenSet,
    List,
    Optional,
    TypeVar,
    Union,
)

import attr

from .action import ActionState, RestAction
from .errors import CancelledError, IllegalStateError, ValidationError
from .response import Response
from .snowflake import Snowflake

__all__ = ("PaginationAction", "PaginationDirection", "snowflake_key")

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PaginationDirection(enum.Enum):
    """Which side of the cursor a page is fetched from. The value is the
    query parameter discord expects.
    """

    BEFORE = "before"
    AFTER = "after"
    AROUND = "around"


def snowflake_key(item: Any) -> Snowflake:
    """Cursor key for plain JSON entities, their `id` field"""
    return Snowflake.parse(item["id"])


@attr.define(eq=False)
class PaginationAction(RestAction[List[T]]):
    """Walks an endpoint that returns pages of entities ordered by
    snowflake. Iterate it with ``async for`` to get a lazy sequence of
    entities, or call `next_page` to pull one page at a time.

    Once traversal started the whole configuration is frozen (headers,
    reason and timeout included) and the sequence can not be restarted,
    build a new action with the same marker instead.

    Every `submit` (or ``await``) fetches the next page, so unlike other
    actions this one may be submitted once per page. That is not allowed
    while it is being iterated.
    """

    item: Callable[[Any], T] = attr.field(default=lambda data: data, kw_only=True)
    """ Converts each raw element of a page """

    key: Callable[[T], Snowflake] = attr.field(default=snowflake_key, kw_only=True)
    """ Extracts the snowflake that orders the elements """

    min_limit: int = attr.field(default=1, kw_only=True)
    max_limit: int = attr.field(default=100, kw_only=True)
    default_limit: Optional[int] = attr.field(default=None, kw_only=True)

    directions: FrozenSet[PaginationDirection] = attr.field(
        default=frozenset(PaginationDirection), kw_only=True
    )
    """ The directions the endpoint supports """

    direction: PaginationDirection = attr.field(init=False)
    cursor: Optional[Snowflake] = attr.field(default=None, init=False)
    """ The last seen snowflake, the marker for the next page """

    exhausted: bool = attr.field(default=False, init=False)
    """ Whether the remote collection has no more entities to give """

    pages_fetched: int = attr.field(default=0, init=False)

    _limit: int = attr.field(init=False)
    _max_pages: Optional[int] = attr.field(default=None, init=False)
    _started: bool = attr.field(default=False, init=False)
    _iterating: bool = attr.field(default=False, init=False)
    _terminated: bool = attr.field(default=False, init=False)
    _failure: Optional[BaseException] = attr.field(default=None, init=False)
    """ Why iteration stopped, re-raised by every later step """

    _page: Optional[RestAction] = attr.field(default=None, init=False)
    _pending: Optional[asyncio.Task] = attr.field(default=None, init=False)
    _buffer: Deque[T] = attr.field(factory=collections.deque, init=False)

    def __attrs_post_init__(self):
        super().__attrs_post_init__()

        if PaginationDirection.BEFORE in self.directions:
            self.direction = PaginationDirection.BEFORE
        elif PaginationDirection.AFTER in self.directions:
            self.direction = PaginationDirection.AFTER
        else:
            raise ValidationError("endpoint must support before or after paging")

        self._limit = (
            self.default_limit if self.default_limit is not None else self.max_limit
        )

    # configuration

    def _ensure_idle(self) -> None:
        if self._started:
            raise IllegalStateError("pagination has already started")
        super()._ensure_idle()

    def _set_direction(self, direction: PaginationDirection, marker: Any) -> None:
        self._ensure_idle()
        if direction not in self.directions:
            raise ValidationError(
                f"{self.route} does not support paginating {direction.value}"
            )
        self.direction = direction
        self.cursor = Snowflake.parse(marker)

    def limit(self, limit: int) -> PaginationAction[T]:
        """Set the page size.

        Raises
        ------
        restcord.rest.errors.ValidationError
            `limit` is outside of the endpoint's `[min_limit, max_limit]`.
        """

        self._ensure_idle()
        if not self.min_limit <= limit <= self.max_limit:
            raise ValidationError(
                f"limit must be between {self.min_limit} and {self.max_limit}, got {limit}"
            )
        self._limit = limit
        return self

    @property
    def page_size(self) -> int:
        return self._limit

    def before(self, marker: Union[int, str, Snowflake]) -> PaginationAction[T]:
        """Page towards older entities, starting right before `marker`"""
        self._set_direction(PaginationDirection.BEFORE, marker)
        return self

    def after(self, marker: Union[int, str, Snowflake]) -> PaginationAction[T]:
        """Page towards newer entities, starting right after `marker`"""
        self._set_direction(PaginationDirection.AFTER, marker)
        return self

    def around(self, marker: Union[int, str, Snowflake]) -> PaginationAction[T]:
        """Fetch a single page centered on `marker`. Discord splits the
        limit between both sides, so fewer entities come back near either
        end of the history. There is no second page.
        """

        self._set_direction(PaginationDirection.AROUND, marker)
        return self

    def skip_to(self, marker: Union[int, str, Snowflake]) -> PaginationAction[T]:
        """Move the cursor without changing the direction"""
        self._ensure_idle()
        self.cursor = Snowflake.parse(marker)
        return self

    def max_pages(self, pages: Optional[int]) -> PaginationAction[T]:
        """Stop after `pages` page requests, even if the collection still
        has entities.
        """

        self._ensure_idle()
        if pages is not None and pages < 1:
            raise ValidationError("max_pages must be at least 1")
        self._max_pages = pages
        return self

    @property
    def last_key(self) -> Optional[Snowflake]:
        return self.cursor

    @property
    def budget_reached(self) -> bool:
        return self._max_pages is not None and self.pages_fetched >= self._max_pages

    def _can_fetch(self) -> bool:
        return not (self._cancelled or self.exhausted or self.budget_reached)

    # page requests

    def _page_route(self):
        cursor = self.cursor
        if cursor is None and self.direction is PaginationDirection.AFTER:
            cursor = Snowflake.min()

        query = {"limit": self._limit}
        if cursor is not None:
            query[self.direction.value] = cursor
        return self.route.with_query(**query)

    def _parse_page(self, response: Response) -> List[T]:
        data = response.json()
        if not isinstance(data, list):
            raise ValueError(f"expected a list of entities, got {type(data).__name__}")
        return [self.item(element) for element in data]

    def _advance(self, page: List[T]) -> None:
        self.pages_fetched += 1

        if page:
            keys = [Snowflake.parse(self.key(element)) for element in page]
            if self.direction is PaginationDirection.AFTER:
                self.cursor = max(keys)
            elif self.direction is PaginationDirection.BEFORE:
                self.cursor = min(keys)

        if self.direction is PaginationDirection.AROUND or len(page) < self._limit:
            self.exhausted = True
            logger.debug(
                "Pagination of %s exhausted after %d pages", self.route, self.pages_fetched
            )

    def _cancellation(self) -> CancelledError:
        return CancelledError(f"pagination of {self.route} was cancelled")

    async def next_page(self) -> List[T]:
        """Fetch the next page and move the cursor past it. Once the
        collection is exhausted (or the page budget spent) this returns an
        empty list without touching the network.

        Raises
        ------
        restcord.rest.errors.IllegalStateError
            Another page request of this action is still in flight.
        restcord.rest.errors.CancelledError
            The action was cancelled.
        """

        if self._cancelled:
            raise self._cancellation()
        if self._page is not None:
            raise IllegalStateError("a page request is already in flight")
        if not self._can_fetch():
            return []

        self._started = True
        page_action: RestAction[List[T]] = RestAction(
            self.client,
            self._page_route(),
            self._parse_page,
            headers=dict(self.headers),
            check_permissions=self.check_permissions,
        )
        page_action._timeout = self._timeout
        page_action._deadline = self._deadline
        page_action._check = self._check

        self._page = page_action
        try:
            page = await page_action.submit()
        finally:
            self._page = None

        self._advance(page)
        return page

    def submit(self) -> asyncio.Future:
        """Fetch the next page, see `next_page`.

        Raises
        ------
        restcord.rest.errors.IllegalStateError
            The action is being iterated, or there is no running event
            loop.
        """

        if self._iterating:
            raise IllegalStateError("pagination is being iterated")

        loop = self._running_loop()
        self._started = True
        return loop.create_task(self.next_page())

    def cancel(self) -> bool:
        """Stop the pagination. The page in flight (if any) is cancelled,
        buffered entities are dropped and iterating, `next_page` and
        `submit` fail with `CancelledError` from now on.
        """

        if self._cancelled:
            return False

        self._cancelled = True
        self.state = ActionState.DONE
        self._buffer.clear()
        if self._page is not None:
            self._page.cancel()
        self._drop_pending()
        return True

    # lazy sequence

    def __aiter__(self) -> PaginationAction[T]:
        if self._iterating:
            raise IllegalStateError(
                "pagination can not be restarted, create a new action"
            )
        self._iterating = True
        self._started = True
        return self

    def _prefetch(self) -> None:
        if self._pending is None and self._can_fetch():
            self._pending = asyncio.get_running_loop().create_task(self.next_page())

    def _drop_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is None:
            return
        if not pending.done():
            pending.cancel()
        elif not pending.cancelled():
            # nobody will await it anymore
            pending.exception()

    def _finish(self, failure: BaseException) -> BaseException:
        self._terminated = True
        self._failure = failure
        self._buffer.clear()
        self._drop_pending()
        return failure

    async def __anext__(self) -> T:
        if self._cancelled and self._failure is None:
            self._finish(self._cancellation())
        if self._failure is not None:
            raise self._failure

        if self._buffer:
            return self._buffer.popleft()

        if self._terminated:
            raise StopAsyncIteration

        self._prefetch()
        while not self._buffer:
            if self._pending is None:
                self._terminated = True
                raise StopAsyncIteration

            pending, self._pending = self._pending, None
            try:
                page = await pending
            except asyncio.CancelledError:
                if self._cancelled:
                    raise self._finish(self._cancellation()) from None
                self._terminated = True
                raise
            except Exception as exc:
                raise self._finish(exc)

            self._buffer.extend(page)
            # at most one page ahead of the consumer
            self._prefetch()

        return self._buffer.popleft()

    async def aclose(self) -> None:
        """End the iteration early, dropping the page fetched ahead"""

        self._terminated = True
        self._buffer.clear()
        self._drop_pending()

    async def take(self, amount: int) -> List[T]:
        """Consume up to `amount` entities from the sequence, anything
        fetched beyond them is dropped.
        """

        if amount < 0:
            raise ValidationError("amount must not be negative")

        taken: List[T] = []
        if amount == 0:
            return taken

        try:
            async for element in self:
                taken.append(element)
                if len(taken) >= amount:
                    break
        finally:
            await self.aclose()
        return taken

    async def flatten(self) -> List[T]:
        """Consume the whole sequence into a list"""

        try:
            return [element async for element in self]
        finally:
            await self.aclose()

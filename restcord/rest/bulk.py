from __future__ import annotations

import asyncio
import datetime
import typing
from typing import Any, Final, Iterable, List, Optional, Sequence, Union

from .builders import JSONBuilder
from .errors import ValidationError
from .route import Route
from .snowflake import Snowflake

if typing.TYPE_CHECKING:
    from .action import RestAction
    from .client import RESTClient

__all__ = (
    "BULK_DELETE_MIN",
    "BULK_DELETE_MAX",
    "BULK_DELETE_MAX_AGE",
    "plan_purge",
    "delete_message",
    "delete_messages",
    "purge_messages",
    "wait_all",
)

BULK_DELETE_MIN: Final[int] = 2
BULK_DELETE_MAX: Final[int] = 100
BULK_DELETE_MAX_AGE: Final[datetime.timedelta] = datetime.timedelta(days=14)
""" Discord refuses to bulk delete messages older than this """

SnowflakeLike = Union[int, str, Snowflake]


def _sorted_ids(ids: Iterable[SnowflakeLike]) -> List[Snowflake]:
    return sorted({Snowflake.parse(i) for i in ids}, reverse=True)


def plan_purge(
    ids: Iterable[SnowflakeLike],
    *,
    now: Optional[datetime.datetime] = None,
    bulk: bool = True,
) -> List[List[Snowflake]]:
    """Split message ids into deletion units, newest first.

    Messages young enough for bulk deletion are grouped into chunks of at
    most `BULK_DELETE_MAX`, every other id (older ones and a chunk that
    would only hold one id) becomes its own unit. The concatenation of the
    units is the ids in strictly descending order.
    """

    ordered = _sorted_ids(ids)
    if not bulk:
        return [[i] for i in ordered]

    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    threshold = Snowflake.from_datetime(now - BULK_DELETE_MAX_AGE)

    # newest first, so every bulk eligible id comes before the old ones
    recent = [i for i in ordered if i > threshold]
    old = ordered[len(recent):]

    units: List[List[Snowflake]] = []
    for start in range(0, len(recent), BULK_DELETE_MAX):
        chunk = recent[start : start + BULK_DELETE_MAX]
        if len(chunk) >= BULK_DELETE_MIN:
            units.append(chunk)
        else:
            units.extend([i] for i in chunk)
    units.extend([i] for i in old)
    return units


def _none(response: Any) -> None:
    return None


def delete_message(
    client: RESTClient,
    channel_id: SnowflakeLike,
    message_id: SnowflakeLike,
    *,
    reason: Optional[str] = None,
) -> RestAction[None]:
    route = Route(
        "DELETE",
        "/channels/{channel_id}/messages/{message_id}",
        channel_id=Snowflake.parse(channel_id),
        message_id=Snowflake.parse(message_id),
    )
    return client.action(route, _none, reason=reason)


def delete_messages(
    client: RESTClient,
    channel_id: SnowflakeLike,
    message_ids: Sequence[SnowflakeLike],
    *,
    reason: Optional[str] = None,
) -> RestAction[None]:
    """A single bulk-delete call for 2 to 100 message ids.

    Raises
    ------
    restcord.rest.errors.ValidationError
        Too few or too many ids.
    """

    ids = _sorted_ids(message_ids)
    if not BULK_DELETE_MIN <= len(ids) <= BULK_DELETE_MAX:
        raise ValidationError(
            f"bulk delete takes {BULK_DELETE_MIN} to {BULK_DELETE_MAX} "
            f"unique messages, got {len(ids)}"
        )

    route = Route(
        "POST",
        "/channels/{channel_id}/messages/bulk-delete",
        channel_id=Snowflake.parse(channel_id),
    )
    return client.action(
        route, _none, json=JSONBuilder(messages=ids), reason=reason
    )


def purge_messages(
    client: RESTClient,
    channel_id: SnowflakeLike,
    message_ids: Iterable[SnowflakeLike],
    *,
    reason: Optional[str] = None,
    bulk: bool = True,
    now: Optional[datetime.datetime] = None,
) -> List[asyncio.Future]:
    """Delete any number of messages, newest first, using bulk-delete
    where discord allows it.

    Returns one future per deletion unit (see `plan_purge`). The futures
    are independent, one failing does not cancel the others, pass them to
    `wait_all` to wait for every one of them.
    """

    futures: List[asyncio.Future] = []
    for unit in plan_purge(message_ids, now=now, bulk=bulk):
        if len(unit) == 1:
            action = delete_message(client, channel_id, unit[0], reason=reason)
        else:
            action = delete_messages(client, channel_id, unit, reason=reason)
        futures.append(action.submit())
    return futures


async def wait_all(futures: Iterable[asyncio.Future]) -> List[Any]:
    """Wait for every future, returning results and exceptions in order"""
    return list(await asyncio.gather(*futures, return_exceptions=True))

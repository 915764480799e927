from __future__ import annotations

from typing import Any, Mapping, Optional, Union

import attr

from .rest.action import RestAction
from .rest.builders import JSONBuilder
from .rest.client import RESTClient
from .rest.errors import ValidationError
from .rest.pagination import PaginationAction, PaginationDirection
from .rest.route import Route
from .rest.snowflake import Snowflake

__all__ = ("Guild",)

SnowflakeLike = Union[int, str, Snowflake]


def _member_key(member: Mapping[str, Any]) -> Snowflake:
    return Snowflake.parse(member["user"]["id"])


def _none(response: Any) -> None:
    return None


@attr.define(eq=False)
class Guild:
    """A guild, as far as its REST endpoints are concerned"""

    client: RESTClient = attr.field()
    id: Snowflake = attr.field(converter=Snowflake.parse)

    def _route(self, method: str, path: str, **params: Any) -> Route:
        return Route(method, "/guilds/{guild_id}" + path, guild_id=self.id, **params)

    def members(self) -> PaginationAction[Mapping[str, Any]]:
        """Every member of the guild, in ascending user id order"""
        return self.client.paginate(
            self._route("GET", "/members"),
            key=_member_key,
            max_limit=1000,
            directions=(PaginationDirection.AFTER,),
        )

    def bans(self) -> PaginationAction[Mapping[str, Any]]:
        return self.client.paginate(
            self._route("GET", "/bans"),
            key=_member_key,
            max_limit=1000,
            directions=(PaginationDirection.BEFORE, PaginationDirection.AFTER),
        )

    def ban(
        self,
        user_id: SnowflakeLike,
        *,
        delete_message_seconds: int = 0,
        reason: Optional[str] = None,
    ) -> RestAction[None]:
        if not 0 <= delete_message_seconds <= 604800:
            raise ValidationError("delete_message_seconds must be between 0 and 604800")

        route = self._route("PUT", "/bans/{user_id}", user_id=Snowflake.parse(user_id))
        return self.client.action(
            route,
            _none,
            json=JSONBuilder(delete_message_seconds=delete_message_seconds),
            reason=reason,
        )

    def unban(self, user_id: SnowflakeLike, *, reason: Optional[str] = None) -> RestAction[None]:
        route = self._route("DELETE", "/bans/{user_id}", user_id=Snowflake.parse(user_id))
        return self.client.action(route, _none, reason=reason)

    def kick(self, user_id: SnowflakeLike, *, reason: Optional[str] = None) -> RestAction[None]:
        route = self._route("DELETE", "/members/{user_id}", user_id=Snowflake.parse(user_id))
        return self.client.action(route, _none, reason=reason)

    def create_text_channel(
        self,
        name: str,
        *,
        topic: Optional[str] = None,
        parent_id: Optional[SnowflakeLike] = None,
        reason: Optional[str] = None,
    ) -> RestAction[Mapping[str, Any]]:
        if not 1 <= len(name) <= 100:
            raise ValidationError("channel name must be 1 to 100 characters")

        payload = JSONBuilder(name=name, type=0).add_optional("topic", topic)
        if parent_id is not None:
            payload.add("parent_id", Snowflake.parse(parent_id))

        return self.client.action(
            self._route("POST", "/channels"), json=payload, reason=reason
        )

    def webhooks(self) -> RestAction[Any]:
        return self.client.action(self._route("GET", "/webhooks"))

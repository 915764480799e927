from __future__ import annotations

import asyncio
import datetime
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import attr

from .rest import bulk
from .rest.action import RestAction
from .rest.builders import FormBuilder, JSONBuilder
from .rest.client import RESTClient
from .rest.pagination import PaginationAction
from .rest.route import Route
from .rest.snowflake import Snowflake

__all__ = ("MessageChannel",)

SnowflakeLike = Union[int, str, Snowflake]

Attachment = Tuple[str, bytes]
""" (filename, data) """

MESSAGE_HISTORY_LIMIT = 100


@attr.define(eq=False)
class MessageChannel:
    """A text channel (or thread, or DM) that messages can be read from
    and sent to. Every method only builds the action, nothing is sent
    until it is submitted.
    """

    client: RESTClient = attr.field()
    id: Snowflake = attr.field(converter=Snowflake.parse)

    def _route(self, method: str, path: str, **params: Any) -> Route:
        return Route(method, "/channels/{channel_id}" + path, channel_id=self.id, **params)

    def send_message(
        self,
        content: Optional[str] = None,
        *,
        embeds: Optional[Sequence[Mapping[str, Any]]] = None,
        files: Sequence[Attachment] = (),
        reply_to: Optional[SnowflakeLike] = None,
    ) -> RestAction[Mapping[str, Any]]:
        payload = JSONBuilder().add_optional("content", content)
        payload.add_optional("embeds", list(embeds) if embeds else None)
        if reply_to is not None:
            payload.add("message_reference", {"message_id": str(Snowflake.parse(reply_to))})

        form = None
        if files:
            payload.add(
                "attachments",
                [{"id": n, "filename": name} for n, (name, _) in enumerate(files)],
            )
            form = FormBuilder().add_json(payload.build())
            for name, data in files:
                form.add_file(data, name)

        route = self._route("POST", "/messages")
        if form is not None:
            return self.client.action(route, form=form)
        return self.client.action(route, json=payload)

    def retrieve_message(self, message_id: SnowflakeLike) -> RestAction[Mapping[str, Any]]:
        return self.client.action(
            self._route("GET", "/messages/{message_id}", message_id=Snowflake.parse(message_id))
        )

    def delete_message(
        self, message_id: SnowflakeLike, *, reason: Optional[str] = None
    ) -> RestAction[None]:
        return bulk.delete_message(self.client, self.id, message_id, reason=reason)

    def delete_messages(
        self, message_ids: Sequence[SnowflakeLike], *, reason: Optional[str] = None
    ) -> RestAction[None]:
        return bulk.delete_messages(self.client, self.id, message_ids, reason=reason)

    def purge_messages(
        self,
        message_ids: Iterable[SnowflakeLike],
        *,
        reason: Optional[str] = None,
        now: Optional[datetime.datetime] = None,
    ) -> List[asyncio.Future]:
        return bulk.purge_messages(self.client, self.id, message_ids, reason=reason, now=now)

    def history(self) -> PaginationAction[Mapping[str, Any]]:
        """The channel's messages, newest first"""
        return self.client.paginate(
            self._route("GET", "/messages"), max_limit=MESSAGE_HISTORY_LIMIT
        )

    def history_before(self, message_id: SnowflakeLike) -> PaginationAction[Mapping[str, Any]]:
        return self.history().before(message_id)

    def history_after(self, message_id: SnowflakeLike) -> PaginationAction[Mapping[str, Any]]:
        return self.history().after(message_id)

    def history_around(
        self, message_id: SnowflakeLike, limit: int = 50
    ) -> PaginationAction[Mapping[str, Any]]:
        return self.history().around(message_id).limit(limit)

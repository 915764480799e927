from __future__ import annotations

import copy
import json as jsonlib
from typing import Any, Mapping, MutableMapping, MutableSequence, Optional

import aiohttp
import attr

from .snowflake import Snowflake

__all__ = ("JSONBuilder", "FormBuilder")


def _to_json(value: Any) -> Any:
    if hasattr(value, "to_json"):
        return value.to_json()
    # discord sends and expects ids as strings
    if isinstance(value, Snowflake):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    return value


@attr.define(init=False)
class JSONBuilder:
    """Represents a JSON request body"""

    inner: MutableMapping[str, Any] = attr.field(init=False)
    """ The inner representation of the JSON """

    def __init__(self, **kwargs: Any):
        self.inner = {}
        for key, value in kwargs.items():
            self.add(key, value)

    def add(self, key: str, value: Any) -> JSONBuilder:
        """Add a key to the JSON mapping

        Parameters
        ----------
        key : builtins.str
            The key.
        value : typing.Any
            The value that the key represents. Objects with a `to_json`
            method are converted, snowflakes are sent as strings.

        Returns
        -------
        restcord.rest.builders.JSONBuilder
            The builder object, can be used for chaining.
        """

        self.inner[key] = _to_json(value)
        return self

    def add_optional(self, key: str, value: Any) -> JSONBuilder:
        """Like `add` but skips the key when `value` is None"""

        if value is not None:
            self.add(key, value)
        return self

    def build(self) -> Mapping[str, Any]:
        """Builds the JSON object into a mapping. (This makes
        a deepcopy of the underlying object).
        """

        return copy.deepcopy(self.inner)


@attr.define(init=False)
class FormBuilder:
    """A multipart body: the JSON payload as `payload_json` plus the
    attachments, numbered `files[0]`, `files[1]`... in the order they were
    added (discord matches them against the payload's `attachments`).
    """

    fields: MutableSequence[Mapping[str, Any]] = attr.field(init=False)
    """ Every part of the form, in order """

    files: int = attr.field(init=False)
    """ How many attachments were added so far """

    def __init__(self):
        self.fields = []
        self.files = 0

    def add_field(
        self,
        name: str,
        value: Any,
        content_type: str = "application/octet-stream",
        filename: Optional[str] = None,
    ) -> FormBuilder:
        """Append a raw part, returns the builder for chaining."""

        self.fields.append(
            {
                "name": name,
                "value": value,
                "content_type": content_type,
                "filename": filename,
            }
        )
        return self

    def add_json(self, json: Mapping[str, Any]) -> FormBuilder:
        return self.add_field("payload_json", jsonlib.dumps(json), "application/json")

    def add_file(
        self, data: bytes, filename: str, content_type: Optional[str] = None
    ) -> FormBuilder:
        """Attach a file as the next `files[n]` part.

        Parameters
        ----------
        data : builtins.bytes
            The file contents.
        filename : builtins.str
            Name shown in discord, should match the `attachments` entry.
        content_type : typing.Optional[builtins.str]
            Defaults to `application/octet-stream`.
        """

        name = f"files[{self.files}]"
        self.files += 1
        if content_type is None:
            return self.add_field(name, data, filename=filename)
        return self.add_field(name, data, content_type, filename)

    def build(self) -> aiohttp.FormData:
        """A fresh `aiohttp.FormData` on every call, aiohttp can only send
        one once (so retried requests need a new one).
        """

        form = aiohttp.FormData()
        for part in self.fields:
            form.add_field(
                part["name"],
                part["value"],
                content_type=part["content_type"],
                filename=part["filename"],
            )
        return form

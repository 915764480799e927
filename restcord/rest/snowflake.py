from __future__ import annotations

import datetime
from typing import Final, Union

from .errors import ValidationError

__all__ = ("Snowflake", "DISCORD_EPOCH")

DISCORD_EPOCH: Final[int] = 1420070400000
""" The first millisecond of 2015, which is where snowflake timestamps
start counting from.
"""

_MAX: Final[int] = (1 << 64) - 1
_UNIX_EPOCH: Final = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


class Snowflake(int):
    """A discord unique ID. The upper 42 bits hold the milliseconds since
    `DISCORD_EPOCH`, so snowflakes sort in creation order and can be used
    as pagination markers.

    Constructing one validates the value, a `ValidationError` is raised if
    it is not an unsigned 64 bit integer (or a string of one).
    """

    __slots__ = ()

    def __new__(cls, value: Union[int, str]) -> Snowflake:
        if isinstance(value, bool):
            raise ValidationError(f"{value!r} is not a valid snowflake")

        if isinstance(value, str):
            if not (value.isascii() and value.isdigit()):
                raise ValidationError(f"{value!r} is not a valid snowflake")
            value = int(value)

        if not isinstance(value, int):
            raise ValidationError(f"{value!r} is not a valid snowflake")

        if not 0 <= value <= _MAX:
            raise ValidationError(
                f"snowflake must be between 0 and {_MAX}, got {value}"
            )

        return super().__new__(cls, value)

    @classmethod
    def parse(cls, value: Union[int, str, Snowflake]) -> Snowflake:
        """Coerce a value to a snowflake, returning it unchanged if it
        already is one.
        """

        if isinstance(value, Snowflake):
            return value
        return cls(value)

    @classmethod
    def from_datetime(cls, when: datetime.datetime) -> Snowflake:
        """The smallest snowflake that could have been created at `when`,
        useful as a `before`/`after` marker.
        """

        if when.tzinfo is None:
            when = when.replace(tzinfo=datetime.timezone.utc)

        millis = (when - _UNIX_EPOCH) // datetime.timedelta(milliseconds=1) - DISCORD_EPOCH
        if millis < 0:
            raise ValidationError("datetime is earlier than the discord epoch")

        return cls(millis << 22)

    @classmethod
    def min(cls) -> Snowflake:
        return cls(0)

    @classmethod
    def max(cls) -> Snowflake:
        return cls(_MAX)

    @property
    def timestamp(self) -> int:
        """Milliseconds since the unix epoch"""
        return (self >> 22) + DISCORD_EPOCH

    @property
    def created_at(self) -> datetime.datetime:
        """When the snowflake was generated (UTC)"""
        return _UNIX_EPOCH + datetime.timedelta(milliseconds=self.timestamp)

    @property
    def worker_id(self) -> int:
        return (self & 0x3E0000) >> 17

    @property
    def process_id(self) -> int:
        return (self & 0x1F000) >> 12

    @property
    def increment(self) -> int:
        return self & 0xFFF

    def __repr__(self) -> str:
        return f"Snowflake({int(self)})"

    def __str__(self) -> str:
        return str(int(self))

from __future__ import annotations

import string
from typing import Any, Dict, Final, FrozenSet, Mapping, Tuple, final

import attr

from .errors import ValidationError

__all__ = ("Route", "MAJOR_PARAMETERS")

METHODS: Final[FrozenSet[str]] = frozenset(
    {"GET", "POST", "PATCH", "PUT", "DELETE"}
)

MAJOR_PARAMETERS: Final[Tuple[str, ...]] = (
    "channel_id",
    "guild_id",
    "webhook_id",
    "interaction_token",
)
""" Path parameters that discord rate limits on a per-resource basis,
their values become part of the bucket key.
"""

_formatter = string.Formatter()


def _placeholders(path: str) -> Tuple[str, ...]:
    return tuple(
        field for _, field, _, _ in _formatter.parse(path) if field is not None
    )


@final
@attr.frozen(init=False)
class Route:
    """Container class for routes that the http client will interact with
    contains data about the path, major parameters and the interpolated
    route. Routes are immutable, `with_query` returns a copy.
    """

    method: str = attr.field()
    """ HTTP method the request will take """

    path: str = attr.field()
    """ The path of the Route (not interpolated with the parameters) """

    params: Mapping[str, Any] = attr.field(hash=False)
    """ The parameters that the route will take """

    query: Tuple[Tuple[str, str], ...] = attr.field(default=())
    """ Query string parameters, in the order they were added """

    def __init__(self, method: str, path: str, **params: Any):
        method = method.upper()
        if method not in METHODS:
            raise ValidationError(f"unsupported HTTP method {method!r}")

        missing = set(_placeholders(path)) - params.keys()
        if missing:
            raise ValidationError(
                f"missing parameters for {path}: {', '.join(sorted(missing))}"
            )

        self.__attrs_init__(method, path, dict(sorted(params.items())), ())

    @property
    def compiled_path(self) -> str:
        """The path interpolated with the parameters"""
        return self.path.format_map({k: str(v) for k, v in self.params.items()})

    def url(self, base_url: str) -> str:
        """The interpolated URL of the route, without the query string"""
        return base_url + self.compiled_path

    @property
    def major_parameters(self) -> Dict[str, str]:
        return {
            key: str(self.params[key])
            for key in MAJOR_PARAMETERS
            if key in self.params
        }

    @property
    def bucket(self) -> str:
        """The ratelimit bucket that the route would fall into, as per the
        discord api docs (https://discord.com/developers/docs/topics/rate-limits)
        minor parameters are left as placeholders, major ones are filled in
        since discord limits those per resource.
        """

        major = ":".join(self.major_parameters.values())
        return f"{self.method} {self.path}:{major}"

    def with_query(self, **query: Any) -> Route:
        """Returns a copy of this route with the given query parameters
        added (``None`` values are skipped).
        """

        extra = tuple(
            (key, str(value)) for key, value in query.items() if value is not None
        )
        route = object.__new__(Route)
        route.__attrs_init__(self.method, self.path, self.params, self.query + extra)
        return route

    def __str__(self) -> str:
        return f"{self.method} {self.path}"

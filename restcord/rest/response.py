import json as jsonlib
from typing import Any, Optional, final

import attr
from multidict import CIMultiDict, CIMultiDictProxy

__all__ = ("Response",)


def _headers(value: Any) -> CIMultiDictProxy:
    if isinstance(value, CIMultiDictProxy):
        return value
    return CIMultiDictProxy(CIMultiDict(value or {}))


@final
@attr.define
class Response:
    """The object that represents the response that discord
    sends back after a HTTP request.
    """

    code: int = attr.field()
    """ The status code of the response """

    data: str = attr.field()
    """ The raw data of the response, probably should not be used
    directly, rather call a helper method to get the parsed data.
    """

    content_type: Optional[str] = attr.field(default=None)
    """ The content-type of the response, most likely
    application/json but could be something else (or missing for
    204 responses).
    """

    headers: CIMultiDictProxy = attr.field(factory=dict, converter=_headers)
    """ Response headers, case insensitive """

    @property
    def ok(self) -> bool:
        return 200 <= self.code < 300

    @property
    def is_json(self) -> bool:
        return (self.content_type or "").startswith("application/json")

    def json(self) -> Any:
        """Returns the parsed JSON data of the response, will
        raise a `ValueError` if the content type is incorrect.
        """

        if self.is_json:
            return jsonlib.loads(self.data)
        else:
            raise ValueError(
                f"content-type must be `application/json` not `{self.content_type}`"
            )

    def json_or_text(self) -> Any:
        """Parsed JSON if the body is JSON, the raw text otherwise"""

        if self.is_json:
            try:
                return jsonlib.loads(self.data)
            except jsonlib.JSONDecodeError:
                return self.data
        return self.data

    def header_float(self, name: str) -> Optional[float]:
        value = self.headers.get(name)
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None

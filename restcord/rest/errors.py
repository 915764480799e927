import enum
from typing import Any, Dict, List, Optional, Tuple, Union

import attr

__all__ = (
    "ClientException",
    "IllegalStateError",
    "ValidationError",
    "HTTPException",
    "SemanticApiError",
    "MissingPermissions",
    "UnknownEntity",
    "AlreadyInState",
    "TransportError",
    "RequestTimeoutError",
    "RateLimitExhaustedError",
    "CancelledError",
    "ErrorCode",
    "map_http_error",
)


class ErrorCode(enum.IntEnum):
    """The JSON error codes discord attaches to 4xx responses. Only the
    ones this library distinguishes between are listed, any other code is
    still exposed through `HTTPException.errno`.
    """

    UNKNOWN_ACCOUNT = 10001
    UNKNOWN_APPLICATION = 10002
    UNKNOWN_CHANNEL = 10003
    UNKNOWN_GUILD = 10004
    UNKNOWN_INTEGRATION = 10005
    UNKNOWN_INVITE = 10006
    UNKNOWN_MEMBER = 10007
    UNKNOWN_MESSAGE = 10008
    UNKNOWN_OVERRIDE = 10009
    UNKNOWN_ROLE = 10011
    UNKNOWN_TOKEN = 10012
    UNKNOWN_USER = 10013
    UNKNOWN_EMOJI = 10014
    UNKNOWN_WEBHOOK = 10015
    UNKNOWN_BAN = 10026
    UNKNOWN_INTERACTION = 10062
    UNKNOWN_COMMAND = 10063

    ALREADY_HAS_TEMPLATE = 30031
    UNAUTHORIZED = 40001
    USER_BANNED_FROM_GUILD = 40007
    ALREADY_CROSSPOSTED = 40033
    COMMAND_NAME_ALREADY_EXISTS = 40041
    INTERACTION_ALREADY_ACKNOWLEDGED = 40060

    MISSING_ACCESS = 50001
    MISSING_PERMISSIONS = 50013
    INVALID_BULK_DELETE = 50016
    INVALID_BULK_DELETE_MESSAGE_AGE = 50034
    INVALID_FORM_BODY = 50035

    @classmethod
    def lookup(cls, code: Optional[int]) -> Optional["ErrorCode"]:
        try:
            return cls(code)
        except ValueError:
            return None


_UNKNOWN_RANGE = range(10001, 11000)

_PERMISSION_CODES = frozenset(
    {ErrorCode.MISSING_ACCESS, ErrorCode.MISSING_PERMISSIONS}
)

_ALREADY_CODES = frozenset(
    {
        ErrorCode.ALREADY_HAS_TEMPLATE,
        ErrorCode.USER_BANNED_FROM_GUILD,
        ErrorCode.ALREADY_CROSSPOSTED,
        ErrorCode.COMMAND_NAME_ALREADY_EXISTS,
        ErrorCode.INTERACTION_ALREADY_ACKNOWLEDGED,
    }
)


class ItemsList(list):
    def items(self):
        for n, item in enumerate(self):
            yield str(n), item


def flatten(
    d: Union[Dict[str, Any], ItemsList], path: Optional[str] = None
) -> List[Tuple[str, Tuple[str, str]]]:
    if path is None:
        path = ""

    items: List[Tuple[str, Tuple[str, str]]] = []
    for k, v in d.items():
        if k == "_errors":
            for item in v:
                items.append((path[1:], (item["message"], item["code"])))
        if isinstance(v, dict):
            items.extend(flatten(v, path + ":" + k))
        elif isinstance(v, list):
            items.extend(flatten(ItemsList(v), path + ":" + k))
    return items


class ClientException(Exception):
    """Base class for every error raised by the client"""


class IllegalStateError(ClientException, RuntimeError):
    """An operation was attempted at the wrong point of an object's
    lifecycle, e.g. configuring an action after it was submitted.
    """


class ValidationError(ClientException, ValueError):
    """Raised before any network call when an argument is out of range
    or malformed.
    """


@attr.define(init=False, repr=False)
class HTTPException(ClientException):
    """Base class for errors that were encountered when making
    a HTTP request through the client. The status code and response
    data is included.
    """

    code: int = attr.field()
    """ The HTTP status code """

    data: Union[str, Dict[str, Any]] = attr.field()
    """ The body of the response (parsed if it was JSON) """

    def __init__(self, code: int, data: Union[str, Dict[str, Any]]):
        self.code = code
        self.data = data

        super().__init__(repr(self))

    @property
    def message(self) -> Optional[str]:
        """Error message sent by discord"""

        if isinstance(self.data, dict):
            return self.data.get("message")

    @property
    def errno(self) -> Optional[int]:
        """The JSON error code discord sent, see `ErrorCode`"""

        if isinstance(self.data, dict):
            return self.data.get("code")

    @property
    def errors(self) -> Optional[str]:
        """Returns the prettified error messages (discord nests them
        per offending field of the request body).
        """

        if isinstance(self.data, dict):
            if "errors" not in self.data:
                return None

            text = "\n".join(
                f"{item} ({code}): {message}"
                for item, (message, code) in flatten(self.data["errors"])
            )
            return text.strip()
        else:
            return self.data

    def __repr__(self) -> str:
        text = f"{self.code} {self.message} ({self.errno})"
        errors = self.errors
        if errors:
            text += f"\n{errors}"
        return text


class SemanticApiError(HTTPException):
    """A 4xx (other than 429) response. These are never retried."""

    @property
    def error_code(self) -> Optional[ErrorCode]:
        """`errno` as an `ErrorCode`, if it is one we know about"""
        return ErrorCode.lookup(self.errno)


class MissingPermissions(SemanticApiError):
    """The bot lacks access or a permission for the resource"""


class UnknownEntity(SemanticApiError):
    """The resource referenced by the request does not exist"""


class AlreadyInState(SemanticApiError):
    """The entity already is in the state the request tried to put it in"""


class TransportError(ClientException):
    """The request never produced a usable response: the connection
    failed or the server kept answering with 5xx.
    """

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RequestTimeoutError(TransportError):
    """The action's timeout expired before it resolved"""


class RateLimitExhaustedError(ClientException):
    """A request hit more 429s than `RESTConfig.max_ratelimit_retries`"""


class CancelledError(ClientException):
    """The action was cancelled before it was executed, or while its
    HTTP call was in flight (the response is then discarded).
    """


def map_http_error(status: int, data: Union[str, Dict[str, Any]]) -> HTTPException:
    """Turn a non-2xx, non-429 response into the matching exception."""

    if not 400 <= status < 500:
        return HTTPException(status, data)

    errno = data.get("code") if isinstance(data, dict) else None

    if errno in _PERMISSION_CODES or (errno is None and status == 403):
        return MissingPermissions(status, data)
    if errno in _ALREADY_CODES:
        return AlreadyInState(status, data)
    if (errno is not None and errno in _UNKNOWN_RANGE) or (
        errno is None and status == 404
    ):
        return UnknownEntity(status, data)

    return SemanticApiError(status, data)

"""Tests for mapping HTTP errors onto the exception hierarchy."""

import pytest

from restcord import (
    AlreadyInState,
    ErrorCode,
    HTTPException,
    MissingPermissions,
    SemanticApiError,
    UnknownEntity,
    map_http_error,
)


class TestMapHttpError:
    @pytest.mark.parametrize(
        "status,code,expected",
        [
            (403, 50013, MissingPermissions),
            (403, 50001, MissingPermissions),
            (404, 10008, UnknownEntity),
            (404, 10003, UnknownEntity),
            (400, 40007, AlreadyInState),
            (400, 40033, AlreadyInState),
            (400, 50035, SemanticApiError),
        ],
    )
    def test_codes(self, status, code, expected):
        exc = map_http_error(status, {"code": code, "message": "nope"})

        assert type(exc) is expected
        assert exc.code == status
        assert exc.errno == code
        assert exc.message == "nope"

    def test_status_without_code(self):
        assert isinstance(map_http_error(403, "forbidden"), MissingPermissions)
        assert isinstance(map_http_error(404, "not found"), UnknownEntity)
        assert type(map_http_error(400, "bad")) is SemanticApiError

    def test_non_client_errors_are_plain_http_exceptions(self):
        exc = map_http_error(502, "bad gateway")

        assert type(exc) is HTTPException
        assert not isinstance(exc, SemanticApiError)

    def test_error_code_lookup(self):
        exc = map_http_error(403, {"code": 50013, "message": "Missing Permissions"})
        unknown = map_http_error(400, {"code": 12345, "message": "?"})

        assert exc.error_code is ErrorCode.MISSING_PERMISSIONS
        assert unknown.error_code is None

    def test_nested_errors_are_flattened(self):
        exc = map_http_error(
            400,
            {
                "code": 50035,
                "message": "Invalid Form Body",
                "errors": {
                    "embeds": [
                        {"title": {"_errors": [{"code": "BASE_TYPE_MAX_LENGTH", "message": "Too long"}]}}
                    ]
                },
            },
        )

        assert exc.errors == "embeds:0:title (BASE_TYPE_MAX_LENGTH): Too long"
        assert "Invalid Form Body" in str(exc)

"""Tests for the repomirror error hierarchy and CLI formatting."""

from __future__ import annotations

import pytest

from repomirror.errors import (
    AuthError,
    ForbiddenError,
    InvalidConfigError,
    NotFoundError,
    ProviderError,
    ProviderHTTPError,
    RateLimitedError,
    RepoMirrorError,
    TransientNetworkError,
    UserNotFoundError,
    format_error_for_cli,
    handle_error,
    is_recoverable,
)


@pytest.mark.parametrize(
    "error,retryable",
    [
        (AuthError(status_code=401), False),
        (NotFoundError(status_code=404), False),
        (ForbiddenError(status_code=403), False),
        (RateLimitedError(retry_after=30, status_code=429), True),
        (TransientNetworkError(), True),
        (ProviderHTTPError(status_code=502), True),
        (ProviderHTTPError(status_code=422), False),
        (ProviderHTTPError(), False),
    ],
)
def test_provider_error_retryability(error: ProviderError, retryable: bool) -> None:
    assert error.retryable is retryable
    assert is_recoverable(error) is retryable


def test_rate_limited_is_a_forbidden_error() -> None:
    error = RateLimitedError("slow down", retry_after=12.5, status_code=403, path="/user/repos")

    assert isinstance(error, ForbiddenError)
    assert error.retry_after == 12.5
    assert error.details == {"status_code": 403, "path": "/user/repos", "retry_after": 12.5}


def test_default_messages_and_codes() -> None:
    error = UserNotFoundError()

    assert str(error) == "User not found"
    assert error.code == "USER_NOT_FOUND"
    assert not error.recoverable


def test_to_dict() -> None:
    error = InvalidConfigError("bad value", details={"key": "sync.worker_count"})

    data = error.to_dict()

    assert data["code"] == "INVALID_CONFIG"
    assert data["message"] == "bad value"
    assert data["user_message"] == "The configuration is invalid. Check settings."
    assert data["details"] == {"key": "sync.worker_count"}


def test_user_message_override() -> None:
    error = RepoMirrorError("internal", user_message="Try again later")
    assert error.user_message == "Try again later"


def test_plain_exceptions_are_not_recoverable() -> None:
    assert not is_recoverable(RuntimeError("boom"))


def test_cli_format_filters_sensitive_details() -> None:
    error = RepoMirrorError(
        "failed",
        details={"repository": "alice/project", "token": "ghp_secret", "Secret": "hook-signing-value", "empty": None},
    )

    output = format_error_for_cli(error)

    assert output.startswith("Error [REPOMIRROR_ERROR]:")
    assert "repository: alice/project" in output
    assert "ghp_secret" not in output
    assert "hook-signing-value" not in output
    assert "empty" not in output


def test_handle_error_includes_suggestion() -> None:
    message = handle_error(AuthError())

    assert "GitHub token" in message
    assert "Suggestion:" in message

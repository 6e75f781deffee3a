"""Centralized error definitions for repomirror.

This module provides a unified error hierarchy for the mirroring core. Provider
failures are classified once, at the HTTP boundary, so callers can decide
between retrying, aborting, or surfacing a message to the user.

Usage:
    from repomirror.errors import (
        RepoMirrorError,
        RateLimitedError,
        handle_error,
    )

    try:
        service.discover_and_sync_repositories(user_id)
    except RepoMirrorError as e:
        print(handle_error(e))
"""

from __future__ import annotations

from typing import Optional

from repomirror.errors.user_messages import (
    format_error_for_cli,
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class RepoMirrorError(Exception):
    """Base exception for all repomirror errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "REPOMIRROR_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(RepoMirrorError):
    """Base error for calls to the repository-hosting provider.

    Attributes:
        status_code: HTTP status returned by the provider, if any
        path: API path that was requested
    """

    code = "PROVIDER_ERROR"
    default_message = "GitHub API request failed"
    recoverable = False

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: Optional[int] = None,
        path: Optional[str] = None,
        details: dict | None = None,
    ) -> None:
        self.status_code = status_code
        self.path = path
        merged = {"status_code": status_code, "path": path}
        merged.update(details or {})
        super().__init__(message, details=merged)

    @property
    def retryable(self) -> bool:
        """Whether a caller may retry the same request."""
        return self.recoverable


class AuthError(ProviderError):
    """Token missing, invalid, or revoked."""

    code = "AUTH_ERROR"
    default_message = "GitHub token is missing or invalid"
    recoverable = False


class NotFoundError(ProviderError):
    """Repository, ref, or path does not exist (or is hidden from the token)."""

    code = "NOT_FOUND"
    default_message = "GitHub resource not found"
    recoverable = False


class ForbiddenError(ProviderError):
    """Token lacks permission for the requested resource."""

    code = "FORBIDDEN"
    default_message = "Access to GitHub resource denied"
    recoverable = False


class RateLimitedError(ForbiddenError):
    """Provider rate limit exhausted; retry after a delay."""

    code = "RATE_LIMITED"
    default_message = "GitHub rate limit exceeded"
    recoverable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
        path: Optional[str] = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(
            message,
            status_code=status_code,
            path=path,
            details={"retry_after": retry_after},
        )


class TransientNetworkError(ProviderError):
    """Connection reset, DNS failure, or timeout talking to the provider."""

    code = "TRANSIENT_NETWORK_ERROR"
    default_message = "Network error talking to GitHub"
    recoverable = True


class ProviderHTTPError(ProviderError):
    """Any other non-2xx response; 5xx responses are retryable."""

    code = "PROVIDER_HTTP_ERROR"
    default_message = "Unexpected GitHub API response"

    @property
    def recoverable(self) -> bool:  # type: ignore[override]
        return self.status_code is not None and self.status_code >= 500


# =============================================================================
# Local Errors
# =============================================================================


class ValidationError(RepoMirrorError):
    """Malformed local input, e.g. a repository name that is not owner/name."""

    code = "VALIDATION_ERROR"
    default_message = "Invalid input"
    recoverable = False


class RepositoryNotFoundError(RepoMirrorError):
    """Repository is not known to the local store."""

    code = "REPOSITORY_NOT_FOUND"
    default_message = "Repository not found in local mirror"
    recoverable = False


class UserNotFoundError(RepoMirrorError):
    """User is not known to the local store."""

    code = "USER_NOT_FOUND"
    default_message = "User not found"
    recoverable = False


# =============================================================================
# Sync Errors
# =============================================================================


class SyncError(RepoMirrorError):
    """Base error for repository synchronization."""

    code = "SYNC_ERROR"
    default_message = "Repository sync failed"


class SyncInProgressError(SyncError):
    """Another pass already holds the repository."""

    code = "SYNC_IN_PROGRESS"
    default_message = "A sync is already running for this repository"


# =============================================================================
# Webhook Errors
# =============================================================================


class WebhookError(RepoMirrorError):
    """Base error for webhook operations."""

    code = "WEBHOOK_ERROR"
    default_message = "Webhook operation failed"


class WebhookSubscriptionError(WebhookError):
    """Creating or removing a provider webhook failed."""

    code = "WEBHOOK_SUBSCRIPTION_ERROR"
    default_message = "Failed to manage webhook subscription"


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(RepoMirrorError):
    """Base error for configuration issues."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"
    recoverable = True


class InvalidConfigError(ConfigurationError):
    """Configuration is invalid."""

    code = "INVALID_CONFIG"
    default_message = "Invalid configuration"


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""

    code = "MISSING_CONFIG"
    default_message = "Missing required configuration"


# =============================================================================
# Error Handler
# =============================================================================


def handle_error(error: Exception) -> str:
    """Handle an error and return a user-friendly message.

    Args:
        error: The exception to handle

    Returns:
        User-friendly error message with recovery suggestion
    """
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """Check if an error is potentially recoverable.

    Args:
        error: The exception to check

    Returns:
        True if the error is recoverable
    """
    if isinstance(error, RepoMirrorError):
        return error.recoverable
    return False


__all__ = [
    "AuthError",
    "ConfigurationError",
    "ForbiddenError",
    "InvalidConfigError",
    "MissingConfigError",
    "NotFoundError",
    "ProviderError",
    "ProviderHTTPError",
    "RateLimitedError",
    "RepoMirrorError",
    "RepositoryNotFoundError",
    "SyncError",
    "SyncInProgressError",
    "TransientNetworkError",
    "UserNotFoundError",
    "ValidationError",
    "WebhookError",
    "WebhookSubscriptionError",
    "format_error_for_cli",
    "handle_error",
    "is_recoverable",
]

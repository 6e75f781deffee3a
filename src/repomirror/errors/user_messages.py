"""User-friendly error messages for repomirror.

This module provides human-readable error messages and recovery suggestions
for all error types, so CLI users and calling modules never see raw provider
responses.

Privacy Note:
- Error messages NEVER include tokens or webhook secrets
- Error details are filtered before display
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Provider errors
    "PROVIDER_ERROR": "The GitHub API request failed.",
    "AUTH_ERROR": "The GitHub token is missing, invalid, or has been revoked.",
    "NOT_FOUND": "The GitHub repository or reference wasn't found.",
    "FORBIDDEN": "The GitHub token doesn't have access to this resource.",
    "RATE_LIMITED": "GitHub's rate limit was reached. The request will be retried later.",
    "TRANSIENT_NETWORK_ERROR": "A network problem interrupted the request to GitHub.",
    "PROVIDER_HTTP_ERROR": "GitHub returned an unexpected response.",
    # Local errors
    "VALIDATION_ERROR": "The input is not valid.",
    "REPOSITORY_NOT_FOUND": "This repository isn't in the local mirror yet.",
    "USER_NOT_FOUND": "This user isn't registered with the mirror.",
    # Sync errors
    "SYNC_ERROR": "The repository couldn't be synchronized.",
    "SYNC_IN_PROGRESS": "A sync is already running for this repository.",
    # Webhook errors
    "WEBHOOK_ERROR": "A webhook operation failed.",
    "WEBHOOK_SUBSCRIPTION_ERROR": "The GitHub webhook couldn't be created or removed.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    "INVALID_CONFIG": "The configuration is invalid. Check settings.",
    "MISSING_CONFIG": "Required configuration is missing.",
    # Generic
    "REPOMIRROR_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    # Provider errors
    "PROVIDER_ERROR": "Check GitHub status and retry.",
    "AUTH_ERROR": "Store a new token: repomirror github users add <id> --token <token>",
    "NOT_FOUND": "Check the repository name and that the token can see it.",
    "FORBIDDEN": "Grant the token the 'repo' and 'admin:repo_hook' scopes.",
    "RATE_LIMITED": "Wait for the rate limit window to reset, then retry.",
    "TRANSIENT_NETWORK_ERROR": "Check your network connection and retry.",
    "PROVIDER_HTTP_ERROR": "Retry later. If the issue persists, check GitHub status.",
    # Local errors
    "VALIDATION_ERROR": "Repositories must be given as 'owner/name'.",
    "REPOSITORY_NOT_FOUND": "Run discovery first: repomirror github discover <user>",
    "USER_NOT_FOUND": "Register the user: repomirror github users add <id>",
    # Sync errors
    "SYNC_ERROR": "Check the sync status: repomirror github status <repository>",
    "SYNC_IN_PROGRESS": "Wait for the running sync to finish.",
    # Webhook errors
    "WEBHOOK_ERROR": "Check webhook stats: repomirror github webhook stats",
    "WEBHOOK_SUBSCRIPTION_ERROR": "Make sure the token has admin rights and the callback URL is public.",
    # Configuration errors
    "CONFIGURATION_ERROR": "Check config: repomirror config show",
    "INVALID_CONFIG": "Validate config: repomirror config validate",
    "MISSING_CONFIG": "Add the required setting: repomirror config set <key> <value>",
    # Generic
    "REPOMIRROR_ERROR": "If this persists, please report the issue.",
    "UNKNOWN_ERROR": "Try again. Report if the issue continues.",
}

_SENSITIVE_DETAIL_KEYS = ("token", "secret", "authorization", "password")


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        Recovery suggestion
    """
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_user(error: Any) -> str:
    """Format a complete user-friendly error message."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output.

    Args:
        error: The error to format

    Returns:
        CLI-formatted error message
    """
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)
    code = getattr(error, "code", "ERROR")

    lines = [
        f"Error [{code}]: {message}",
        "",
        f"Suggestion: {suggestion}",
    ]

    details = getattr(error, "details", None)
    if details:
        lines.append("")
        lines.append("Details:")
        for key, value in details.items():
            if value is None or key.lower() in _SENSITIVE_DETAIL_KEYS:
                continue
            lines.append(f"  {key}: {value}")

    return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "format_error_for_cli",
    "format_error_for_user",
    "get_recovery_suggestion",
    "get_user_message",
]

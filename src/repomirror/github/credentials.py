"""Per-user GitHub token storage backed by the OS keychain.

Tokens are stored under ``github-token:<user_id>`` in the keyring service of
the configured :class:`~repomirror.configuration.settings.SecretStore`. They
are never persisted in the mirror database or the config file.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from repomirror.configuration.settings import SecretStore
from repomirror.errors import ValidationError

logger = logging.getLogger(__name__)


def _token_key(user_id: str) -> str:
    return f"github-token:{user_id}"


def validate_token_format(token: str) -> bool:
    """Cheap structural check before a token is stored.

    Classic PATs are ``ghp_`` plus 36 characters, fine-grained PATs start
    with ``github_pat_``; OAuth and app tokens only need a plausible length.
    """
    token = token.strip()
    if not token or any(ch.isspace() for ch in token):
        return False
    if token.startswith("ghp_"):
        return len(token) == 40
    if token.startswith("github_pat_"):
        return len(token) >= 82
    return len(token) >= 20


@dataclass
class GitHubTokenStore:
    """Stores, retrieves, and removes GitHub tokens per local user."""

    secret_store: SecretStore = field(default_factory=SecretStore)

    def store_token(self, user_id: str, token: str) -> None:
        token = token.strip()
        if not validate_token_format(token):
            raise ValidationError("GitHub token has an unexpected format")
        self.secret_store.set_secret(_token_key(user_id), token)
        logger.info(f"Stored GitHub token for user {user_id}", extra={"user_id": user_id})

    def get_token(self, user_id: str) -> Optional[str]:
        token = self.secret_store.get_secret(_token_key(user_id))
        return token or None

    def has_token(self, user_id: str) -> bool:
        return self.get_token(user_id) is not None

    def delete_token(self, user_id: str) -> None:
        self.secret_store.delete_secret(_token_key(user_id))
        logger.info(f"Removed GitHub token for user {user_id}", extra={"user_id": user_id})


__all__ = ["GitHubTokenStore", "validate_token_format"]

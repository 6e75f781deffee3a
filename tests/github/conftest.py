"""Shared fixtures and mocks for GitHub mirror tests."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
from pydantic import SecretStr

from repomirror.configuration.settings import (
    SecretStore,
    Settings,
    StorageSettings,
    SyncSettings,
    WebhookSettings,
)
from repomirror.github.api_client import GitHubAPIClient
from repomirror.github.credentials import GitHubTokenStore
from repomirror.github.models import LocalUser, RemoteRepository
from repomirror.github.payloads import (
    BranchPayload,
    CollaboratorPayload,
    CommitPayload,
    ContentEntryPayload,
    HookPayload,
    RepositoryPayload,
    UserPayload,
)
from repomirror.github.retry import RetryPolicy
from repomirror.github.store import MirrorStore


TEST_TOKEN = "ghp_" + "a" * 36
TEST_SECRET = "test-webhook-secret-1234567890"
FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Mock keyring
# ---------------------------------------------------------------------------


class MockKeyring:
    """Mock keyring for testing credential storage."""

    def __init__(self):
        self.storage = {}

    def set_password(self, service: str, username: str, password: str):
        key = f"{service}:{username}"
        self.storage[key] = password

    def get_password(self, service: str, username: str) -> Optional[str]:
        key = f"{service}:{username}"
        return self.storage.get(key)

    def delete_password(self, service: str, username: str):
        key = f"{service}:{username}"
        if key in self.storage:
            del self.storage[key]


@pytest.fixture
def mock_keyring():
    """Provide mock keyring for testing."""
    return MockKeyring()


@pytest.fixture
def github_token():
    return TEST_TOKEN


@pytest.fixture
def webhook_secret():
    return TEST_SECRET


@pytest.fixture
def secret_store(mock_keyring):
    return SecretStore(service_name="repomirror-test", keyring_module=mock_keyring)


@pytest.fixture
def token_store(secret_store):
    return GitHubTokenStore(secret_store=secret_store)


# ---------------------------------------------------------------------------
# Store, client, settings
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path):
    mirror = MirrorStore(tmp_path / "mirror.db")
    yield mirror
    mirror.close()


@pytest.fixture
def mock_client():
    """GitHub client mock restricted to the real client's interface."""
    return MagicMock(spec=GitHubAPIClient)


@pytest.fixture
def no_retry():
    return RetryPolicy(max_attempts=1)


@pytest.fixture
def webhook_settings():
    return WebhookSettings(
        base_url="https://mirror.example.com",
        secret=SecretStr(TEST_SECRET),
        subscribe_delay_seconds=0,
    )


@pytest.fixture
def settings(tmp_path, webhook_settings):
    return Settings(
        provider={"retry": {"max_attempts": 1}},
        storage=StorageSettings(database_path=tmp_path / "mirror.db"),
        sync=SyncSettings(inter_repository_delay_seconds=0),
        webhook=webhook_settings,
    )


@pytest.fixture
def clock():
    """Mutable clock: set ``clock.now`` to move time."""

    class _Clock:
        now = FIXED_NOW

        def __call__(self) -> datetime:
            return self.now

    return _Clock()


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


@pytest.fixture
def stored_user(store, token_store):
    user = store.upsert_user(
        LocalUser(id="user-1", username="alice@example.com", github_username="alice")
    )
    token_store.store_token(user.id, TEST_TOKEN)
    return user


@pytest.fixture
def stored_repository(store, stored_user):
    return store.upsert_repository(
        RemoteRepository(
            github_id=1001,
            full_name="alice/project",
            name="project",
            owner_login="alice",
            owner_id=stored_user.id,
            default_branch="main",
        )
    )


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------


def make_repository_payload(
    repo_id: int = 1001,
    full_name: str = "alice/project",
    *,
    admin: bool = True,
    default_branch: str = "main",
    **extra: Any,
) -> RepositoryPayload:
    owner, name = full_name.split("/")
    data: Dict[str, Any] = {
        "id": repo_id,
        "name": name,
        "full_name": full_name,
        "owner": {"id": 1, "login": owner},
        "private": False,
        "visibility": "public",
        "default_branch": default_branch,
        "html_url": f"https://github.com/{full_name}",
        "language": "Python",
        "stargazers_count": 3,
        "permissions": {"admin": admin, "push": True, "pull": True},
        "license": {"key": "mit", "name": "MIT License"},
        "topics": ["mirror"],
    }
    data.update(extra)
    return RepositoryPayload.model_validate(data)


def make_commit_payload(
    sha: str,
    *,
    message: str = "Commit message",
    with_stats: bool = True,
    parents: tuple = (),
) -> CommitPayload:
    data: Dict[str, Any] = {
        "sha": sha,
        "commit": {
            "message": message,
            "author": {
                "name": "Alice",
                "email": "alice@example.com",
                "date": "2024-05-30T10:00:00Z",
            },
            "committer": {
                "name": "Alice",
                "email": "alice@example.com",
                "date": "2024-05-30T10:05:00Z",
            },
        },
        "author": {"login": "alice", "id": 1},
        "parents": [{"sha": parent} for parent in parents],
        "html_url": f"https://github.com/alice/project/commit/{sha}",
    }
    if with_stats:
        data["stats"] = {"additions": 10, "deletions": 2, "total": 12}
    return CommitPayload.model_validate(data)


def make_branch_payload(name: str, sha: str, *, protected: bool = False) -> BranchPayload:
    return BranchPayload.model_validate(
        {
            "name": name,
            "protected": protected,
            "commit": {
                "sha": sha,
                "commit": {
                    "message": f"Head of {name}",
                    "author": {"name": "Alice", "date": "2024-05-30T10:00:00Z"},
                },
            },
        }
    )


def make_entry(path: str, entry_type: str = "file", size: int = 10) -> ContentEntryPayload:
    return ContentEntryPayload(
        name=path.rsplit("/", 1)[-1],
        path=path,
        type=entry_type,
        sha=f"sha-{path}",
        size=size,
    )


def make_file(path: str, raw: bytes) -> ContentEntryPayload:
    return ContentEntryPayload(
        name=path.rsplit("/", 1)[-1],
        path=path,
        type="file",
        size=len(raw),
        content=base64.b64encode(raw).decode("ascii"),
        encoding="base64",
    )


def make_collaborator(login: str, collaborator_id: int, **permissions: bool) -> CollaboratorPayload:
    return CollaboratorPayload.model_validate(
        {"id": collaborator_id, "login": login, "permissions": permissions}
    )


def make_user_payload(login: str = "alice") -> UserPayload:
    return UserPayload(id=1, login=login)


def make_hook_payload(hook_id: int = 555) -> HookPayload:
    return HookPayload(id=hook_id, events=["push"])


@pytest.fixture
def payloads():
    """Namespace of payload factories."""

    class _Payloads:
        repository = staticmethod(make_repository_payload)
        commit = staticmethod(make_commit_payload)
        branch = staticmethod(make_branch_payload)
        entry = staticmethod(make_entry)
        file = staticmethod(make_file)
        collaborator = staticmethod(make_collaborator)
        user = staticmethod(make_user_payload)
        hook = staticmethod(make_hook_payload)

    return _Payloads

"""Tests for repository discovery across affiliation scopes."""

from __future__ import annotations

import pytest

from repomirror.errors import AuthError, ForbiddenError
from repomirror.github.discovery import (
    AFFILIATIONS,
    RepositoryDiscovery,
    repository_from_payload,
)


@pytest.fixture
def discovery(mock_client, store, no_retry):
    return RepositoryDiscovery(client=mock_client, store=store, retry_policy=no_retry)


def test_merges_affiliations_by_provider_id(discovery, mock_client, payloads, github_token):
    owned = payloads.repository(1, "alice/a")
    shared = payloads.repository(2, "bob/b")
    org = payloads.repository(3, "acme/c")
    mock_client.get_authenticated_user.return_value = payloads.user()
    mock_client.list_user_repositories.side_effect = [
        [owned],
        [shared, owned],
        [org],
        [owned, shared, org],
    ]

    result = discovery.discover_accessible_repositories("user-1", github_token)

    assert result.token_valid
    assert sorted(r.id for r in result.repositories) == [1, 2, 3]
    queried = [c.args[1] for c in mock_client.list_user_repositories.call_args_list]
    assert tuple(queried) == AFFILIATIONS


def test_invalid_token_returns_cached_repositories(
    discovery, mock_client, stored_repository, github_token
):
    mock_client.get_authenticated_user.side_effect = AuthError("Bad credentials", status_code=401)

    result = discovery.discover_accessible_repositories("user-1", github_token)

    assert not result.token_valid
    assert result.repositories == []
    assert [r.id for r in result.cached] == [stored_repository.id]
    mock_client.list_user_repositories.assert_not_called()


def test_missing_token_degrades_to_cache(discovery, mock_client):
    mock_client.get_authenticated_user.side_effect = AuthError("No GitHub token available")

    result = discovery.discover_accessible_repositories("user-1", None)

    assert not result.token_valid
    assert result.cached == []


def test_failed_affiliation_is_skipped(discovery, mock_client, payloads, github_token):
    mock_client.get_authenticated_user.return_value = payloads.user()
    mock_client.list_user_repositories.side_effect = [
        [payloads.repository(1, "alice/a")],
        ForbiddenError("org restricted", status_code=403),
        [],
        [payloads.repository(2, "alice/b")],
    ]

    result = discovery.discover_accessible_repositories("user-1", github_token)

    assert [r.id for r in result.repositories] == [1, 2]
    assert result.failed_affiliations == ["collaborator"]


def test_repository_from_payload_maps_fields(payloads):
    payload = payloads.repository(42, "alice/tool", default_branch="develop", private=True)

    record = repository_from_payload(payload, owner_id="user-1")

    assert record.github_id == 42
    assert record.full_name == "alice/tool"
    assert record.owner_login == "alice"
    assert record.owner_id == "user-1"
    assert record.default_branch == "develop"
    assert record.is_private
    assert record.license_name == "MIT License"
    assert record.topics == ["mirror"]
    assert record.id is None

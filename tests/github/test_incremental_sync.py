"""Tests for event-driven incremental sync."""

from __future__ import annotations

from datetime import timedelta

import pytest

from repomirror.errors import NotFoundError
from repomirror.github.incremental_sync import IncrementalSyncService
from repomirror.github.models import SyncStatus
from repomirror.github.payloads import RefPayload
from repomirror.github.sync_orchestrator import commit_from_payload


@pytest.fixture
def service(mock_client, store, token_store, no_retry, clock):
    return IncrementalSyncService(
        mock_client,
        store,
        token_store,
        retry_policy=no_retry,
        event_freshness=timedelta(minutes=5),
        event_commit_page_size=10,
        clock=clock,
    )


@pytest.fixture
def recently_synced(store, stored_repository, clock):
    store.finish_sync(stored_repository.id, SyncStatus.COMPLETED, now=clock.now - timedelta(minutes=1))
    return store.get_repository(stored_repository.id)


def _push(*shas):
    return {
        "ref": "refs/heads/main",
        "repository": {"id": 1001, "full_name": "alice/project"},
        "commits": [{"id": sha, "message": f"commit {sha}"} for sha in shas],
    }


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


def test_push_stores_new_commits(service, mock_client, payloads, store, stored_repository, clock):
    mock_client.get_commit.side_effect = lambda token, full_name, sha: payloads.commit(sha)

    applied = service.handle_event("alice/project", "push", _push("a1", "a2"))

    assert applied
    assert {c.sha for c in store.list_commits(stored_repository.id)} == {"a1", "a2"}
    assert store.get_repository(stored_repository.id).last_sync_at == clock.now


def test_push_skips_known_commits(service, mock_client, payloads, store, stored_repository):
    store.insert_commit(commit_from_payload(stored_repository.id, payloads.commit("a1")))
    mock_client.get_commit.side_effect = lambda token, full_name, sha: payloads.commit(sha)

    service.handle_event("alice/project", "push", _push("a1", "a2"))

    fetched = [c.args[2] for c in mock_client.get_commit.call_args_list]
    assert fetched == ["a2"]


def test_push_is_processed_even_when_recently_synced(service, mock_client, payloads, recently_synced):
    mock_client.get_commit.side_effect = lambda token, full_name, sha: payloads.commit(sha)

    assert service.handle_event("alice/project", "push", _push("b1"))
    mock_client.get_commit.assert_called_once()


def test_provider_errors_propagate(service, mock_client, stored_repository):
    mock_client.get_commit.side_effect = NotFoundError("No commit found", status_code=404)

    with pytest.raises(NotFoundError):
        service.handle_event("alice/project", "push", _push("missing"))


# ---------------------------------------------------------------------------
# Create / delete
# ---------------------------------------------------------------------------


def test_branch_creation_stores_recent_commits(service, mock_client, payloads, store, stored_repository):
    mock_client.list_commits.return_value = [
        payloads.commit("n1", with_stats=False),
        payloads.commit("n2", with_stats=False),
    ]

    applied = service.handle_event(
        "alice/project", "create", {"ref": "feature/x", "ref_type": "branch"}
    )

    assert applied
    kwargs = mock_client.list_commits.call_args.kwargs
    assert kwargs == {"sha": "feature/x", "per_page": 10}
    assert {c.sha for c in store.list_commits(stored_repository.id)} == {"n1", "n2"}
    mock_client.get_commit.assert_not_called()


def test_tag_creation_is_logged_only(service, mock_client, stored_repository):
    assert service.handle_event("alice/project", "create", {"ref": "v1.0", "ref_type": "tag"})
    mock_client.list_commits.assert_not_called()


def test_delete_event_is_applied_without_provider_calls(service, mock_client, stored_repository):
    assert service.handle_event("alice/project", "delete", {"ref": "old", "ref_type": "branch"})
    assert not mock_client.method_calls


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


def _release(tag="v1.0", action="published"):
    return {"action": action, "release": {"tag_name": tag}}


def test_release_stores_tagged_commit(service, mock_client, payloads, store, stored_repository):
    mock_client.get_tag_ref.return_value = RefPayload.model_validate(
        {"ref": "refs/tags/v1.0", "object": {"sha": "t1", "type": "commit"}}
    )
    mock_client.get_commit.return_value = payloads.commit("t1")

    assert service.handle_event("alice/project", "release", _release())

    assert mock_client.get_commit.call_args.args[2] == "t1"
    assert store.commit_exists(stored_repository.id, "t1")


def test_release_with_annotated_tag_resolves_by_name(service, mock_client, payloads, store, stored_repository):
    mock_client.get_tag_ref.return_value = RefPayload.model_validate(
        {"ref": "refs/tags/v2.0", "object": {"sha": "tag-object", "type": "tag"}}
    )
    mock_client.get_commit.return_value = payloads.commit("peeled")

    service.handle_event("alice/project", "release", _release("v2.0"))

    assert mock_client.get_commit.call_args.args[2] == "v2.0"
    assert store.commit_exists(stored_repository.id, "peeled")


def test_unpublished_release_is_ignored(service, mock_client, stored_repository):
    assert service.handle_event("alice/project", "release", _release(action="created"))
    mock_client.get_tag_ref.assert_not_called()


def test_release_skipped_when_recently_synced(service, mock_client, recently_synced):
    assert not service.handle_event("alice/project", "release", _release())
    mock_client.get_tag_ref.assert_not_called()


# ---------------------------------------------------------------------------
# Ignored events
# ---------------------------------------------------------------------------


def test_unknown_repository_is_ignored(service, mock_client):
    assert not service.handle_event("someone/else", "push", _push("a"))
    assert not mock_client.method_calls


def test_missing_repository_name_is_ignored(service):
    assert not service.handle_event(None, "push", {})


def test_missing_owner_token_is_ignored(service, mock_client, token_store, stored_repository):
    token_store.delete_token(stored_repository.owner_id)
    assert not service.handle_event("alice/project", "push", _push("a"))
    assert not mock_client.method_calls


def test_other_events_only_touch_sync_time(service, mock_client, store, stored_repository, clock):
    assert service.handle_event("alice/project", "watch", {"action": "started"})
    assert not mock_client.method_calls
    assert store.get_repository(stored_repository.id).last_sync_at == clock.now

"""Tests for the SQLite mirror store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from repomirror.github.models import (
    Branch,
    Collaborator,
    Commit,
    LocalUser,
    PermissionLevel,
    RemoteRepository,
    SyncStatus,
    TrackedFile,
    WebhookStatus,
    WebhookSubscription,
)
from repomirror.github.store import MirrorStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _repository(github_id: int = 1, full_name: str = "alice/project", owner_id: str = "user-1", **extra):
    owner, name = full_name.split("/")
    return RemoteRepository(
        github_id=github_id,
        full_name=full_name,
        name=name,
        owner_login=owner,
        owner_id=owner_id,
        **extra,
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def test_user_upsert_and_lookup(store):
    store.upsert_user(LocalUser(id="u1", username="alice@example.com", github_username="Alice"))
    store.upsert_user(LocalUser(id="u2", username="bob", is_active=False))

    assert store.get_user("u1").github_username == "Alice"
    assert store.find_user_by_github_username("alice").id == "u1"
    assert store.find_user_by_username("BOB").id == "u2"
    assert [u.id for u in store.list_users(active_only=True)] == ["u1"]
    assert len(store.list_users()) == 2


def test_user_upsert_keeps_created_at(store):
    first = store.upsert_user(LocalUser(id="u1", username="alice", created_at=NOW))
    second = store.upsert_user(
        LocalUser(id="u1", username="alice2", created_at=NOW + timedelta(days=1))
    )
    assert second.username == "alice2"
    assert second.created_at == first.created_at == NOW


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


def test_repository_upsert_is_keyed_by_github_id(store):
    first = store.upsert_repository(_repository(description="v1", topics=["a"]))
    second = store.upsert_repository(_repository(description="v2", full_name="alice/renamed"))

    assert first.id == second.id
    assert second.description == "v2"
    assert second.full_name == "alice/renamed"
    assert len(store.list_repositories()) == 1


def test_repository_upsert_keeps_owner_and_sync_columns(store):
    created = store.upsert_repository(_repository(owner_id="first-owner"))
    store.finish_sync(created.id, SyncStatus.COMPLETED, now=NOW)

    updated = store.upsert_repository(_repository(owner_id="second-owner"))

    assert updated.owner_id == "first-owner"
    assert updated.sync_status == SyncStatus.COMPLETED
    assert updated.last_sync_at == NOW


def test_repository_lookup_by_full_name_is_case_insensitive(store):
    created = store.upsert_repository(_repository(full_name="Alice/Project"))
    assert store.get_repository_by_full_name("alice/project").id == created.id
    assert store.get_repository_by_full_name("alice/other") is None


def test_list_repositories_by_owner(store):
    store.upsert_repository(_repository(github_id=1, full_name="alice/a", owner_id="u1"))
    store.upsert_repository(_repository(github_id=2, full_name="bob/b", owner_id="u2"))
    assert [r.full_name for r in store.list_repositories(owner_id="u1")] == ["alice/a"]


def test_try_begin_sync_is_exclusive(store):
    repo = store.upsert_repository(_repository())
    abandoned_before = NOW - timedelta(hours=1)

    assert store.try_begin_sync(repo.id, now=NOW, abandoned_before=abandoned_before)
    assert not store.try_begin_sync(repo.id, now=NOW, abandoned_before=abandoned_before)
    assert store.get_repository(repo.id).sync_status == SyncStatus.SYNCING


def test_try_begin_sync_reclaims_abandoned_pass(store):
    repo = store.upsert_repository(_repository())
    store.try_begin_sync(repo.id, now=NOW, abandoned_before=NOW - timedelta(hours=1))

    later = NOW + timedelta(hours=2)
    assert store.try_begin_sync(repo.id, now=later, abandoned_before=later - timedelta(hours=1))


def test_finish_sync_records_outcome(store):
    repo = store.upsert_repository(_repository())
    store.try_begin_sync(repo.id, now=NOW, abandoned_before=NOW)
    store.finish_sync(repo.id, SyncStatus.FAILED, now=NOW, error="boom")

    failed = store.get_repository(repo.id)
    assert failed.sync_status == SyncStatus.FAILED
    assert failed.last_sync_error == "boom"
    assert failed.last_sync_at is None

    store.try_begin_sync(repo.id, now=NOW, abandoned_before=NOW)
    assert store.get_repository(repo.id).last_sync_error is None
    store.finish_sync(repo.id, SyncStatus.COMPLETED, now=NOW)
    completed = store.get_repository(repo.id)
    assert completed.sync_status == SyncStatus.COMPLETED
    assert completed.last_sync_at == NOW


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


def test_branch_upsert_replaces_head(store):
    repo = store.upsert_repository(_repository())
    store.upsert_branch(Branch(repository_id=repo.id, name="main", sha="a"))
    store.upsert_branch(Branch(repository_id=repo.id, name="main", sha="b", is_default=True))

    branches = store.list_branches(repo.id)
    assert len(branches) == 1
    assert branches[0].sha == "b"
    assert branches[0].is_default


def test_commit_insert_is_write_once(store):
    repo = store.upsert_repository(_repository())
    assert store.insert_commit(Commit(repository_id=repo.id, sha="abc", message="first"))
    assert not store.insert_commit(Commit(repository_id=repo.id, sha="abc", message="second"))

    commits = store.list_commits(repo.id)
    assert [c.message for c in commits] == ["first"]
    assert store.commit_exists(repo.id, "abc")
    assert not store.commit_exists(repo.id, "def")


def test_file_upsert_keyed_by_branch_and_path(store):
    repo = store.upsert_repository(_repository())
    store.upsert_file(TrackedFile(repository_id=repo.id, branch="main", path="a.py", name="a.py", type="file"))
    store.upsert_file(
        TrackedFile(repository_id=repo.id, branch="main", path="a.py", name="a.py", type="file", size=5)
    )
    store.upsert_file(TrackedFile(repository_id=repo.id, branch="dev", path="a.py", name="a.py", type="file"))

    assert len(store.list_files(repo.id)) == 2
    assert store.list_files(repo.id, branch="main")[0].size == 5


def test_collaborator_upsert(store):
    repo = store.upsert_repository(_repository())
    store.upsert_collaborator(Collaborator(repository_id=repo.id, github_id=9, login="bob"))
    store.upsert_collaborator(
        Collaborator(
            repository_id=repo.id,
            github_id=9,
            login="bobby",
            permission=PermissionLevel.ADMIN,
        )
    )

    collaborators = store.list_collaborators(repo.id)
    assert len(collaborators) == 1
    assert collaborators[0].login == "bobby"
    assert collaborators[0].permission == PermissionLevel.ADMIN


# ---------------------------------------------------------------------------
# Webhook subscriptions
# ---------------------------------------------------------------------------


def _subscription(repository_id: int, webhook_id: str = "123", **extra) -> WebhookSubscription:
    return WebhookSubscription(
        repository_id=repository_id,
        webhook_id=webhook_id,
        webhook_url="https://mirror.example.com/hook",
        events=["push"],
        subscribed_at=NOW,
        updated_at=NOW,
        **extra,
    )


def test_subscription_is_single_per_repository(store):
    repo = store.upsert_repository(_repository())
    first = store.save_subscription(_subscription(repo.id))
    second = store.save_subscription(_subscription(repo.id, webhook_id="456", status=WebhookStatus.FAILED))

    assert first.id == second.id
    assert second.webhook_id == "456"
    assert second.subscribed_at == NOW
    assert store.find_subscription_by_webhook_id("456").repository_id == repo.id
    assert store.find_subscription_by_webhook_id("123") is None


def test_repositories_without_subscription_and_counts(store):
    with_hook = store.upsert_repository(_repository(github_id=1, full_name="alice/a"))
    store.upsert_repository(_repository(github_id=2, full_name="alice/b"))
    store.save_subscription(_subscription(with_hook.id))

    missing = store.list_repositories_without_subscription()
    assert [r.full_name for r in missing] == ["alice/b"]
    assert store.subscription_counts() == {"ACTIVE": 1, "INACTIVE": 0, "FAILED": 0}
    assert len(store.list_subscriptions(status=WebhookStatus.ACTIVE)) == 1


def test_store_persists_across_instances(tmp_path):
    path = tmp_path / "mirror.db"
    first = MirrorStore(path)
    first.upsert_repository(_repository())
    first.close()

    second = MirrorStore(path)
    try:
        assert second.get_repository_by_github_id(1).full_name == "alice/project"
    finally:
        second.close()

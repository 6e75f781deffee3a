"""Tests for the staged full sync pass."""

from __future__ import annotations

import base64
import threading
from datetime import timedelta

import pytest

from repomirror.errors import (
    AuthError,
    NotFoundError,
    ProviderHTTPError,
    RepositoryNotFoundError,
)
from repomirror.github.models import LocalUser, PermissionLevel, SyncStatus
from repomirror.github.payloads import ContentEntryPayload
from repomirror.github.sync_orchestrator import (
    RepositorySyncOrchestrator,
    commit_from_payload,
    decode_file_content,
    permission_level,
)


@pytest.fixture
def orchestrator(mock_client, store, no_retry, clock):
    return RepositorySyncOrchestrator(
        mock_client,
        store,
        retry_policy=no_retry,
        max_directory_depth=2,
        max_inline_file_size=1024,
        clock=clock,
    )


@pytest.fixture
def happy_client(mock_client, payloads):
    """Client returning a small but complete repository."""
    mock_client.get_repository.return_value = payloads.repository(1001, "alice/project")
    mock_client.get_languages.return_value = {"Python": 1200}
    mock_client.list_branches.return_value = [
        payloads.branch("main", "c2", protected=True),
        payloads.branch("feature", "c3"),
    ]
    mock_client.list_commits.return_value = [
        payloads.commit("c2", with_stats=False),
        payloads.commit("c1", with_stats=False),
    ]
    mock_client.get_commit.side_effect = lambda token, full_name, sha: payloads.commit(sha)

    def contents(token, full_name, path, ref):
        if path == "":
            return [payloads.entry("README.md"), payloads.entry("src", "dir")]
        if path == "src":
            return [payloads.entry("src/app.py")]
        return []

    mock_client.get_contents.side_effect = contents
    mock_client.get_file.side_effect = lambda token, full_name, path, ref: payloads.file(
        path, b"line one\nline two\n"
    )
    mock_client.list_collaborators.return_value = [
        payloads.collaborator("alice", 1, admin=True),
        payloads.collaborator("carol", 3, push=True),
    ]
    return mock_client


# ---------------------------------------------------------------------------
# Full pass
# ---------------------------------------------------------------------------


def test_full_pass_populates_store(orchestrator, happy_client, store, stored_repository, github_token, clock):
    result = orchestrator.sync_repository(stored_repository.id, github_token)

    assert result.status == SyncStatus.COMPLETED
    assert not result.skipped
    assert [s.stage for s in result.stages] == list(RepositorySyncOrchestrator.STAGES)
    assert result.failed_stages == []

    repository = store.get_repository(stored_repository.id)
    assert repository.sync_status == SyncStatus.COMPLETED
    assert repository.last_sync_at == clock.now
    assert repository.languages == {"Python": 1200}

    branches = {b.name: b for b in store.list_branches(stored_repository.id)}
    assert branches["main"].is_default and branches["main"].protected
    assert not branches["feature"].is_default

    commits = {c.sha: c for c in store.list_commits(stored_repository.id)}
    assert set(commits) == {"c1", "c2"}
    assert commits["c1"].additions == 10

    files = {f.path: f for f in store.list_files(stored_repository.id, branch="main")}
    assert set(files) == {"README.md", "src", "src/app.py"}
    assert files["src/app.py"].language == "Python"
    assert files["src/app.py"].line_count == 2
    assert files["src"].content is None

    collaborators = {c.login: c for c in store.list_collaborators(stored_repository.id)}
    assert collaborators["alice"].permission == PermissionLevel.ADMIN
    assert collaborators["alice"].user_id == "user-1"
    assert collaborators["carol"].permission == PermissionLevel.WRITE
    assert collaborators["carol"].user_id is None


def test_known_commits_are_not_refetched(orchestrator, happy_client, stored_repository, github_token):
    orchestrator.sync_repository(stored_repository.id, github_token)
    happy_client.get_commit.reset_mock()

    result = orchestrator.sync_repository(stored_repository.id, github_token)

    happy_client.get_commit.assert_not_called()
    commits_stage = next(s for s in result.stages if s.stage == "commits")
    assert commits_stage.items == 0


def test_repeated_pass_leaves_identical_rows(orchestrator, happy_client, store, stored_repository, github_token):
    def snapshot():
        return (
            store.list_branches(stored_repository.id),
            store.list_commits(stored_repository.id),
            store.list_files(stored_repository.id),
            store.list_collaborators(stored_repository.id),
        )

    orchestrator.sync_repository(stored_repository.id, github_token)
    first = snapshot()

    result = orchestrator.sync_repository(stored_repository.id, github_token)

    assert result.status == SyncStatus.COMPLETED
    assert snapshot() == first
    assert [len(rows) for rows in first] == [2, 2, 3, 2]


def test_unknown_repository_raises(orchestrator, github_token):
    with pytest.raises(RepositoryNotFoundError):
        orchestrator.sync_repository(999, github_token)


# ---------------------------------------------------------------------------
# Stage isolation
# ---------------------------------------------------------------------------


def test_stage_failure_does_not_abort_pass(orchestrator, happy_client, store, stored_repository, github_token):
    happy_client.list_branches.side_effect = ProviderHTTPError("boom", status_code=500)

    result = orchestrator.sync_repository(stored_repository.id, github_token)

    assert result.status == SyncStatus.COMPLETED
    assert result.failed_stages == ["branches"]
    assert store.list_commits(stored_repository.id)
    assert store.get_repository(stored_repository.id).sync_status == SyncStatus.COMPLETED


def test_commit_stage_failure_keeps_earlier_stages(
    orchestrator, happy_client, store, stored_repository, github_token
):
    happy_client.list_commits.side_effect = ProviderHTTPError("boom", status_code=500)

    result = orchestrator.sync_repository(stored_repository.id, github_token)

    assert result.status == SyncStatus.COMPLETED
    assert result.failed_stages == ["commits"]
    assert {b.name for b in store.list_branches(stored_repository.id)} == {"main", "feature"}
    assert store.list_commits(stored_repository.id) == []
    assert store.get_repository(stored_repository.id).languages == {"Python": 1200}


def test_auth_error_fails_the_pass(orchestrator, happy_client, store, stored_repository, github_token):
    happy_client.list_branches.side_effect = AuthError("revoked", status_code=401)

    result = orchestrator.sync_repository(stored_repository.id, github_token)

    assert result.status == SyncStatus.FAILED
    assert [s.stage for s in result.stages] == ["metadata"]
    repository = store.get_repository(stored_repository.id)
    assert repository.sync_status == SyncStatus.FAILED
    assert "revoked" in repository.last_sync_error
    happy_client.list_commits.assert_not_called()


def test_subdirectory_errors_are_skipped(orchestrator, happy_client, payloads, store, stored_repository, github_token):
    def contents(token, full_name, path, ref):
        if path == "":
            return [payloads.entry("README.md"), payloads.entry("private", "dir")]
        raise NotFoundError("gone", status_code=404)

    happy_client.get_contents.side_effect = contents

    result = orchestrator.sync_repository(stored_repository.id, github_token)

    files_stage = next(s for s in result.stages if s.stage == "files")
    assert files_stage.succeeded
    assert files_stage.items == 2


def test_root_listing_error_fails_files_stage(orchestrator, happy_client, stored_repository, github_token):
    happy_client.get_contents.side_effect = NotFoundError("empty repository", status_code=404)

    result = orchestrator.sync_repository(stored_repository.id, github_token)

    assert result.failed_stages == ["files"]


def test_directory_depth_is_bounded(orchestrator, happy_client, payloads, stored_repository, github_token):
    def contents(token, full_name, path, ref):
        child = f"{path}/d" if path else "d"
        return [payloads.entry(child, "dir")]

    happy_client.get_contents.side_effect = contents

    orchestrator.sync_repository(stored_repository.id, github_token)

    listed = [c.args[2] for c in happy_client.get_contents.call_args_list]
    assert listed == ["", "d", "d/d"]


def test_large_files_are_not_inlined(orchestrator, happy_client, payloads, store, stored_repository, github_token):
    happy_client.get_contents.side_effect = lambda *a: [payloads.entry("big.bin", size=4096)]

    orchestrator.sync_repository(stored_repository.id, github_token)

    happy_client.get_file.assert_not_called()
    tracked = store.list_files(stored_repository.id)[0]
    assert tracked.content is None
    assert tracked.size == 4096


# ---------------------------------------------------------------------------
# Concurrency guard
# ---------------------------------------------------------------------------


def test_second_pass_is_skipped_while_first_runs(orchestrator, happy_client, stored_repository, github_token):
    entered = threading.Event()
    release = threading.Event()
    original = happy_client.get_languages.return_value

    def slow_languages(*args, **kwargs):
        entered.set()
        release.wait(timeout=5)
        return original

    happy_client.get_languages.side_effect = slow_languages
    results = []
    worker = threading.Thread(
        target=lambda: results.append(orchestrator.sync_repository(stored_repository.id, github_token))
    )
    worker.start()
    assert entered.wait(timeout=5)

    skipped = orchestrator.sync_repository(stored_repository.id, github_token)
    release.set()
    worker.join(timeout=5)

    assert skipped.skipped
    assert skipped.status is None
    assert results[0].status == SyncStatus.COMPLETED


def test_syncing_row_blocks_other_process(orchestrator, happy_client, store, stored_repository, github_token, clock):
    store.try_begin_sync(stored_repository.id, now=clock.now, abandoned_before=clock.now)

    result = orchestrator.sync_repository(stored_repository.id, github_token)

    assert result.skipped
    happy_client.get_repository.assert_not_called()


def test_abandoned_syncing_row_is_reclaimed(orchestrator, happy_client, store, stored_repository, github_token, clock):
    store.try_begin_sync(stored_repository.id, now=clock.now, abandoned_before=clock.now)
    clock.now = clock.now + timedelta(hours=2)

    result = orchestrator.sync_repository(stored_repository.id, github_token)

    assert not result.skipped
    assert result.status == SyncStatus.COMPLETED


# ---------------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------------


def test_commit_from_payload(payloads):
    commit = commit_from_payload(7, payloads.commit("abc", message="Fix bug", parents=("p1",)))
    assert commit.repository_id == 7
    assert commit.message == "Fix bug"
    assert commit.author_login == "alice"
    assert commit.total_changes == 12
    assert commit.parent_shas == ["p1"]
    assert commit.author_date.tzinfo is not None


def test_commit_from_list_payload_has_zero_stats(payloads):
    commit = commit_from_payload(7, payloads.commit("abc", with_stats=False))
    assert (commit.additions, commit.deletions, commit.total_changes) == (0, 0, 0)


@pytest.mark.parametrize(
    "permissions,expected",
    [
        ({"admin": True, "push": True}, PermissionLevel.ADMIN),
        ({"maintain": True, "push": True}, PermissionLevel.MAINTAIN),
        ({"push": True}, PermissionLevel.WRITE),
        ({"triage": True, "pull": True}, PermissionLevel.TRIAGE),
        ({"pull": True}, PermissionLevel.READ),
        ({}, PermissionLevel.READ),
    ],
)
def test_permission_level(payloads, permissions, expected):
    assert permission_level(payloads.collaborator("bob", 2, **permissions)) == expected


def test_decode_text_file(payloads):
    content, encoding, is_binary, lines = decode_file_content(payloads.file("a.txt", b"a\nb\nc"))
    assert content == "a\nb\nc"
    assert encoding == "utf-8"
    assert not is_binary
    assert lines == 3


def test_decode_binary_file(payloads):
    raw = bytes([0xFF, 0xFE, 0x00, 0x81])
    content, encoding, is_binary, lines = decode_file_content(payloads.file("logo.png", raw))
    assert base64.b64decode(content) == raw
    assert encoding == "base64"
    assert is_binary
    assert lines is None


def test_decode_without_content():
    entry = ContentEntryPayload(name="a", path="a", type="file")
    assert decode_file_content(entry) == (None, None, False, None)


def test_collaborator_links_by_username_fallback(orchestrator, happy_client, payloads, store, stored_repository, github_token):
    store.upsert_user(LocalUser(id="user-2", username="carol"))

    orchestrator.sync_repository(stored_repository.id, github_token)

    collaborators = {c.login: c for c in store.list_collaborators(stored_repository.id)}
    assert collaborators["carol"].user_id == "user-2"

"""SQLite-backed local store for mirrored GitHub state.

Every write is an upsert keyed by a stable natural identifier, so the
polling path and the webhook path can write concurrently and converge:

- users by id
- repositories by provider ``github_id``
- branches by ``(repository_id, name)``
- commits by ``(repository_id, sha)`` (insert-only)
- files by ``(repository_id, branch, path)``
- collaborators by ``(repository_id, github_id)``
- webhook subscriptions by ``repository_id``

Columns that are queried or compared live in real columns; descriptive
fields are kept in a JSON ``data`` column.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from .models import (
    Branch,
    Collaborator,
    Commit,
    LocalUser,
    RemoteRepository,
    SyncStatus,
    TrackedFile,
    WebhookStatus,
    WebhookSubscription,
)

M = TypeVar("M", bound=BaseModel)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL,
    github_username TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_users_github_username
    ON users(github_username COLLATE NOCASE);

CREATE TABLE IF NOT EXISTS repositories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    github_id INTEGER NOT NULL UNIQUE,
    full_name TEXT NOT NULL,
    name TEXT NOT NULL,
    owner_login TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    sync_status TEXT NOT NULL DEFAULT 'IDLE',
    sync_started_at TEXT,
    last_sync_at TEXT,
    last_sync_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_repositories_full_name ON repositories(full_name COLLATE NOCASE);
CREATE INDEX IF NOT EXISTS idx_repositories_owner ON repositories(owner_id);

CREATE TABLE IF NOT EXISTS branches (
    repository_id INTEGER NOT NULL REFERENCES repositories(id),
    name TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (repository_id, name)
);

CREATE TABLE IF NOT EXISTS commits (
    repository_id INTEGER NOT NULL REFERENCES repositories(id),
    sha TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (repository_id, sha)
);

CREATE TABLE IF NOT EXISTS files (
    repository_id INTEGER NOT NULL REFERENCES repositories(id),
    branch TEXT NOT NULL,
    path TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (repository_id, branch, path)
);

CREATE TABLE IF NOT EXISTS collaborators (
    repository_id INTEGER NOT NULL REFERENCES repositories(id),
    github_id INTEGER NOT NULL,
    login TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (repository_id, github_id)
);

CREATE TABLE IF NOT EXISTS webhook_subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repository_id INTEGER NOT NULL UNIQUE REFERENCES repositories(id),
    webhook_id TEXT NOT NULL,
    webhook_url TEXT NOT NULL,
    events TEXT NOT NULL,
    status TEXT NOT NULL,
    secret_hash TEXT,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    last_delivery_at TEXT,
    subscribed_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_webhook_subscriptions_webhook_id
    ON webhook_subscriptions(webhook_id);
"""

_REPOSITORY_COLUMNS = ("github_id", "full_name", "name", "owner_login", "owner_id")
_REPOSITORY_SYNC_FIELDS = (
    "id",
    "sync_status",
    "sync_started_at",
    "last_sync_at",
    "last_sync_error",
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so string comparison in SQL is chronological."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dump(record: BaseModel, exclude: Sequence[str]) -> str:
    return json.dumps(record.model_dump(mode="json", exclude=set(exclude)))


def _load(model: Type[M], row: sqlite3.Row, **columns: Any) -> M:
    payload: Dict[str, Any] = json.loads(row["data"])
    payload.update(columns)
    return model.model_validate(payload)


class MirrorStore:
    """SQLite-backed persistent store for the repository mirror."""

    def __init__(self, path: Path) -> None:
        self._path = path
        if str(path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator["MirrorStore"]:
        """Hold the store lock across several calls (read-modify-write)."""
        with self._lock:
            yield self

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._lock:
            with self._conn:
                return self._conn.execute(sql, params).rowcount

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def upsert_user(self, user: LocalUser) -> LocalUser:
        self._write(
            """
            INSERT INTO users(id, username, github_username, is_active, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                username = excluded.username,
                github_username = excluded.github_username,
                is_active = excluded.is_active
            """,
            (
                user.id,
                user.username,
                user.github_username,
                int(user.is_active),
                _ts(user.created_at),
            ),
        )
        return self.get_user(user.id)  # type: ignore[return-value]

    def get_user(self, user_id: str) -> Optional[LocalUser]:
        row = self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return LocalUser.model_validate(dict(row)) if row else None

    def find_user_by_github_username(self, login: str) -> Optional[LocalUser]:
        row = self._fetchone(
            "SELECT * FROM users WHERE github_username = ? COLLATE NOCASE ORDER BY created_at LIMIT 1",
            (login,),
        )
        return LocalUser.model_validate(dict(row)) if row else None

    def find_user_by_username(self, username: str) -> Optional[LocalUser]:
        row = self._fetchone(
            "SELECT * FROM users WHERE username = ? COLLATE NOCASE ORDER BY created_at LIMIT 1",
            (username,),
        )
        return LocalUser.model_validate(dict(row)) if row else None

    def list_users(self, *, active_only: bool = False) -> List[LocalUser]:
        sql = "SELECT * FROM users"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = self._fetchall(sql + " ORDER BY id")
        return [LocalUser.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    def upsert_repository(self, repository: RemoteRepository) -> RemoteRepository:
        """Insert or update by ``github_id``; sync columns and owner are untouched."""
        data = _dump(repository, _REPOSITORY_COLUMNS + _REPOSITORY_SYNC_FIELDS)
        self._write(
            """
            INSERT INTO repositories(github_id, full_name, name, owner_login, owner_id, data)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(github_id) DO UPDATE SET
                full_name = excluded.full_name,
                name = excluded.name,
                owner_login = excluded.owner_login,
                data = excluded.data
            """,
            (
                repository.github_id,
                repository.full_name,
                repository.name,
                repository.owner_login,
                repository.owner_id,
                data,
            ),
        )
        return self.get_repository_by_github_id(repository.github_id)  # type: ignore[return-value]

    def get_repository(self, repository_id: int) -> Optional[RemoteRepository]:
        row = self._fetchone("SELECT * FROM repositories WHERE id = ?", (repository_id,))
        return self._repository_from_row(row) if row else None

    def get_repository_by_github_id(self, github_id: int) -> Optional[RemoteRepository]:
        row = self._fetchone("SELECT * FROM repositories WHERE github_id = ?", (github_id,))
        return self._repository_from_row(row) if row else None

    def get_repository_by_full_name(self, full_name: str) -> Optional[RemoteRepository]:
        row = self._fetchone(
            "SELECT * FROM repositories WHERE full_name = ? COLLATE NOCASE ORDER BY id DESC LIMIT 1",
            (full_name,),
        )
        return self._repository_from_row(row) if row else None

    def list_repositories(self, *, owner_id: Optional[str] = None) -> List[RemoteRepository]:
        if owner_id is None:
            rows = self._fetchall("SELECT * FROM repositories ORDER BY id")
        else:
            rows = self._fetchall(
                "SELECT * FROM repositories WHERE owner_id = ? ORDER BY id", (owner_id,)
            )
        return [self._repository_from_row(row) for row in rows]

    def list_repositories_without_subscription(self) -> List[RemoteRepository]:
        rows = self._fetchall(
            """
            SELECT r.* FROM repositories r
            LEFT JOIN webhook_subscriptions w ON w.repository_id = r.id
            WHERE w.id IS NULL
            ORDER BY r.id
            """
        )
        return [self._repository_from_row(row) for row in rows]

    def try_begin_sync(
        self, repository_id: int, *, now: datetime, abandoned_before: datetime
    ) -> bool:
        """Atomically move a repository into SYNCING.

        Succeeds unless another pass holds the repository and started after
        ``abandoned_before``. Entering SYNCING clears the previous error.

        Returns:
            True if this caller now owns the pass
        """
        updated = self._write(
            """
            UPDATE repositories
            SET sync_status = ?, sync_started_at = ?, last_sync_error = NULL
            WHERE id = ?
              AND (sync_status != ? OR sync_started_at IS NULL OR sync_started_at < ?)
            """,
            (
                SyncStatus.SYNCING.value,
                _ts(now),
                repository_id,
                SyncStatus.SYNCING.value,
                _ts(abandoned_before),
            ),
        )
        return updated == 1

    def finish_sync(
        self,
        repository_id: int,
        status: SyncStatus,
        *,
        now: datetime,
        error: Optional[str] = None,
    ) -> None:
        if status == SyncStatus.COMPLETED:
            self._write(
                """
                UPDATE repositories
                SET sync_status = ?, sync_started_at = NULL, last_sync_at = ?, last_sync_error = NULL
                WHERE id = ?
                """,
                (status.value, _ts(now), repository_id),
            )
        else:
            self._write(
                """
                UPDATE repositories
                SET sync_status = ?, sync_started_at = NULL, last_sync_error = ?
                WHERE id = ?
                """,
                (status.value, error, repository_id),
            )

    def touch_last_sync(self, repository_id: int, now: datetime) -> None:
        self._write(
            "UPDATE repositories SET last_sync_at = ? WHERE id = ?",
            (_ts(now), repository_id),
        )

    def _repository_from_row(self, row: sqlite3.Row) -> RemoteRepository:
        return _load(
            RemoteRepository,
            row,
            id=row["id"],
            github_id=row["github_id"],
            full_name=row["full_name"],
            name=row["name"],
            owner_login=row["owner_login"],
            owner_id=row["owner_id"],
            sync_status=row["sync_status"],
            sync_started_at=row["sync_started_at"],
            last_sync_at=row["last_sync_at"],
            last_sync_error=row["last_sync_error"],
        )

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def upsert_branch(self, branch: Branch) -> None:
        self._write(
            """
            INSERT INTO branches(repository_id, name, data) VALUES (?, ?, ?)
            ON CONFLICT(repository_id, name) DO UPDATE SET data = excluded.data
            """,
            (branch.repository_id, branch.name, _dump(branch, ("repository_id", "name"))),
        )

    def list_branches(self, repository_id: int) -> List[Branch]:
        rows = self._fetchall(
            "SELECT * FROM branches WHERE repository_id = ? ORDER BY name", (repository_id,)
        )
        return [
            _load(Branch, row, repository_id=row["repository_id"], name=row["name"])
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def commit_exists(self, repository_id: int, sha: str) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM commits WHERE repository_id = ? AND sha = ?", (repository_id, sha)
        )
        return row is not None

    def insert_commit(self, commit: Commit) -> bool:
        """Store a commit once; later writes for the same SHA are ignored.

        Returns:
            True if the commit was new
        """
        inserted = self._write(
            "INSERT OR IGNORE INTO commits(repository_id, sha, data) VALUES (?, ?, ?)",
            (commit.repository_id, commit.sha, _dump(commit, ("repository_id", "sha"))),
        )
        return inserted == 1

    def list_commits(self, repository_id: int) -> List[Commit]:
        rows = self._fetchall(
            "SELECT * FROM commits WHERE repository_id = ? ORDER BY sha", (repository_id,)
        )
        return [
            _load(Commit, row, repository_id=row["repository_id"], sha=row["sha"])
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upsert_file(self, tracked: TrackedFile) -> None:
        self._write(
            """
            INSERT INTO files(repository_id, branch, path, data) VALUES (?, ?, ?, ?)
            ON CONFLICT(repository_id, branch, path) DO UPDATE SET data = excluded.data
            """,
            (
                tracked.repository_id,
                tracked.branch,
                tracked.path,
                _dump(tracked, ("repository_id", "branch", "path")),
            ),
        )

    def list_files(self, repository_id: int, *, branch: Optional[str] = None) -> List[TrackedFile]:
        if branch is None:
            rows = self._fetchall(
                "SELECT * FROM files WHERE repository_id = ? ORDER BY branch, path",
                (repository_id,),
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM files WHERE repository_id = ? AND branch = ? ORDER BY path",
                (repository_id, branch),
            )
        return [
            _load(
                TrackedFile,
                row,
                repository_id=row["repository_id"],
                branch=row["branch"],
                path=row["path"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def upsert_collaborator(self, collaborator: Collaborator) -> None:
        self._write(
            """
            INSERT INTO collaborators(repository_id, github_id, login, data) VALUES (?, ?, ?, ?)
            ON CONFLICT(repository_id, github_id) DO UPDATE SET
                login = excluded.login,
                data = excluded.data
            """,
            (
                collaborator.repository_id,
                collaborator.github_id,
                collaborator.login,
                _dump(collaborator, ("repository_id", "github_id", "login")),
            ),
        )

    def list_collaborators(self, repository_id: int) -> List[Collaborator]:
        rows = self._fetchall(
            "SELECT * FROM collaborators WHERE repository_id = ? ORDER BY login",
            (repository_id,),
        )
        return [
            _load(
                Collaborator,
                row,
                repository_id=row["repository_id"],
                github_id=row["github_id"],
                login=row["login"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Webhook subscriptions
    # ------------------------------------------------------------------

    def save_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        """Insert or update the single subscription of a repository."""
        self._write(
            """
            INSERT INTO webhook_subscriptions(
                repository_id, webhook_id, webhook_url, events, status, secret_hash,
                failure_count, last_error, last_delivery_at, subscribed_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(repository_id) DO UPDATE SET
                webhook_id = excluded.webhook_id,
                webhook_url = excluded.webhook_url,
                events = excluded.events,
                status = excluded.status,
                secret_hash = excluded.secret_hash,
                failure_count = excluded.failure_count,
                last_error = excluded.last_error,
                last_delivery_at = excluded.last_delivery_at,
                updated_at = excluded.updated_at
            """,
            (
                subscription.repository_id,
                subscription.webhook_id,
                subscription.webhook_url,
                json.dumps(subscription.events),
                subscription.status.value,
                subscription.secret_hash,
                subscription.failure_count,
                subscription.last_error,
                _ts(subscription.last_delivery_at),
                _ts(subscription.subscribed_at),
                _ts(subscription.updated_at),
            ),
        )
        return self.get_subscription(subscription.repository_id)  # type: ignore[return-value]

    def get_subscription(self, repository_id: int) -> Optional[WebhookSubscription]:
        row = self._fetchone(
            "SELECT * FROM webhook_subscriptions WHERE repository_id = ?", (repository_id,)
        )
        return self._subscription_from_row(row) if row else None

    def find_subscription_by_webhook_id(self, webhook_id: str) -> Optional[WebhookSubscription]:
        row = self._fetchone(
            "SELECT * FROM webhook_subscriptions WHERE webhook_id = ?", (webhook_id,)
        )
        return self._subscription_from_row(row) if row else None

    def list_subscriptions(
        self, *, status: Optional[WebhookStatus] = None
    ) -> List[WebhookSubscription]:
        if status is None:
            rows = self._fetchall("SELECT * FROM webhook_subscriptions ORDER BY repository_id")
        else:
            rows = self._fetchall(
                "SELECT * FROM webhook_subscriptions WHERE status = ? ORDER BY repository_id",
                (status.value,),
            )
        return [self._subscription_from_row(row) for row in rows]

    def subscription_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in WebhookStatus}
        for row in self._fetchall(
            "SELECT status, COUNT(*) AS n FROM webhook_subscriptions GROUP BY status"
        ):
            counts[row["status"]] = row["n"]
        return counts

    def _subscription_from_row(self, row: sqlite3.Row) -> WebhookSubscription:
        payload = dict(row)
        payload["events"] = json.loads(payload["events"])
        return WebhookSubscription.model_validate(payload)


__all__ = ["MirrorStore", "SCHEMA"]

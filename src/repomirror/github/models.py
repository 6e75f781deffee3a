"""Persisted records for the local GitHub mirror.

This module defines the records stored by :mod:`repomirror.github.store`.
Every record is keyed by a stable natural identifier (provider ID, full name,
commit SHA, or repository/branch/path) so repeated syncs converge through
upserts. All datetimes are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SyncStatus(str, Enum):
    """Sync state of a mirrored repository."""

    IDLE = "IDLE"
    SYNCING = "SYNCING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class WebhookStatus(str, Enum):
    """State of a provider webhook subscription."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    FAILED = "FAILED"


class PermissionLevel(str, Enum):
    """Collaborator permission, highest first."""

    ADMIN = "admin"
    MAINTAIN = "maintain"
    WRITE = "write"
    TRIAGE = "triage"
    READ = "read"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class LocalUser(BaseModel):
    """Minimal mirror of a platform user who owns mirrored repositories."""

    id: str = Field(..., min_length=1, description="Platform user identifier")
    username: str = Field(..., description="Platform username or email")
    github_username: Optional[str] = Field(default=None, description="GitHub login")
    is_active: bool = Field(default=True, description="Whether scheduled sweeps include the user")
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return _ensure_utc(value)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RemoteRepository(BaseModel):
    """Local mirror of a provider repository and its sync metadata."""

    id: Optional[int] = Field(default=None, description="Local row identifier")
    github_id: int = Field(..., description="Provider numeric repository ID")
    full_name: str = Field(..., description="owner/name")
    name: str = Field(..., description="Repository name")
    owner_login: str = Field(..., description="Provider login of the repository owner")
    owner_id: str = Field(..., description="Local user whose token discovered the repository")

    description: Optional[str] = None
    is_private: bool = False
    visibility: Optional[str] = None
    default_branch: Optional[str] = None
    html_url: Optional[str] = None
    clone_url: Optional[str] = None
    language: Optional[str] = None

    stargazers_count: int = 0
    forks_count: int = 0
    watchers_count: int = 0
    open_issues_count: int = 0
    size: int = Field(default=0, description="Repository size in KB")

    archived: bool = False
    disabled: bool = False
    fork: bool = False
    has_issues: bool = False
    has_projects: bool = False
    has_wiki: bool = False
    has_pages: bool = False
    has_downloads: bool = False
    license_name: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    languages: Dict[str, int] = Field(default_factory=dict, description="Language to byte count")

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None

    sync_status: SyncStatus = SyncStatus.IDLE
    sync_started_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None

    @field_validator(
        "created_at", "updated_at", "pushed_at", "sync_started_at", "last_sync_at"
    )
    @classmethod
    def _ensure_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    @property
    def owner(self) -> str:
        return self.full_name.split("/")[0]

    @property
    def repo_name(self) -> str:
        return self.full_name.split("/", 1)[-1]


class SyncStatusView(BaseModel):
    """Sync status as exposed to calling modules."""

    repository_id: int
    full_name: str
    status: SyncStatus
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None


# ---------------------------------------------------------------------------
# Repository content
# ---------------------------------------------------------------------------


class Branch(BaseModel):
    """Branch head, keyed by (repository_id, name)."""

    repository_id: int
    name: str
    sha: str
    protected: bool = False
    is_default: bool = False
    last_commit_message: Optional[str] = None
    last_commit_author: Optional[str] = None
    last_commit_date: Optional[datetime] = None

    @field_validator("last_commit_date")
    @classmethod
    def _ensure_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)


class Commit(BaseModel):
    """Immutable commit, keyed by (repository_id, sha)."""

    repository_id: int
    sha: str
    message: str = ""
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    author_login: Optional[str] = None
    author_date: Optional[datetime] = None
    committer_name: Optional[str] = None
    committer_email: Optional[str] = None
    committer_date: Optional[datetime] = None
    additions: int = 0
    deletions: int = 0
    total_changes: int = 0
    parent_shas: List[str] = Field(default_factory=list)
    html_url: Optional[str] = None

    @field_validator("author_date", "committer_date")
    @classmethod
    def _ensure_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)


class TrackedFile(BaseModel):
    """File or directory entry, keyed by (repository_id, branch, path)."""

    repository_id: int
    branch: str
    path: str
    name: str
    type: str = Field(..., description="file or dir")
    sha: Optional[str] = None
    size: int = 0
    extension: Optional[str] = None
    language: Optional[str] = None
    content: Optional[str] = None
    encoding: Optional[str] = None
    is_binary: bool = False
    line_count: Optional[int] = None
    download_url: Optional[str] = None
    html_url: Optional[str] = None


class Collaborator(BaseModel):
    """Repository collaborator, keyed by (repository_id, github_id)."""

    repository_id: int
    github_id: int
    login: str
    avatar_url: Optional[str] = None
    html_url: Optional[str] = None
    permission: PermissionLevel = PermissionLevel.READ
    user_id: Optional[str] = Field(default=None, description="Linked local user")


# ---------------------------------------------------------------------------
# Webhook subscription
# ---------------------------------------------------------------------------


PLACEHOLDER_PREFIXES = ("LOCALHOST", "INVALID", "NOACCESS", "ERROR", "FAILED")


class WebhookSubscription(BaseModel):
    """Provider webhook for one repository, never physically deleted."""

    id: Optional[int] = None
    repository_id: int
    webhook_id: str = Field(..., description="Provider hook ID or placeholder")
    webhook_url: str
    events: List[str] = Field(default_factory=list)
    status: WebhookStatus = WebhookStatus.ACTIVE
    secret_hash: Optional[str] = None
    failure_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    last_delivery_at: Optional[datetime] = None
    subscribed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("last_delivery_at", "subscribed_at", "updated_at")
    @classmethod
    def _ensure_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    @property
    def is_placeholder(self) -> bool:
        """Whether the ID was synthesized locally rather than issued by GitHub."""
        prefix, _, suffix = self.webhook_id.partition("-")
        return prefix in PLACEHOLDER_PREFIXES and suffix.isdigit()


__all__ = [
    "Branch",
    "Collaborator",
    "Commit",
    "LocalUser",
    "PLACEHOLDER_PREFIXES",
    "PermissionLevel",
    "RemoteRepository",
    "SyncStatus",
    "SyncStatusView",
    "TrackedFile",
    "WebhookStatus",
    "WebhookSubscription",
    "utcnow",
]

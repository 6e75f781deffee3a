"""Typed response schemas for the GitHub REST endpoints the mirror uses.

Each endpoint response is decoded once at the client boundary into one of
these models, so business logic never walks raw JSON. Fields the mirror does
not use are ignored.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Users and repositories
# ---------------------------------------------------------------------------


class UserPayload(_Payload):
    """``GET /user``."""

    id: int
    login: str
    name: Optional[str] = None
    email: Optional[str] = None


class OwnerPayload(_Payload):
    id: Optional[int] = None
    login: str


class LicensePayload(_Payload):
    key: Optional[str] = None
    name: Optional[str] = None


class PermissionsPayload(_Payload):
    """Permission booleans attached to repository and collaborator payloads."""

    admin: bool = False
    maintain: bool = False
    push: bool = False
    triage: bool = False
    pull: bool = False


class RepositoryPayload(_Payload):
    """``GET /repos/{owner}/{repo}`` and items of ``GET /user/repos``."""

    id: int
    name: str
    full_name: str
    owner: OwnerPayload
    description: Optional[str] = None
    private: bool = False
    visibility: Optional[str] = None
    default_branch: Optional[str] = None
    html_url: Optional[str] = None
    clone_url: Optional[str] = None
    language: Optional[str] = None
    stargazers_count: int = 0
    forks_count: int = 0
    watchers_count: int = 0
    open_issues_count: int = 0
    size: int = 0
    archived: bool = False
    disabled: bool = False
    fork: bool = False
    has_issues: bool = False
    has_projects: bool = False
    has_wiki: bool = False
    has_pages: bool = False
    has_downloads: bool = False
    license: Optional[LicensePayload] = None
    topics: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None
    permissions: Optional[PermissionsPayload] = None


# ---------------------------------------------------------------------------
# Commits and branches
# ---------------------------------------------------------------------------


class GitActorPayload(_Payload):
    name: Optional[str] = None
    email: Optional[str] = None
    date: Optional[datetime] = None


class GitCommitPayload(_Payload):
    message: str = ""
    author: Optional[GitActorPayload] = None
    committer: Optional[GitActorPayload] = None


class AccountPayload(_Payload):
    login: str
    id: Optional[int] = None


class CommitStatsPayload(_Payload):
    additions: int = 0
    deletions: int = 0
    total: int = 0


class ParentPayload(_Payload):
    sha: str


class CommitPayload(_Payload):
    """``GET /repos/{full}/commits`` items and ``GET .../commits/{sha}``.

    ``stats`` is only present on the single-commit endpoint.
    """

    sha: str
    commit: GitCommitPayload = Field(default_factory=GitCommitPayload)
    author: Optional[AccountPayload] = None
    committer: Optional[AccountPayload] = None
    stats: Optional[CommitStatsPayload] = None
    parents: List[ParentPayload] = Field(default_factory=list)
    html_url: Optional[str] = None


class BranchCommitPayload(_Payload):
    sha: str
    commit: Optional[GitCommitPayload] = None


class BranchPayload(_Payload):
    """``GET /repos/{full}/branches`` items."""

    name: str
    commit: BranchCommitPayload
    protected: bool = False


# ---------------------------------------------------------------------------
# Contents
# ---------------------------------------------------------------------------


class ContentEntryPayload(_Payload):
    """``GET /repos/{full}/contents/{path}`` entry (list item or single file).

    ``content`` and ``encoding`` are only present on single-file responses.
    """

    name: str
    path: str
    type: str
    sha: Optional[str] = None
    size: int = 0
    download_url: Optional[str] = None
    html_url: Optional[str] = None
    content: Optional[str] = None
    encoding: Optional[str] = None


# ---------------------------------------------------------------------------
# Collaborators, hooks, refs
# ---------------------------------------------------------------------------


class CollaboratorPayload(_Payload):
    """``GET /repos/{full}/collaborators`` items."""

    id: int
    login: str
    avatar_url: Optional[str] = None
    html_url: Optional[str] = None
    permissions: PermissionsPayload = Field(default_factory=PermissionsPayload)
    role_name: Optional[str] = None


class HookPayload(_Payload):
    """``POST /repos/{full}/hooks`` response."""

    id: int
    active: bool = True
    events: List[str] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)


class RefObjectPayload(_Payload):
    sha: str
    type: Optional[str] = None


class RefPayload(_Payload):
    """``GET /repos/{full}/git/refs/tags/{tag}``."""

    ref: str
    object: RefObjectPayload


__all__ = [
    "AccountPayload",
    "BranchCommitPayload",
    "BranchPayload",
    "CollaboratorPayload",
    "CommitPayload",
    "CommitStatsPayload",
    "ContentEntryPayload",
    "GitActorPayload",
    "GitCommitPayload",
    "HookPayload",
    "LicensePayload",
    "OwnerPayload",
    "ParentPayload",
    "PermissionsPayload",
    "RefObjectPayload",
    "RefPayload",
    "RepositoryPayload",
    "UserPayload",
]

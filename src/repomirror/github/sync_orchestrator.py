"""Full synchronization pass for one mirrored repository.

A pass runs five stages in a fixed order (metadata, branches, commits,
files, collaborators). Each stage is isolated: a failure is logged and the
pass moves on, except for authentication failures, which end the pass
because every later stage would fail the same way.

Only one pass may run per repository at a time. The guard is a status
compare-and-set in the store plus an in-process lock, so a second caller
gets a skipped result instead of a duplicate pass.
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from repomirror.errors import AuthError, ProviderError, RepositoryNotFoundError

from .api_client import GitHubAPIClient
from .discovery import repository_from_payload
from .language_detector import detect_language, file_extension
from .models import (
    Branch,
    Collaborator,
    Commit,
    PermissionLevel,
    RemoteRepository,
    SyncStatus,
    TrackedFile,
    utcnow,
)
from .payloads import CollaboratorPayload, CommitPayload, ContentEntryPayload
from .retry import RetryPolicy, call_with_retry
from .store import MirrorStore

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_REF = "main"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class StageOutcome:
    """Result of one stage within a pass."""

    stage: str
    succeeded: bool
    items: int = 0
    error: Optional[str] = None


@dataclass
class SyncPassResult:
    """Result of one full pass."""

    repository_id: int
    full_name: Optional[str] = None
    status: Optional[SyncStatus] = None
    skipped: bool = False
    stages: List[StageOutcome] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def failed_stages(self) -> List[str]:
        return [outcome.stage for outcome in self.stages if not outcome.succeeded]

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class _PassContext:
    repository: RemoteRepository
    token: str

    @property
    def full_name(self) -> str:
        return self.repository.full_name


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------


def commit_from_payload(repository_id: int, payload: CommitPayload) -> Commit:
    """Map a provider commit (ideally the single-commit response) to a record."""
    git = payload.commit
    author = git.author
    committer = git.committer
    stats = payload.stats
    return Commit(
        repository_id=repository_id,
        sha=payload.sha,
        message=git.message,
        author_name=author.name if author else None,
        author_email=author.email if author else None,
        author_login=payload.author.login if payload.author else None,
        author_date=author.date if author else None,
        committer_name=committer.name if committer else None,
        committer_email=committer.email if committer else None,
        committer_date=committer.date if committer else None,
        additions=stats.additions if stats else 0,
        deletions=stats.deletions if stats else 0,
        total_changes=stats.total if stats else 0,
        parent_shas=[parent.sha for parent in payload.parents],
        html_url=payload.html_url,
    )


def permission_level(payload: CollaboratorPayload) -> PermissionLevel:
    """Highest permission granted, admin > maintain > push > triage > read."""
    permissions = payload.permissions
    if permissions.admin:
        return PermissionLevel.ADMIN
    if permissions.maintain:
        return PermissionLevel.MAINTAIN
    if permissions.push:
        return PermissionLevel.WRITE
    if permissions.triage:
        return PermissionLevel.TRIAGE
    return PermissionLevel.READ


def decode_file_content(entry: ContentEntryPayload) -> Tuple[Optional[str], Optional[str], bool, Optional[int]]:
    """Decode a single-file response.

    Returns:
        ``(content, encoding, is_binary, line_count)``. Text is stored decoded
        as UTF-8; binary content keeps its base64 form.
    """
    if entry.content is None:
        return None, None, False, None
    if entry.encoding != "base64":
        return entry.content, entry.encoding, False, len(entry.content.splitlines())

    raw_b64 = "".join(entry.content.split())
    try:
        raw = base64.b64decode(raw_b64)
    except (binascii.Error, ValueError):
        return raw_b64, "base64", True, None
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw_b64, "base64", True, None
    return text, "utf-8", False, len(text.splitlines())


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RepositorySyncOrchestrator:
    """Runs guarded, staged sync passes for mirrored repositories."""

    STAGES = ("metadata", "branches", "commits", "files", "collaborators")

    def __init__(
        self,
        client: GitHubAPIClient,
        store: MirrorStore,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        max_directory_depth: int = 5,
        max_inline_file_size: int = 1024 * 1024,
        commit_page_size: int = 100,
        sync_lock_timeout: timedelta = timedelta(minutes=60),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.store = store
        self.retry_policy = retry_policy
        self.max_directory_depth = max_directory_depth
        self.max_inline_file_size = max_inline_file_size
        self.commit_page_size = commit_page_size
        self.sync_lock_timeout = sync_lock_timeout
        self._clock = clock
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def sync_repository(self, repository_id: int, token: str) -> SyncPassResult:
        """Run one full pass.

        Args:
            repository_id: Local repository ID
            token: Access token of the repository owner

        Returns:
            SyncPassResult; ``skipped`` is True when another pass holds the
            repository

        Raises:
            RepositoryNotFoundError: Unknown repository ID
        """
        repository = self.store.get_repository(repository_id)
        if repository is None:
            raise RepositoryNotFoundError(f"Repository {repository_id} not found")

        lock = self._lock_for(repository_id)
        if not lock.acquire(blocking=False):
            return self._skipped(repository)
        try:
            now = self._clock()
            if not self.store.try_begin_sync(
                repository_id, now=now, abandoned_before=now - self.sync_lock_timeout
            ):
                return self._skipped(repository)
            return self._run_pass(_PassContext(repository=repository, token=token), now)
        finally:
            lock.release()

    def _run_pass(self, context: _PassContext, started_at: datetime) -> SyncPassResult:
        repository_id = context.repository.id
        result = SyncPassResult(
            repository_id=repository_id,
            full_name=context.full_name,
            started_at=started_at,
        )
        logger.info(
            f"Starting sync for {context.full_name}",
            extra={"repository": context.full_name, "repository_id": repository_id},
        )

        stages: List[Tuple[str, Callable[[_PassContext], int]]] = [
            ("metadata", self._sync_metadata),
            ("branches", self._sync_branches),
            ("commits", self._sync_commits),
            ("files", self._sync_files),
            ("collaborators", self._sync_collaborators),
        ]
        try:
            for name, stage in stages:
                result.stages.append(self._run_stage(name, stage, context))
        except Exception as exc:
            result.error = str(exc) or exc.__class__.__name__
            result.status = SyncStatus.FAILED
            result.completed_at = self._clock()
            self.store.finish_sync(
                repository_id, SyncStatus.FAILED, now=result.completed_at, error=result.error
            )
            logger.error(
                f"Sync failed for {context.full_name}: {result.error}",
                extra={"repository": context.full_name, "repository_id": repository_id},
            )
            return result

        result.status = SyncStatus.COMPLETED
        result.completed_at = self._clock()
        self.store.finish_sync(repository_id, SyncStatus.COMPLETED, now=result.completed_at)
        logger.info(
            f"Sync completed for {context.full_name}",
            extra={
                "repository": context.full_name,
                "repository_id": repository_id,
                "failed_stages": result.failed_stages,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    def _run_stage(
        self,
        name: str,
        stage: Callable[[_PassContext], int],
        context: _PassContext,
    ) -> StageOutcome:
        try:
            items = stage(context)
        except AuthError:
            raise
        except Exception as exc:
            logger.error(
                f"Stage '{name}' failed for {context.full_name}: {exc}",
                extra={"repository": context.full_name, "stage": name},
                exc_info=True,
            )
            return StageOutcome(stage=name, succeeded=False, error=str(exc))
        logger.debug(
            f"Stage '{name}' synced {items} items for {context.full_name}",
            extra={"repository": context.full_name, "stage": name, "items": items},
        )
        return StageOutcome(stage=name, succeeded=True, items=items)

    # -- stages --------------------------------------------------------------

    def _sync_metadata(self, context: _PassContext) -> int:
        payload = self._call(self.client.get_repository, context.token, context.full_name)
        languages = self._call(self.client.get_languages, context.token, context.full_name)
        record = repository_from_payload(payload, owner_id=context.repository.owner_id)
        record = record.model_copy(update={"languages": languages})
        context.repository = self.store.upsert_repository(record)
        return 1

    def _sync_branches(self, context: _PassContext) -> int:
        default_branch = context.repository.default_branch
        branches = self._call(self.client.list_branches, context.token, context.full_name)
        for payload in branches:
            head = payload.commit.commit
            author = head.author if head else None
            self.store.upsert_branch(
                Branch(
                    repository_id=context.repository.id,
                    name=payload.name,
                    sha=payload.commit.sha,
                    protected=payload.protected,
                    is_default=payload.name == default_branch,
                    last_commit_message=head.message if head else None,
                    last_commit_author=author.name if author else None,
                    last_commit_date=author.date if author else None,
                )
            )
        return len(branches)

    def _sync_commits(self, context: _PassContext) -> int:
        repository_id = context.repository.id
        listed = self._call(
            self.client.list_commits,
            context.token,
            context.full_name,
            sha=context.repository.default_branch,
            per_page=self.commit_page_size,
        )
        stored = 0
        for summary in listed:
            if self.store.commit_exists(repository_id, summary.sha):
                continue
            detail = self._call(
                self.client.get_commit, context.token, context.full_name, summary.sha
            )
            if self.store.insert_commit(commit_from_payload(repository_id, detail)):
                stored += 1
        return stored

    def _sync_files(self, context: _PassContext) -> int:
        ref = context.repository.default_branch or DEFAULT_CONTENT_REF
        return self._sync_directory(context, ref, "", 0)

    def _sync_directory(self, context: _PassContext, ref: str, path: str, depth: int) -> int:
        if depth > self.max_directory_depth:
            return 0
        try:
            entries = self._call(
                self.client.get_contents, context.token, context.full_name, path, ref
            )
        except AuthError:
            raise
        except ProviderError as exc:
            if depth == 0:
                raise
            logger.debug(
                f"Could not list {path} in {context.full_name}: {exc}",
                extra={"repository": context.full_name, "stage": "files", "path": path},
            )
            return 0

        count = 0
        for entry in entries:
            self.store.upsert_file(self._tracked_file(context, ref, entry))
            count += 1
            if entry.type == "dir":
                count += self._sync_directory(context, ref, entry.path, depth + 1)
        return count

    def _tracked_file(self, context: _PassContext, ref: str, entry: ContentEntryPayload) -> TrackedFile:
        content: Optional[str] = None
        encoding: Optional[str] = None
        is_binary = False
        line_count: Optional[int] = None

        if entry.type == "file" and entry.size < self.max_inline_file_size:
            try:
                single = self._call(
                    self.client.get_file, context.token, context.full_name, entry.path, ref
                )
            except AuthError:
                raise
            except ProviderError as exc:
                logger.debug(
                    f"Could not fetch content of {entry.path}: {exc}",
                    extra={"repository": context.full_name, "stage": "files", "path": entry.path},
                )
            else:
                content, encoding, is_binary, line_count = decode_file_content(single)

        return TrackedFile(
            repository_id=context.repository.id,
            branch=ref,
            path=entry.path,
            name=entry.name,
            type=entry.type,
            sha=entry.sha,
            size=entry.size,
            extension=file_extension(entry.name),
            language=detect_language(entry.name) if entry.type == "file" else None,
            content=content,
            encoding=encoding,
            is_binary=is_binary,
            line_count=line_count,
            download_url=entry.download_url,
            html_url=entry.html_url,
        )

    def _sync_collaborators(self, context: _PassContext) -> int:
        collaborators = self._call(
            self.client.list_collaborators, context.token, context.full_name
        )
        for payload in collaborators:
            linked = self.store.find_user_by_github_username(payload.login)
            if linked is None:
                linked = self.store.find_user_by_username(payload.login)
            self.store.upsert_collaborator(
                Collaborator(
                    repository_id=context.repository.id,
                    github_id=payload.id,
                    login=payload.login,
                    avatar_url=payload.avatar_url,
                    html_url=payload.html_url,
                    permission=permission_level(payload),
                    user_id=linked.id if linked else None,
                )
            )
        return len(collaborators)

    # -- helpers -------------------------------------------------------------

    def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return call_with_retry(func, *args, policy=self.retry_policy, **kwargs)

    def _lock_for(self, repository_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(repository_id)
            if lock is None:
                lock = self._locks[repository_id] = threading.Lock()
            return lock

    def _skipped(self, repository: RemoteRepository) -> SyncPassResult:
        logger.info(
            f"Sync already in progress for {repository.full_name}, skipping",
            extra={"repository": repository.full_name, "repository_id": repository.id},
        )
        return SyncPassResult(
            repository_id=repository.id,
            full_name=repository.full_name,
            skipped=True,
        )


__all__ = [
    "RepositorySyncOrchestrator",
    "StageOutcome",
    "SyncPassResult",
    "commit_from_payload",
    "decode_file_content",
    "permission_level",
]

"""Event-driven incremental sync for webhook deliveries.

Webhook events carry just enough information to fetch the few objects that
changed, so they are applied directly instead of triggering a full pass.
Push, create, and delete events are always applied; other events are
skipped when the repository was synced within the freshness window.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .api_client import GitHubAPIClient
from .credentials import GitHubTokenStore
from .models import RemoteRepository, utcnow
from .retry import RetryPolicy, call_with_retry
from .store import MirrorStore
from .sync_orchestrator import commit_from_payload
from .webhook.models import CRITICAL_EVENT_TYPES, WebhookEventType

logger = logging.getLogger(__name__)


class IncrementalSyncService:
    """Applies single webhook events to the local mirror."""

    def __init__(
        self,
        client: GitHubAPIClient,
        store: MirrorStore,
        token_store: GitHubTokenStore,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        event_freshness: timedelta = timedelta(minutes=5),
        event_commit_page_size: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.store = store
        self.token_store = token_store
        self.retry_policy = retry_policy
        self.event_freshness = event_freshness
        self.event_commit_page_size = event_commit_page_size
        self._clock = clock

    def handle_event(
        self,
        repository_full_name: Optional[str],
        event_type: str,
        payload: Dict[str, Any],
    ) -> bool:
        """Apply one event.

        Args:
            repository_full_name: ``owner/name`` from the payload
            event_type: Value of the X-GitHub-Event header
            payload: Decoded event payload

        Returns:
            True if the event was applied, False if it was ignored

        Raises:
            ProviderError: A provider call failed after retries
        """
        if not repository_full_name:
            logger.debug(f"Event '{event_type}' carries no repository, ignoring")
            return False

        repository = self.store.get_repository_by_full_name(repository_full_name)
        if repository is None:
            logger.warning(
                f"Repository {repository_full_name} not found in local mirror, ignoring '{event_type}'",
                extra={"repository": repository_full_name, "event_type": event_type},
            )
            return False

        token = self.token_store.get_token(repository.owner_id)
        if not token:
            logger.warning(
                f"No GitHub token for owner of {repository_full_name}, ignoring '{event_type}'",
                extra={"repository": repository_full_name, "user_id": repository.owner_id},
            )
            return False

        now = self._clock()
        if not self._should_process(repository, event_type, now):
            logger.info(
                f"Repository {repository_full_name} synced recently, skipping '{event_type}'",
                extra={"repository": repository_full_name, "event_type": event_type},
            )
            return False

        if event_type == WebhookEventType.PUSH.value:
            stored = self._apply_push(repository, token, payload)
        elif event_type == WebhookEventType.CREATE.value:
            stored = self._apply_create(repository, token, payload)
        elif event_type == WebhookEventType.DELETE.value:
            logger.info(
                f"{payload.get('ref_type')} '{payload.get('ref')}' deleted in {repository_full_name}",
                extra={"repository": repository_full_name, "event_type": event_type},
            )
            stored = 0
        elif event_type == WebhookEventType.RELEASE.value:
            stored = self._apply_release(repository, token, payload)
        else:
            logger.debug(
                f"No sync action for '{event_type}' on {repository_full_name}",
                extra={"repository": repository_full_name, "event_type": event_type},
            )
            stored = 0

        self.store.touch_last_sync(repository.id, self._clock())
        logger.info(
            f"Applied '{event_type}' to {repository_full_name} ({stored} new commits)",
            extra={"repository": repository_full_name, "event_type": event_type, "commits": stored},
        )
        return True

    def _should_process(self, repository: RemoteRepository, event_type: str, now: datetime) -> bool:
        if event_type in CRITICAL_EVENT_TYPES:
            return True
        if repository.last_sync_at is None:
            return True
        return repository.last_sync_at <= now - self.event_freshness

    # -- event handlers ------------------------------------------------------

    def _apply_push(self, repository: RemoteRepository, token: str, payload: Dict[str, Any]) -> int:
        stored = 0
        for entry in payload.get("commits") or []:
            sha = entry.get("id") if isinstance(entry, dict) else None
            if not sha or self.store.commit_exists(repository.id, sha):
                continue
            detail = self._call(self.client.get_commit, token, repository.full_name, sha)
            if self.store.insert_commit(commit_from_payload(repository.id, detail)):
                stored += 1
        return stored

    def _apply_create(self, repository: RemoteRepository, token: str, payload: Dict[str, Any]) -> int:
        ref_type = payload.get("ref_type")
        ref = payload.get("ref")
        logger.info(
            f"{ref_type} '{ref}' created in {repository.full_name}",
            extra={"repository": repository.full_name},
        )
        if ref_type != "branch" or not ref:
            return 0

        recent = self._call(
            self.client.list_commits,
            token,
            repository.full_name,
            sha=ref,
            per_page=self.event_commit_page_size,
        )
        stored = 0
        for summary in recent:
            if self.store.commit_exists(repository.id, summary.sha):
                continue
            if self.store.insert_commit(commit_from_payload(repository.id, summary)):
                stored += 1
        return stored

    def _apply_release(self, repository: RemoteRepository, token: str, payload: Dict[str, Any]) -> int:
        release = payload.get("release") or {}
        tag_name = release.get("tag_name")
        if payload.get("action") != "published" or not tag_name:
            return 0

        tag_ref = self._call(self.client.get_tag_ref, token, repository.full_name, tag_name)
        if tag_ref.object.type == "tag":
            # annotated tag: the ref points at a tag object, let the API peel it
            detail = self._call(self.client.get_commit, token, repository.full_name, tag_name)
            if self.store.commit_exists(repository.id, detail.sha):
                return 0
        else:
            if self.store.commit_exists(repository.id, tag_ref.object.sha):
                return 0
            detail = self._call(
                self.client.get_commit, token, repository.full_name, tag_ref.object.sha
            )
        return 1 if self.store.insert_commit(commit_from_payload(repository.id, detail)) else 0

    def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return call_with_retry(func, *args, policy=self.retry_policy, **kwargs)


__all__ = ["IncrementalSyncService"]

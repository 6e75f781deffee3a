"""Requester-facing facade over the repository mirror.

Calling modules use :class:`RepositoryMirrorService` and never touch the
provider client, store, or schedulers directly. The service wires
discovery, staleness decisions, sync passes, and webhook management
together.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from repomirror.configuration.settings import SecretStore, Settings
from repomirror.errors import (
    AuthError,
    RepoMirrorError,
    RepositoryNotFoundError,
    SyncInProgressError,
    UserNotFoundError,
)

from .api_client import GitHubAPIClient, create_api_client
from .credentials import GitHubTokenStore
from .discovery import RepositoryDiscovery, repository_from_payload
from .incremental_sync import IncrementalSyncService
from .models import (
    LocalUser,
    RemoteRepository,
    SyncStatus,
    SyncStatusView,
    WebhookStatus,
    WebhookSubscription,
    utcnow,
)
from .staleness import StalenessPolicy, SweepStats
from .store import MirrorStore
from .sync_orchestrator import RepositorySyncOrchestrator, SyncPassResult
from .sync_queue import BackgroundSyncQueue, SyncRequest
from .webhook.subscription_manager import WebhookSubscriptionManager

logger = logging.getLogger(__name__)


class RepositoryMirrorService:
    """Entry point for discovery, sync status, and webhook management."""

    def __init__(
        self,
        settings: Settings,
        store: MirrorStore,
        client: GitHubAPIClient,
        token_store: GitHubTokenStore,
        *,
        auto_subscribe_webhooks: bool = True,
        sync_inline: bool = False,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.store = store
        self.client = client
        self.token_store = token_store
        self.auto_subscribe_webhooks = auto_subscribe_webhooks
        self.sync_inline = sync_inline
        self._clock = clock
        self._sleep = sleep

        retry_policy = settings.provider.retry
        sync = settings.sync
        self.staleness = StalenessPolicy.from_hours(sync.staleness_window_hours)
        self.discovery = RepositoryDiscovery(client=client, store=store, retry_policy=retry_policy)
        self.orchestrator = RepositorySyncOrchestrator(
            client,
            store,
            retry_policy=retry_policy,
            max_directory_depth=sync.max_directory_depth,
            max_inline_file_size=sync.max_inline_file_size,
            commit_page_size=sync.commit_page_size,
            sync_lock_timeout=timedelta(minutes=sync.sync_lock_timeout_minutes),
            clock=clock,
        )
        self.subscriptions = WebhookSubscriptionManager(
            client,
            store,
            settings.webhook,
            retry_policy=retry_policy,
            clock=clock,
        )
        self.incremental_sync = IncrementalSyncService(
            client,
            store,
            token_store,
            retry_policy=retry_policy,
            event_freshness=timedelta(minutes=sync.event_freshness_minutes),
            event_commit_page_size=sync.event_commit_page_size,
            clock=clock,
        )
        self.sync_queue: Optional[BackgroundSyncQueue] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    def create_sync_queue(self) -> BackgroundSyncQueue:
        """Create the background queue; discovery submits to it once started."""
        self.sync_queue = BackgroundSyncQueue(
            self.orchestrator,
            worker_count=self.settings.sync.worker_count,
            inter_repository_delay=self.settings.sync.inter_repository_delay_seconds,
            on_complete=self._after_sync,
        )
        return self.sync_queue

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(
        self,
        user_id: str,
        username: str,
        *,
        github_username: Optional[str] = None,
        token: Optional[str] = None,
        is_active: bool = True,
    ) -> LocalUser:
        existing = self.store.get_user(user_id)
        user = LocalUser(
            id=user_id,
            username=username,
            github_username=github_username,
            is_active=is_active,
            created_at=existing.created_at if existing else self._clock(),
        )
        if token:
            self.token_store.store_token(user_id, token)
        return self.store.upsert_user(user)

    def list_users(self) -> List[LocalUser]:
        return self.store.list_users()

    def _require_user(self, user_id: str) -> LocalUser:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def _require_repository(self, repository_id: int) -> RemoteRepository:
        repository = self.store.get_repository(repository_id)
        if repository is None:
            raise RepositoryNotFoundError(f"Repository {repository_id} not found")
        return repository

    # ------------------------------------------------------------------
    # Discovery and sync
    # ------------------------------------------------------------------

    def discover_and_sync_repositories(
        self, user_id: str, force_refresh: bool = False
    ) -> List[RemoteRepository]:
        """Return the user's repositories, fetching from GitHub when stale.

        Args:
            user_id: Local user ID
            force_refresh: Bypass the staleness check

        Returns:
            Repository records; the cached set when the data is fresh or the
            token is unusable
        """
        self._require_user(user_id)
        cached = self.store.list_repositories(owner_id=user_id)
        if not force_refresh and not self.staleness.is_stale(cached, self._clock()):
            logger.debug(
                f"Repositories of user {user_id} are fresh, serving cache",
                extra={"user_id": user_id, "count": len(cached)},
            )
            return cached

        token = self.token_store.get_token(user_id)
        result = self.discovery.discover_accessible_repositories(user_id, token)
        if not result.token_valid:
            return result.cached

        records = [
            self.store.upsert_repository(repository_from_payload(payload, owner_id=user_id))
            for payload in result.repositories
        ]
        self._schedule_syncs(records, token, reason="discovery")
        return [self.store.get_repository(record.id) or record for record in records]

    def _schedule_syncs(self, records: List[RemoteRepository], token: str, *, reason: str) -> None:
        if not records:
            return
        if self.sync_queue is not None and self.sync_queue.running:
            for record in records:
                self.sync_queue.submit(SyncRequest(record.id, token, reason=reason))
            return
        if self.sync_inline:
            self._run_syncs(records, token)
            return

        future = self._background_executor().submit(self._run_syncs, records, token)
        future.add_done_callback(self._log_background_failure)
        logger.debug(
            f"Scheduled background sync of {len(records)} repositories",
            extra={"count": len(records), "reason": reason},
        )

    def _background_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.sync.worker_count,
                thread_name_prefix="repomirror-sync",
            )
        return self._executor

    @staticmethod
    def _log_background_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(f"Background sync batch failed: {exc}", exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background executor, optionally waiting for running syncs."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def _run_syncs(self, records: List[RemoteRepository], token: str) -> None:
        delay = self.settings.sync.inter_repository_delay_seconds
        for index, record in enumerate(records):
            if index and delay > 0:
                self._sleep(delay)
            try:
                result = self.orchestrator.sync_repository(record.id, token)
            except RepoMirrorError as exc:
                logger.error(
                    f"Sync of {record.full_name} failed: {exc}",
                    extra={"repository": record.full_name},
                )
                continue
            self._after_sync(result)

    def _after_sync(self, result: SyncPassResult) -> None:
        if not self.auto_subscribe_webhooks or result.status != SyncStatus.COMPLETED:
            return
        repository = self.store.get_repository(result.repository_id)
        if repository is None:
            return
        existing = self.store.get_subscription(repository.id)
        if existing is not None:
            return
        try:
            self.subscriptions.subscribe(repository, self.token_store.get_token(repository.owner_id))
        except RepoMirrorError as exc:
            logger.warning(
                f"Webhook subscription after sync failed for {repository.full_name}: {exc}",
                extra={"repository": repository.full_name},
            )

    def sync_repository_now(self, repository_id: int) -> SyncPassResult:
        """Run a full pass immediately with the owner's token.

        Raises:
            AuthError: The owner has no stored token
            SyncInProgressError: Another pass holds the repository
        """
        repository = self._require_repository(repository_id)
        token = self.token_store.get_token(repository.owner_id)
        if not token:
            raise AuthError(f"No GitHub token stored for user {repository.owner_id}")
        result = self.orchestrator.sync_repository(repository_id, token)
        if result.skipped:
            raise SyncInProgressError(
                f"A sync of {repository.full_name} is already running",
                details={"repository_id": repository_id},
            )
        self._after_sync(result)
        return result

    def get_sync_status(self, repository_id: int) -> SyncStatusView:
        repository = self._require_repository(repository_id)
        return SyncStatusView(
            repository_id=repository.id,
            full_name=repository.full_name,
            status=repository.sync_status,
            last_sync_at=repository.last_sync_at,
            last_error=repository.last_sync_error,
        )

    def list_repositories(self, user_id: Optional[str] = None) -> List[RemoteRepository]:
        return self.store.list_repositories(owner_id=user_id)

    def run_staleness_sweep(self) -> SweepStats:
        """Refresh every active user whose repositories have gone stale."""
        stats = SweepStats()
        for user in self.store.list_users(active_only=True):
            if not self.token_store.has_token(user.id):
                logger.debug(f"Skipping user {user.id} without a GitHub token")
                continue
            stats.checked += 1
            try:
                cached = self.store.list_repositories(owner_id=user.id)
                if not self.staleness.is_stale(cached, self._clock()):
                    stats.skipped += 1
                    continue
                self.discover_and_sync_repositories(user.id, force_refresh=True)
                stats.fetched += 1
            except Exception as exc:
                stats.errored += 1
                logger.error(
                    f"Staleness sweep failed for user {user.id}: {exc}",
                    extra={"user_id": user.id},
                    exc_info=True,
                )
        logger.info("Staleness sweep completed", extra=stats.as_dict())
        return stats

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def subscribe_webhook(self, repository_id: int, user_id: str) -> WebhookSubscription:
        repository = self._require_repository(repository_id)
        self._require_user(user_id)
        return self.subscriptions.subscribe(repository, self.token_store.get_token(user_id))

    def unsubscribe_webhook(self, repository_id: int, user_id: str) -> Optional[WebhookSubscription]:
        repository = self._require_repository(repository_id)
        self._require_user(user_id)
        return self.subscriptions.unsubscribe(repository, self.token_store.get_token(user_id))

    def resubscribe_webhook(self, repository_id: int, user_id: str) -> WebhookSubscription:
        repository = self._require_repository(repository_id)
        self._require_user(user_id)
        return self.subscriptions.resubscribe(repository, self.token_store.get_token(user_id))

    def subscribe_all_webhooks(self, user_id: str) -> Dict[str, int]:
        """Subscribe every repository owned by ``user_id``."""
        self._require_user(user_id)
        token = self.token_store.get_token(user_id)
        counts = {"active": 0, "failed": 0, "errors": 0}
        for index, repository in enumerate(self.store.list_repositories(owner_id=user_id)):
            if index:
                self._pause_between_subscriptions()
            try:
                subscription = self.subscriptions.subscribe(repository, token)
            except RepoMirrorError as exc:
                counts["errors"] += 1
                logger.error(
                    f"Failed to subscribe webhook for {repository.full_name}: {exc}",
                    extra={"repository": repository.full_name},
                )
                continue
            key = "active" if subscription.status == WebhookStatus.ACTIVE else "failed"
            counts[key] += 1
        return counts

    def subscribe_missing_webhooks(self) -> Dict[str, int]:
        """Subscribe repositories that have no subscription record yet."""
        counts = {"subscribed": 0, "skipped": 0, "errors": 0}
        attempted = 0
        for repository in self.store.list_repositories_without_subscription():
            owner = self.store.get_user(repository.owner_id)
            token = self.token_store.get_token(repository.owner_id) if owner else None
            if owner is None or not owner.is_active or not token:
                counts["skipped"] += 1
                continue
            if attempted:
                self._pause_between_subscriptions()
            attempted += 1
            try:
                self.subscriptions.subscribe(repository, token)
                counts["subscribed"] += 1
            except RepoMirrorError as exc:
                counts["errors"] += 1
                logger.error(
                    f"Failed to subscribe webhook for {repository.full_name}: {exc}",
                    extra={"repository": repository.full_name},
                )
        logger.info("Webhook subscription check completed", extra=counts)
        return counts

    def run_webhook_health_check(self) -> Dict[str, int]:
        """Log stale subscriptions and retry FAILED ones with attempts left."""
        stale = self.subscriptions.stale_subscriptions(self._clock())
        for subscription in stale:
            logger.warning(
                f"Webhook for repository {subscription.repository_id} appears stale "
                f"(last delivery: {subscription.last_delivery_at})",
                extra={"repository_id": subscription.repository_id},
            )

        counts = {"stale": len(stale), "retried": 0, "retry_failed": 0}
        for subscription in self.subscriptions.retryable_subscriptions(self._clock()):
            repository = self.store.get_repository(subscription.repository_id)
            if repository is None:
                continue
            token = self.token_store.get_token(repository.owner_id)
            try:
                result = self.subscriptions.subscribe(repository, token)
            except RepoMirrorError as exc:
                counts["retry_failed"] += 1
                logger.error(
                    f"Failed to retry webhook subscription for {repository.full_name}: {exc}",
                    extra={"repository": repository.full_name},
                )
                continue
            counts["retried" if result.status == WebhookStatus.ACTIVE else "retry_failed"] += 1
        logger.info("Webhook health check completed", extra=counts)
        return counts

    def webhook_stats(self) -> Dict[str, int]:
        return self.subscriptions.stats()

    def _pause_between_subscriptions(self) -> None:
        delay = self.settings.webhook.subscribe_delay_seconds
        if delay > 0:
            self._sleep(delay)


def create_mirror_service(
    settings: Settings,
    *,
    secret_store: Optional[SecretStore] = None,
    sync_inline: bool = False,
) -> RepositoryMirrorService:
    """Build a service with real collaborators from settings.

    ``sync_inline`` makes discovery run its sync passes before returning,
    for one-shot callers such as CLI commands that exit afterwards.
    """
    return RepositoryMirrorService(
        settings,
        MirrorStore(settings.storage.database_path),
        create_api_client(settings.provider),
        GitHubTokenStore(secret_store or SecretStore()),
        sync_inline=sync_inline,
    )


__all__ = ["RepositoryMirrorService", "create_mirror_service"]

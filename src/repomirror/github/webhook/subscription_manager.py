"""Webhook subscription lifecycle and delivery-reliability tracking.

Each mirrored repository has at most one subscription record, and records
are never physically deleted. Subscription attempts that cannot reach the
provider still leave a FAILED record with a placeholder webhook ID
(``<REASON>-<epoch-ms>``), so schedulers can see and retry them.

Deliveries are tracked per subscription: a success resets the failure
counter and re-activates a FAILED subscription, and enough consecutive
failures disable it.
"""

from __future__ import annotations

import ipaddress
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from urllib.parse import urlsplit

from repomirror.configuration.settings import WebhookSettings
from repomirror.errors import (
    AuthError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    WebhookSubscriptionError,
)

from ..api_client import GitHubAPIClient
from ..models import RemoteRepository, WebhookStatus, WebhookSubscription, utcnow
from ..retry import RetryPolicy, call_with_retry
from ..store import MirrorStore
from .security import secret_fingerprint

logger = logging.getLogger(__name__)


def is_unreachable_callback(url: str) -> bool:
    """Whether GitHub could never deliver to ``url``.

    True for ``localhost`` names and for loopback, private, link-local, or
    unspecified IP literals. Unparseable URLs count as unreachable.
    """
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return True
    if not host:
        return True
    host = host.lower()
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
    )


class WebhookSubscriptionManager:
    """Creates, removes, and tracks GitHub webhooks for mirrored repositories."""

    def __init__(
        self,
        client: GitHubAPIClient,
        store: MirrorStore,
        settings: WebhookSettings,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings
        self.retry_policy = retry_policy
        self._clock = clock

    # ------------------------------------------------------------------
    # Subscribe / unsubscribe
    # ------------------------------------------------------------------

    def subscribe(self, repository: RemoteRepository, token: Optional[str]) -> WebhookSubscription:
        """Ensure a webhook exists for ``repository``.

        Args:
            repository: Stored repository record
            token: Access token of the repository owner

        Returns:
            The ACTIVE subscription, or a FAILED placeholder when the hook
            cannot be created for a known reason

        Raises:
            AuthError: No token available
            WebhookSubscriptionError: Hook creation failed at the provider;
                a FAILED placeholder is persisted first
        """
        if not token:
            raise AuthError(f"No GitHub token available to subscribe {repository.full_name}")

        existing = self.store.get_subscription(repository.id)
        if existing is not None and existing.status == WebhookStatus.ACTIVE:
            logger.debug(
                f"Webhook already active for {repository.full_name}",
                extra={"repository": repository.full_name},
            )
            return existing

        callback_url = self.settings.callback_url
        if is_unreachable_callback(callback_url):
            logger.warning(
                f"Skipping webhook subscription for {repository.full_name}: "
                f"callback URL {callback_url} is not reachable from GitHub",
                extra={"repository": repository.full_name},
            )
            return self._placeholder(
                repository, existing, "LOCALHOST", "Callback URL not reachable from GitHub"
            )

        owner, _, name = repository.full_name.partition("/")
        if not owner or not name or "/" in name:
            return self._placeholder(
                repository, existing, "INVALID", "Invalid repository name format"
            )

        try:
            details = call_with_retry(
                self.client.get_repository,
                token,
                repository.full_name,
                policy=self.retry_policy,
            )
        except NotFoundError:
            return self._no_access(repository, existing)
        except Exception as exc:
            logger.warning(
                f"Error validating access to {repository.full_name}: {exc}",
                extra={"repository": repository.full_name, "error_type": type(exc).__name__},
            )
            return self._placeholder(
                repository, existing, "ERROR", f"Error validating repository access: {exc}"
            )
        if details.permissions is not None and not details.permissions.admin:
            return self._no_access(repository, existing)

        if existing is not None and existing.status == WebhookStatus.FAILED and not existing.is_placeholder:
            # hook disabled by failed deliveries still exists on GitHub
            self._delete_stale_hook(repository, existing, token)

        try:
            secret = self.settings.require_secret()
            hook = call_with_retry(
                self.client.create_hook,
                token,
                repository.full_name,
                url=callback_url,
                secret=secret,
                events=self.settings.events,
                policy=self.retry_policy,
            )
        except Exception as exc:
            logger.error(
                f"Failed to create webhook for {repository.full_name}: {exc}",
                extra={"repository": repository.full_name, "error_type": type(exc).__name__},
            )
            self._placeholder(repository, existing, "FAILED", str(exc))
            raise WebhookSubscriptionError(
                f"Failed to subscribe to webhook for {repository.full_name}: {exc}"
            ) from exc

        now = self._clock()
        subscription = self._base_record(repository, existing, now).model_copy(
            update={
                "webhook_id": str(hook.id),
                "webhook_url": callback_url,
                "events": list(hook.events or self.settings.events),
                "status": WebhookStatus.ACTIVE,
                "secret_hash": secret_fingerprint(secret),
                "failure_count": 0,
                "last_error": None,
                "subscribed_at": now,
                "updated_at": now,
            }
        )
        saved = self.store.save_subscription(subscription)
        logger.info(
            f"Subscribed webhook {hook.id} for {repository.full_name}",
            extra={"repository": repository.full_name, "webhook_id": saved.webhook_id},
        )
        return saved

    def unsubscribe(
        self, repository: RemoteRepository, token: Optional[str]
    ) -> Optional[WebhookSubscription]:
        """Remove the provider hook and mark the subscription INACTIVE.

        Returns:
            The updated record, or None when nothing was subscribed

        Raises:
            AuthError: A provider call is needed and no token is available
            WebhookSubscriptionError: The provider refused the deletion
        """
        subscription = self.store.get_subscription(repository.id)
        if subscription is None:
            logger.warning(
                f"No webhook subscription found for {repository.full_name}",
                extra={"repository": repository.full_name},
            )
            return None

        if not subscription.is_placeholder:
            if not token:
                raise AuthError(f"No GitHub token available to unsubscribe {repository.full_name}")
            try:
                call_with_retry(
                    self.client.delete_hook,
                    token,
                    repository.full_name,
                    subscription.webhook_id,
                    policy=self.retry_policy,
                )
            except NotFoundError:
                logger.info(
                    f"Webhook {subscription.webhook_id} already removed from {repository.full_name}",
                    extra={"repository": repository.full_name},
                )
            except ProviderError as exc:
                raise WebhookSubscriptionError(
                    f"Failed to unsubscribe webhook for {repository.full_name}: {exc}"
                ) from exc

        saved = self.store.save_subscription(
            subscription.model_copy(
                update={"status": WebhookStatus.INACTIVE, "updated_at": self._clock()}
            )
        )
        logger.info(
            f"Unsubscribed webhook for {repository.full_name}",
            extra={"repository": repository.full_name, "webhook_id": saved.webhook_id},
        )
        return saved

    def resubscribe(self, repository: RemoteRepository, token: Optional[str]) -> WebhookSubscription:
        """Remove the current hook (if any) and create a fresh one."""
        self.unsubscribe(repository, token)
        return self.subscribe(repository, token)

    # ------------------------------------------------------------------
    # Delivery tracking
    # ------------------------------------------------------------------

    def record_delivery(
        self,
        success: bool,
        error: Optional[str] = None,
        *,
        webhook_id: Optional[str] = None,
        repository_github_id: Optional[int] = None,
        repository_full_name: Optional[str] = None,
    ) -> Optional[WebhookSubscription]:
        """Update delivery counters of the matching subscription.

        The subscription is located by webhook ID, then by the repository's
        provider ID, then by its full name.

        Returns:
            The updated subscription, or None if none matched
        """
        with self.store.transaction():
            subscription = self._locate(webhook_id, repository_github_id, repository_full_name)
            if subscription is None:
                logger.warning(
                    "Delivery for unknown webhook subscription",
                    extra={
                        "webhook_id": webhook_id,
                        "repository_github_id": repository_github_id,
                        "repository": repository_full_name,
                    },
                )
                return None

            now = self._clock()
            if success:
                update = {
                    "failure_count": 0,
                    "last_error": None,
                    "last_delivery_at": now,
                    "updated_at": now,
                }
                if subscription.status == WebhookStatus.FAILED:
                    update["status"] = WebhookStatus.ACTIVE
            else:
                failures = subscription.failure_count + 1
                update = {
                    "failure_count": failures,
                    "last_error": error,
                    "last_delivery_at": now,
                    "updated_at": now,
                }
                if failures >= self.settings.max_failures:
                    update["status"] = WebhookStatus.FAILED
            saved = self.store.save_subscription(subscription.model_copy(update=update))

        if saved.status == WebhookStatus.FAILED and not success and subscription.status != WebhookStatus.FAILED:
            logger.warning(
                f"Webhook {saved.webhook_id} disabled after {saved.failure_count} failed deliveries",
                extra={"webhook_id": saved.webhook_id, "repository_id": saved.repository_id},
            )
        return saved

    def _locate(
        self,
        webhook_id: Optional[str],
        repository_github_id: Optional[int],
        repository_full_name: Optional[str],
    ) -> Optional[WebhookSubscription]:
        if webhook_id:
            found = self.store.find_subscription_by_webhook_id(webhook_id)
            if found is not None:
                return found
        repository: Optional[RemoteRepository] = None
        if repository_github_id is not None:
            repository = self.store.get_repository_by_github_id(repository_github_id)
        if repository is None and repository_full_name:
            repository = self.store.get_repository_by_full_name(repository_full_name)
        if repository is None:
            return None
        return self.store.get_subscription(repository.id)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def stale_subscriptions(self, now: Optional[datetime] = None) -> List[WebhookSubscription]:
        """ACTIVE subscriptions with no delivery within ``stale_after_hours``."""
        now = now or self._clock()
        cutoff = now - timedelta(hours=self.settings.stale_after_hours)
        return [
            subscription
            for subscription in self.store.list_subscriptions(status=WebhookStatus.ACTIVE)
            if (subscription.last_delivery_at or subscription.subscribed_at) < cutoff
        ]

    def retryable_subscriptions(self, now: Optional[datetime] = None) -> List[WebhookSubscription]:
        """FAILED subscriptions with attempts left, untouched for ``retry_delay_minutes``."""
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self.settings.retry_delay_minutes)
        return [
            subscription
            for subscription in self.store.list_subscriptions(status=WebhookStatus.FAILED)
            if subscription.failure_count < self.settings.max_attempts
            and subscription.updated_at <= cutoff
        ]

    def stats(self) -> Dict[str, int]:
        counts = self.store.subscription_counts()
        counts["total"] = sum(counts.values())
        return counts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _delete_stale_hook(
        self, repository: RemoteRepository, existing: WebhookSubscription, token: str
    ) -> None:
        try:
            call_with_retry(
                self.client.delete_hook,
                token,
                repository.full_name,
                existing.webhook_id,
                policy=self.retry_policy,
            )
        except ProviderError as exc:
            logger.warning(
                f"Could not remove disabled webhook {existing.webhook_id} "
                f"from {repository.full_name}: {exc}",
                extra={"repository": repository.full_name, "webhook_id": existing.webhook_id},
            )

    def _no_access(
        self, repository: RemoteRepository, existing: Optional[WebhookSubscription]
    ) -> WebhookSubscription:
        logger.warning(
            f"Skipping webhook subscription for {repository.full_name}: no admin access",
            extra={"repository": repository.full_name},
        )
        return self._placeholder(
            repository,
            existing,
            "NOACCESS",
            "No admin access to repository or repository not found",
        )

    def _placeholder(
        self,
        repository: RemoteRepository,
        existing: Optional[WebhookSubscription],
        reason: str,
        message: str,
    ) -> WebhookSubscription:
        now = self._clock()
        record = self._base_record(repository, existing, now)
        placeholder = record.model_copy(
            update={
                "webhook_id": f"{reason}-{int(now.timestamp() * 1000)}",
                "webhook_url": self.settings.callback_url,
                "events": list(self.settings.events),
                "status": WebhookStatus.FAILED,
                "secret_hash": record.secret_hash or self._fingerprint_or_none(),
                "last_error": message,
                "failure_count": record.failure_count + 1,
                "updated_at": now,
            }
        )
        return self.store.save_subscription(placeholder)

    def _base_record(
        self,
        repository: RemoteRepository,
        existing: Optional[WebhookSubscription],
        now: datetime,
    ) -> WebhookSubscription:
        if existing is not None:
            return existing
        return WebhookSubscription(
            repository_id=repository.id,
            webhook_id="",
            webhook_url=self.settings.callback_url,
            events=list(self.settings.events),
            subscribed_at=now,
            updated_at=now,
        )

    def _fingerprint_or_none(self) -> Optional[str]:
        try:
            return secret_fingerprint(self.settings.require_secret())
        except ConfigurationError:
            return None


__all__ = ["WebhookSubscriptionManager", "is_unreachable_callback"]

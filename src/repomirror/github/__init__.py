"""GitHub repository mirror.

This package discovers the repositories a local user can access, mirrors
their metadata, branches, commits, files, and collaborators into a local
SQLite store, and keeps the mirror current through periodic staleness sweeps
and GitHub webhooks.

Heavier components (service, scheduler, webhook server) are imported from
their own modules so that configuration can depend on this package without
import cycles.
"""

from .models import (
    Branch,
    Collaborator,
    Commit,
    LocalUser,
    PermissionLevel,
    RemoteRepository,
    SyncStatus,
    SyncStatusView,
    TrackedFile,
    WebhookStatus,
    WebhookSubscription,
    utcnow,
)
from .retry import RetryPolicy, call_with_retry, load_retry_policy

__all__ = [
    # Models
    "Branch",
    "Collaborator",
    "Commit",
    "LocalUser",
    "PermissionLevel",
    "RemoteRepository",
    "SyncStatus",
    "SyncStatusView",
    "TrackedFile",
    "WebhookStatus",
    "WebhookSubscription",
    "utcnow",
    # Retry
    "RetryPolicy",
    "call_with_retry",
    "load_retry_policy",
]

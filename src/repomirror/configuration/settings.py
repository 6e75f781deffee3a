"""Typed settings management for repomirror.

This module wraps configuration in Pydantic models so CLI commands and
services can rely on validated settings. It also provides a keyring-backed
secret store for the webhook secret and per-user GitHub tokens, so neither
is ever written to the config file.
"""

from __future__ import annotations

import json
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import keyring
from filelock import FileLock
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from repomirror.errors import InvalidConfigError, MissingConfigError
from repomirror.github.retry import RetryPolicy, load_retry_policy


DEFAULT_HOME = Path.home() / ".repomirror"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"
DEFAULT_SECRETS_SERVICE = "repomirror"
WEBHOOK_SECRET_KEY = "webhook:secret"
MASKED_SECRET = "***"

DEFAULT_WEBHOOK_EVENTS = [
    "push",
    "pull_request",
    "issues",
    "create",
    "delete",
    "release",
    "fork",
    "watch",
]


class ProviderSettings(BaseModel):
    """GitHub API access."""

    api_base_url: str = Field("https://api.github.com", description="GitHub REST base URL")
    connect_timeout: float = Field(5.0, gt=0, le=120, description="Connect timeout in seconds")
    read_timeout: float = Field(30.0, gt=0, le=600, description="Read timeout in seconds")
    user_agent: str = Field("repomirror", description="User-Agent header")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    retry_policy_path: Optional[Path] = Field(
        default=None, description="Optional YAML file overriding the retry policy"
    )

    @field_validator("api_base_url")
    @classmethod
    def _validate_api_base_url(cls, value: str) -> str:
        if not value.startswith("http://") and not value.startswith("https://"):
            raise ValueError("api_base_url must start with http:// or https://")
        return value.rstrip("/")


class StorageSettings(BaseModel):
    """Local mirror database."""

    database_path: Path = Field(default=DEFAULT_HOME / "mirror.db")


class SyncSettings(BaseModel):
    """Staleness windows and sync bounds."""

    staleness_window_hours: float = Field(6, gt=0, description="Per-user freshness window")
    sweep_interval_hours: float = Field(24, gt=0, description="All-users sweep cadence")
    event_freshness_minutes: float = Field(
        5, ge=0, description="Skip non-critical webhook events if synced this recently"
    )
    max_directory_depth: int = Field(5, ge=0, le=50)
    max_inline_file_size: int = Field(1024 * 1024, ge=0, description="Bytes")
    commit_page_size: int = Field(100, ge=1, le=100)
    event_commit_page_size: int = Field(10, ge=1, le=100)
    worker_count: int = Field(2, ge=1, le=32)
    inter_repository_delay_seconds: float = Field(1.0, ge=0)
    sync_lock_timeout_minutes: float = Field(
        60, gt=0, description="SYNCING rows older than this are treated as abandoned"
    )


class WebhookSettings(BaseModel):
    """Webhook subscription, delivery tracking, and inbound server."""

    base_url: str = Field("http://localhost:8090", description="Public base URL GitHub calls")
    endpoint: str = Field("/api/github/webhook", description="Path of the inbound endpoint")
    events: List[str] = Field(default_factory=lambda: list(DEFAULT_WEBHOOK_EVENTS))
    secret: Optional[SecretStr] = Field(default=None, description="Shared HMAC secret")

    listen_host: str = Field("127.0.0.1")
    listen_port: int = Field(8090, ge=1, le=65535)
    queue_size: int = Field(1000, ge=10, le=10000)
    max_requests_per_minute: int = Field(60, ge=1, le=1000)

    subscription_check_interval_minutes: float = Field(30, gt=0)
    health_check_interval_hours: float = Field(6, gt=0)
    stale_after_hours: float = Field(24, gt=0)
    max_attempts: int = Field(3, ge=1, description="Retries for FAILED subscriptions")
    max_failures: int = Field(5, ge=1, description="Failed deliveries before auto-disable")
    retry_delay_minutes: float = Field(15, ge=0)
    subscribe_delay_seconds: float = Field(1.0, ge=0)

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        if not value.startswith("http://") and not value.startswith("https://"):
            raise ValueError("base_url must start with http:// or https://")
        return value.rstrip("/")

    @field_validator("endpoint")
    @classmethod
    def _validate_endpoint(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @field_validator("events")
    @classmethod
    def _validate_events(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one webhook event must be configured")
        return value

    @property
    def callback_url(self) -> str:
        """Full URL registered on GitHub hooks."""
        return f"{self.base_url}{self.endpoint}"

    def require_secret(self) -> str:
        """Return the usable secret or raise if it is missing or too weak."""
        if self.secret is None:
            raise MissingConfigError("Webhook secret is not configured")
        value = self.secret.get_secret_value()
        if value == MASKED_SECRET:
            raise MissingConfigError("Webhook secret has not been loaded from the keyring")
        if len(value) < 16:
            raise InvalidConfigError("Webhook secret must be at least 16 characters")
        return value


class Settings(BaseModel):
    """Root configuration state."""

    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)


@dataclass
class SecretStore:
    """Keyring abstraction for storing credentials."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def set_secret(self, key: str, value: str) -> None:
        if self.keyring_module is None:
            raise RuntimeError("Keyring module not configured")
        self.keyring_module.set_password(self.service_name, key, value)

    def get_secret(self, key: str) -> Optional[str]:
        if self.keyring_module is None:
            return None
        return self.keyring_module.get_password(self.service_name, key)

    def delete_secret(self, key: str) -> None:
        if self.keyring_module is None:
            return
        try:
            self.keyring_module.delete_password(self.service_name, key)
        except Exception as exc:  # pragma: no cover - backend specific
            errors = getattr(self.keyring_module, "errors", None)
            password_error = getattr(errors, "PasswordDeleteError", None)
            if password_error and isinstance(exc, password_error):
                return
            raise


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk or raise if invalid."""

    if not path.exists():
        raise FileNotFoundError(f"Settings file not found at {path}")
    payload = json.loads(path.read_text())
    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid configuration: {exc}") from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk with masked secrets.

    Writes go through a temporary file and ``os.replace`` under a file lock,
    so a concurrent reader never sees a half-written config.
    """

    payload = settings.model_dump(mode="json")
    payload = _mask_secret_fields(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(path.with_suffix(".lock")), timeout=10)
    with lock:
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2))
        os.replace(tmp_path, path)


def bootstrap_settings(
    *,
    path: Path = DEFAULT_CONFIG_PATH,
    secret_store: SecretStore | None = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create or load settings respecting environment overrides.

    The webhook secret is generated on first run and kept in the keyring;
    the returned settings carry the real value, the file only a mask.
    """

    secret_store = secret_store or SecretStore()
    overrides = overrides or {}

    if path.exists():
        settings = load_settings(path)
    else:
        settings = Settings()

    merged = settings.model_dump(mode="python")
    merged = _apply_overrides(merged, overrides)
    merged = _apply_env_overrides(merged)

    try:
        resolved = Settings.model_validate(merged)
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid configuration: {exc}") from exc

    _hydrate_secrets(resolved, secret_store)
    if resolved.provider.retry_policy_path and resolved.provider.retry_policy_path.exists():
        resolved.provider.retry = load_retry_policy(resolved.provider.retry_policy_path)
    resolved.storage.database_path.parent.mkdir(parents=True, exist_ok=True)
    save_settings(resolved, path)
    return resolved


def rotate_secret(
    *,
    secret_store: SecretStore,
    key: str,
    new_value: str,
) -> None:
    """Rotate a stored secret."""

    secret_store.set_secret(key, new_value)


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _apply_overrides(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    provider = data.setdefault("provider", {})
    _set_env_override(provider, "api_base_url", "REPOMIRROR_GITHUB_API_URL")
    _set_env_override(provider, "read_timeout", "REPOMIRROR_GITHUB_TIMEOUT", cast_float=True)

    storage = data.setdefault("storage", {})
    _set_env_override(storage, "database_path", "REPOMIRROR_DATABASE_PATH")

    sync = data.setdefault("sync", {})
    _set_env_override(sync, "staleness_window_hours", "REPOMIRROR_STALENESS_HOURS", cast_float=True)
    _set_env_override(sync, "worker_count", "REPOMIRROR_SYNC_WORKERS", cast_int=True)

    webhook = data.setdefault("webhook", {})
    _set_env_override(webhook, "base_url", "REPOMIRROR_WEBHOOK_BASE_URL")
    _set_env_override(webhook, "secret", "REPOMIRROR_WEBHOOK_SECRET")
    _set_env_override(webhook, "listen_host", "REPOMIRROR_WEBHOOK_HOST")
    _set_env_override(webhook, "listen_port", "REPOMIRROR_WEBHOOK_PORT", cast_int=True)
    _set_env_override(webhook, "max_failures", "REPOMIRROR_WEBHOOK_MAX_FAILURES", cast_int=True)
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_int: bool = False,
    cast_float: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    if cast_int:
        mapping[key] = int(raw)
    elif cast_float:
        mapping[key] = float(raw)
    else:
        mapping[key] = raw


def _hydrate_secrets(settings: Settings, secret_store: SecretStore) -> None:
    webhook = settings.webhook
    provided = webhook.secret.get_secret_value() if webhook.secret else None
    if provided and provided != MASKED_SECRET:
        secret_store.set_secret(WEBHOOK_SECRET_KEY, provided)
        return

    stored = secret_store.get_secret(WEBHOOK_SECRET_KEY)
    if not stored:
        stored = secrets.token_hex(32)
        secret_store.set_secret(WEBHOOK_SECRET_KEY, stored)
    webhook.secret = SecretStr(stored)


def _mask_secret_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    webhook = payload.get("webhook", {})
    if webhook.get("secret"):
        webhook["secret"] = MASKED_SECRET
    return payload


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_SECRETS_SERVICE",
    "DEFAULT_WEBHOOK_EVENTS",
    "MASKED_SECRET",
    "ProviderSettings",
    "SecretStore",
    "Settings",
    "StorageSettings",
    "SyncSettings",
    "WEBHOOK_SECRET_KEY",
    "WebhookSettings",
    "bootstrap_settings",
    "load_settings",
    "rotate_secret",
    "save_settings",
]

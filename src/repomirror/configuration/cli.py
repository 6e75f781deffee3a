"""CLI commands for managing repomirror settings."""

from __future__ import annotations

import json
import secrets
from pathlib import Path
from typing import Optional

import typer

from repomirror.configuration.settings import (
    DEFAULT_CONFIG_PATH,
    WEBHOOK_SECRET_KEY,
    SecretStore,
    Settings,
    bootstrap_settings,
    load_settings,
    rotate_secret,
    save_settings,
)
from repomirror.errors import RepoMirrorError, format_error_for_cli


config_app = typer.Typer(help="Manage repomirror configuration")


@config_app.command("init")
def init_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
    api_base_url: Optional[str] = typer.Option(None, help="Override GitHub API base URL"),
    database_path: Optional[Path] = typer.Option(None, help="Override mirror database path"),
    webhook_base_url: Optional[str] = typer.Option(
        None, help="Public base URL GitHub should deliver webhooks to"
    ),
) -> None:
    """Initialize the repomirror settings file."""

    overrides: dict = {}
    if api_base_url:
        overrides.setdefault("provider", {})["api_base_url"] = api_base_url
    if database_path:
        overrides.setdefault("storage", {})["database_path"] = str(database_path)
    if webhook_base_url:
        overrides.setdefault("webhook", {})["base_url"] = webhook_base_url

    try:
        settings = bootstrap_settings(path=config_path, overrides=overrides)
    except RepoMirrorError as exc:
        typer.echo(format_error_for_cli(exc), err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Configuration initialized at {config_path}")
    typer.echo(_summarize_settings(settings))


@config_app.command("show")
def show_config(config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config")) -> None:
    """Display effective configuration with secrets masked."""

    settings = _load_or_exit(config_path)
    typer.echo(_summarize_settings(settings))


@config_app.command("set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key, e.g. sync.staleness_window_hours"),
    value: str = typer.Argument(..., help="New value"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config"),
) -> None:
    """Update a configuration value."""

    settings = _load_or_exit(config_path)
    payload = settings.model_dump(mode="python")
    _assign(payload, key.split("."), value)
    try:
        updated = Settings.model_validate(payload)
    except ValueError as exc:
        typer.echo(f"❌ Invalid value for {key}: {exc}", err=True)
        raise typer.Exit(code=1)
    save_settings(updated, config_path)
    typer.echo(f"Updated {key}")


@config_app.command("validate")
def validate_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Validate configuration file for correctness."""

    try:
        settings = load_settings(config_path)
    except (FileNotFoundError, RepoMirrorError, ValueError) as e:
        typer.echo(f"❌ Configuration invalid: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"✅ Configuration valid at {config_path}")
    typer.echo(f"   GitHub API: {settings.provider.api_base_url}")
    typer.echo(f"   Database: {settings.storage.database_path}")
    typer.echo(f"   Webhook callback: {settings.webhook.callback_url}")


@config_app.command("rotate-secret")
def rotate_secret_command(
    value: Optional[str] = typer.Argument(
        None, help="New webhook secret (generated when omitted)"
    ),
    service: str = typer.Option("repomirror", help="Keychain service name"),
) -> None:
    """Rotate the webhook secret stored in the system keychain.

    Existing GitHub hooks keep the old secret until they are re-subscribed.
    """

    new_value = value or secrets.token_hex(32)
    if len(new_value) < 16:
        typer.echo("❌ Webhook secret must be at least 16 characters", err=True)
        raise typer.Exit(code=1)
    store = SecretStore(service_name=service)
    rotate_secret(secret_store=store, key=WEBHOOK_SECRET_KEY, new_value=new_value)
    typer.echo("Webhook secret rotated; re-subscribe webhooks to apply it")


def _load_or_exit(config_path: Path) -> Settings:
    try:
        return load_settings(config_path)
    except FileNotFoundError:
        typer.echo(f"❌ No configuration at {config_path}; run 'repomirror config init'", err=True)
        raise typer.Exit(code=1)
    except RepoMirrorError as exc:
        typer.echo(format_error_for_cli(exc), err=True)
        raise typer.Exit(code=1)


def _summarize_settings(settings: Settings) -> str:
    data = settings.model_dump(mode="json")
    return json.dumps(data, indent=2)


def _assign(payload: dict, keys: list[str], value: str) -> None:
    current = payload
    for key in keys[:-1]:
        current = current.setdefault(key, {})
    current[keys[-1]] = value


__all__ = ["config_app"]

"""CLI commands for the GitHub repository mirror.

This module provides Typer commands for registering users, discovering and
syncing repositories, managing webhooks, and running the long-lived mirror
process (webhook server, background sync workers, periodic jobs).
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from repomirror.configuration.settings import DEFAULT_CONFIG_PATH, bootstrap_settings
from repomirror.errors import RepoMirrorError, format_error_for_cli

from .service import RepositoryMirrorService, create_mirror_service

app = typer.Typer(help="Mirror GitHub repositories into the local store")
users_app = typer.Typer(help="Manage local users and their GitHub tokens")
webhook_app = typer.Typer(help="Manage GitHub webhook subscriptions")
app.add_typer(users_app, name="users")
app.add_typer(webhook_app, name="webhook")

console = Console()
error_console = Console(stderr=True)

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file")


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def _build_service(config_path: Path, *, sync_inline: bool = True) -> RepositoryMirrorService:
    settings = bootstrap_settings(path=config_path)
    return create_mirror_service(settings, sync_inline=sync_inline)


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except RepoMirrorError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)


def _fmt(value: object) -> str:
    return "-" if value is None else str(value)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@users_app.command("add")
def add_user(
    user_id: str = typer.Argument(..., help="Platform user identifier"),
    username: str = typer.Option(..., "--username", "-u", help="Platform username or email"),
    github_username: Optional[str] = typer.Option(None, "--github-username", "-g"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="GitHub access token"),
    prompt_token: bool = typer.Option(False, "--prompt-token", help="Ask for the token interactively"),
    inactive: bool = typer.Option(False, "--inactive", help="Exclude from scheduled sweeps"),
    config_path: Path = ConfigOption,
) -> None:
    """Register a local user and optionally store their GitHub token."""
    if token is None and prompt_token:
        token = Prompt.ask("GitHub token", password=True)
    with _cli_errors():
        service = _build_service(config_path)
        user = service.add_user(
            user_id,
            username,
            github_username=github_username,
            token=token,
            is_active=not inactive,
        )
    console.print(f"[green]✓[/green] User {user.id} saved")


@users_app.command("list")
def list_users(config_path: Path = ConfigOption) -> None:
    """List local users."""
    with _cli_errors():
        service = _build_service(config_path)
        users = service.list_users()
        has_token = {user.id: service.token_store.has_token(user.id) for user in users}

    table = Table(title="Local Users")
    table.add_column("ID", style="cyan")
    table.add_column("Username", style="green")
    table.add_column("GitHub", style="blue")
    table.add_column("Active", style="magenta")
    table.add_column("Token", style="yellow")
    for user in users:
        table.add_row(
            user.id,
            user.username,
            _fmt(user.github_username),
            "yes" if user.is_active else "no",
            "yes" if has_token[user.id] else "no",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Discovery and sync
# ---------------------------------------------------------------------------


@app.command("discover")
def discover(
    user_id: str = typer.Argument(..., help="Local user whose repositories to discover"),
    force: bool = typer.Option(False, "--force", "-f", help="Ignore the staleness window"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = ConfigOption,
) -> None:
    """Discover a user's repositories and run a sync pass for each."""
    with _cli_errors():
        service = _build_service(config_path)
        repositories = service.discover_and_sync_repositories(user_id, force_refresh=force)

    if json_output:
        print(json.dumps([repo.model_dump(mode="json") for repo in repositories]))
        return

    table = Table(title=f"Repositories of {user_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Repository", style="green")
    table.add_column("Visibility", style="magenta")
    table.add_column("Status", style="yellow")
    table.add_column("Last sync", style="dim")
    for repo in repositories:
        table.add_row(
            str(repo.id),
            repo.full_name,
            _fmt(repo.visibility or ("private" if repo.is_private else "public")),
            repo.sync_status.value,
            _fmt(repo.last_sync_at),
        )
    console.print(table)


@app.command("sync")
def sync_repository(
    repository_id: int = typer.Argument(..., help="Local repository ID"),
    config_path: Path = ConfigOption,
) -> None:
    """Run a full sync pass for one repository now."""
    with _cli_errors():
        service = _build_service(config_path)
        result = service.sync_repository_now(repository_id)

    for outcome in result.stages:
        mark = "[green]✓[/green]" if outcome.succeeded else "[red]✗[/red]"
        detail = f"{outcome.items} items" if outcome.succeeded else outcome.error
        console.print(f"  {mark} {outcome.stage}: {detail}")
    if result.error:
        error_console.print(f"[red]Sync failed:[/red] {result.error}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {result.full_name} synced")


@app.command("status")
def sync_status(
    repository_id: int = typer.Argument(..., help="Local repository ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = ConfigOption,
) -> None:
    """Show the sync status of a repository."""
    with _cli_errors():
        service = _build_service(config_path)
        status = service.get_sync_status(repository_id)

    if json_output:
        print(status.model_dump_json())
        return
    console.print(f"[bold]{status.full_name}[/bold]")
    console.print(f"  Status:    {status.status.value}")
    console.print(f"  Last sync: {_fmt(status.last_sync_at)}")
    if status.last_error:
        console.print(f"  Error:     [red]{status.last_error}[/red]")


@app.command("sweep")
def sweep(config_path: Path = ConfigOption) -> None:
    """Run one staleness sweep over all active users."""
    with _cli_errors():
        service = _build_service(config_path)
        stats = service.run_staleness_sweep()
    console.print(
        f"Checked {stats.checked}, fetched {stats.fetched}, "
        f"skipped {stats.skipped}, errored {stats.errored}"
    )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@webhook_app.command("subscribe")
def subscribe_webhook(
    repository_id: Optional[int] = typer.Argument(None, help="Local repository ID"),
    user_id: str = typer.Option(..., "--user", "-u", help="User whose token is used"),
    all_repositories: bool = typer.Option(False, "--all", help="Subscribe every repository of the user"),
    config_path: Path = ConfigOption,
) -> None:
    """Create the GitHub webhook for a repository (or all of a user's)."""
    with _cli_errors():
        service = _build_service(config_path)
        if all_repositories:
            counts = service.subscribe_all_webhooks(user_id)
            console.print(
                f"Active {counts['active']}, failed {counts['failed']}, errors {counts['errors']}"
            )
            return
        if repository_id is None:
            error_console.print("Error: pass a repository ID or --all")
            raise typer.Exit(1)
        subscription = service.subscribe_webhook(repository_id, user_id)
    _print_subscription(subscription)


@webhook_app.command("unsubscribe")
def unsubscribe_webhook(
    repository_id: int = typer.Argument(..., help="Local repository ID"),
    user_id: str = typer.Option(..., "--user", "-u", help="User whose token is used"),
    config_path: Path = ConfigOption,
) -> None:
    """Remove the GitHub webhook of a repository."""
    with _cli_errors():
        service = _build_service(config_path)
        subscription = service.unsubscribe_webhook(repository_id, user_id)
    if subscription is None:
        console.print("[yellow]No webhook subscription for this repository[/yellow]")
        return
    _print_subscription(subscription)


@webhook_app.command("resubscribe")
def resubscribe_webhook(
    repository_id: int = typer.Argument(..., help="Local repository ID"),
    user_id: str = typer.Option(..., "--user", "-u", help="User whose token is used"),
    config_path: Path = ConfigOption,
) -> None:
    """Replace the GitHub webhook of a repository."""
    with _cli_errors():
        service = _build_service(config_path)
        subscription = service.resubscribe_webhook(repository_id, user_id)
    _print_subscription(subscription)


@webhook_app.command("stats")
def webhook_stats(config_path: Path = ConfigOption) -> None:
    """Show subscription counts per status."""
    with _cli_errors():
        service = _build_service(config_path)
        stats = service.webhook_stats()
    table = Table(title="Webhook Subscriptions")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="green")
    for status, count in stats.items():
        table.add_row(status, str(count))
    console.print(table)


def _print_subscription(subscription) -> None:
    style = {"ACTIVE": "green", "FAILED": "red"}.get(subscription.status.value, "yellow")
    console.print(
        f"Webhook [{style}]{subscription.status.value}[/{style}] "
        f"(id {subscription.webhook_id}, failures {subscription.failure_count})"
    )
    if subscription.last_error:
        console.print(f"  Last error: {subscription.last_error}")


# ---------------------------------------------------------------------------
# Long-running process
# ---------------------------------------------------------------------------


@app.command("serve")
def serve(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
    config_path: Path = ConfigOption,
) -> None:
    """Run the webhook server, background sync workers, and periodic jobs."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with _cli_errors():
        service = _build_service(config_path, sync_inline=False)
        try:
            asyncio.run(_serve(service))
        except KeyboardInterrupt:
            console.print("Shutting down")


async def _serve(service: RepositoryMirrorService) -> None:
    from .scheduler import MirrorScheduler
    from .webhook.server import WebhookServer

    queue = service.create_sync_queue()
    server = WebhookServer(service.settings.webhook, service.incremental_sync, service.subscriptions)
    scheduler = MirrorScheduler(service)

    await queue.start()
    await server.start()
    scheduler.start()
    console.print(f"[green]✓[/green] Listening for webhooks at {service.settings.webhook.callback_url}")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown()
        await server.stop()
        await queue.stop()
        service.shutdown(wait=False)
        service.store.close()


__all__ = ["app"]

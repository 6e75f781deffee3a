"""Command line entry points for repomirror."""

from typer import Typer

from ..configuration.cli import config_app
from ..github.cli import app as github_app


cli = Typer(help="repomirror command line tools")
cli.add_typer(config_app, name="config")
cli.add_typer(github_app, name="github")

__all__ = ["cli", "config_app", "github_app"]

"""Local mirror of GitHub repositories kept current by sweeps and webhooks."""

__version__ = "0.1.0"

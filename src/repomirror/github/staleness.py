"""Staleness decisions for repository fetching.

The decision is a pure function of the stored repositories and the clock so
both the per-request path and the periodic sweep share it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .models import RemoteRepository, utcnow

DEFAULT_STALENESS_WINDOW = timedelta(hours=6)


def should_fetch(
    repositories: Iterable[RemoteRepository],
    now: datetime,
    window: timedelta = DEFAULT_STALENESS_WINDOW,
) -> bool:
    """Return True when the remote provider must be queried.

    A fetch is needed when nothing is cached, or when no cached repository
    was synced within ``window`` of ``now``.
    """
    cutoff = now - window
    return not any(
        repository.last_sync_at is not None and repository.last_sync_at > cutoff
        for repository in repositories
    )


@dataclass(frozen=True)
class StalenessPolicy:
    """Freshness window applied to one user's repository set."""

    window: timedelta = DEFAULT_STALENESS_WINDOW

    @classmethod
    def from_hours(cls, hours: float) -> "StalenessPolicy":
        return cls(window=timedelta(hours=hours))

    def is_stale(
        self,
        repositories: Iterable[RemoteRepository],
        now: Optional[datetime] = None,
    ) -> bool:
        return should_fetch(repositories, now or utcnow(), self.window)


@dataclass
class SweepStats:
    """Counters reported by one staleness sweep."""

    checked: int = 0
    fetched: int = 0
    skipped: int = 0
    errored: int = 0

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "fetched": self.fetched,
            "skipped": self.skipped,
            "errored": self.errored,
        }


__all__ = [
    "DEFAULT_STALENESS_WINDOW",
    "StalenessPolicy",
    "SweepStats",
    "should_fetch",
]

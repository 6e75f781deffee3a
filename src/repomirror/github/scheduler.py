"""Periodic mirror jobs driven by APScheduler.

Three interval jobs call into :class:`RepositoryMirrorService`:

- staleness sweep over all active users (every ``sweep_interval_hours``)
- subscription of repositories without a webhook (every
  ``subscription_check_interval_minutes``)
- webhook health check and FAILED retry (every ``health_check_interval_hours``)

Service calls block on HTTP, so each job runs them in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .service import RepositoryMirrorService

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "staleness-sweep"
SUBSCRIBE_JOB_ID = "webhook-subscribe-missing"
HEALTH_JOB_ID = "webhook-health-check"


class MirrorScheduler:
    """Registers and runs the mirror's periodic jobs."""

    def __init__(
        self,
        service: RepositoryMirrorService,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._service = service
        self._loop = loop
        self._scheduler = AsyncIOScheduler(event_loop=loop) if loop else AsyncIOScheduler()
        self._running = False
        self._register_jobs()

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    def _register_jobs(self) -> None:
        sync = self._service.settings.sync
        webhook = self._service.settings.webhook
        self._scheduler.add_job(
            self.run_staleness_sweep,
            trigger=IntervalTrigger(hours=sync.sweep_interval_hours),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.run_subscription_check,
            trigger=IntervalTrigger(minutes=webhook.subscription_check_interval_minutes),
            id=SUBSCRIBE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.run_health_check,
            trigger=IntervalTrigger(hours=webhook.health_check_interval_hours),
            id=HEALTH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def start(self) -> None:
        if self._running:
            return
        self._scheduler.start()
        self._running = True
        logger.info("Mirror scheduler started")

    def shutdown(self) -> None:
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Mirror scheduler stopped")

    async def run_staleness_sweep(self) -> Any:
        return await self._run("staleness sweep", self._service.run_staleness_sweep)

    async def run_subscription_check(self) -> Any:
        return await self._run("webhook subscription check", self._service.subscribe_missing_webhooks)

    async def run_health_check(self) -> Any:
        return await self._run("webhook health check", self._service.run_webhook_health_check)

    async def _run(self, name: str, job: Callable[[], Any]) -> Any:
        logger.info(f"Starting {name}")
        try:
            return await asyncio.to_thread(job)
        except Exception as exc:
            logger.error(f"Error during {name}: {exc}", exc_info=True)
            return None


__all__ = ["HEALTH_JOB_ID", "MirrorScheduler", "SUBSCRIBE_JOB_ID", "SWEEP_JOB_ID"]

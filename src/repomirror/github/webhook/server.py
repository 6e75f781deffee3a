"""Inbound GitHub webhook endpoint built on aiohttp.

Deliveries are verified, rate limited, and queued; GitHub gets its response
immediately and a background processor applies each event through
:class:`~repomirror.github.incremental_sync.IncrementalSyncService` before
recording the delivery outcome on the subscription.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from aiohttp import web

from repomirror.configuration.settings import WebhookSettings

from .models import WebhookEvent, WebhookEventType
from .security import WebhookRateLimiter, verify_webhook_signature

if TYPE_CHECKING:
    from ..incremental_sync import IncrementalSyncService
    from .subscription_manager import WebhookSubscriptionManager

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Webhook Server
# ---------------------------------------------------------------------------


class WebhookServer:
    """Receives GitHub webhooks and feeds them to incremental sync.

    Routes:
        POST <settings.endpoint>: webhook deliveries (200, 400, 401, 429, 503)
        GET /health: queue size and counters

    Example:
        >>> server = WebhookServer(settings.webhook, incremental_sync, subscriptions)
        >>> await server.start()
        >>> await server.stop()
    """

    def __init__(
        self,
        settings: WebhookSettings,
        incremental_sync: "IncrementalSyncService",
        subscriptions: "WebhookSubscriptionManager",
    ):
        self.settings = settings
        self.incremental_sync = incremental_sync
        self.subscriptions = subscriptions
        self._secret = settings.require_secret()

        self.event_queue: asyncio.Queue = asyncio.Queue(maxsize=settings.queue_size)
        self.queue_put_timeout = 5.0
        self.rate_limit_prune_interval = 300.0
        self.rate_limiter = WebhookRateLimiter(
            max_requests_per_minute=settings.max_requests_per_minute
        )
        self.counters: Dict[str, int] = {
            "received": 0,
            "queued": 0,
            "processed": 0,
            "failed": 0,
            "invalid_signature": 0,
            "invalid_payload": 0,
            "rate_limited": 0,
        }

        self.app = web.Application()
        self._setup_routes()

        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._processor_task: Optional[asyncio.Task] = None
        self._prune_task: Optional[asyncio.Task] = None

    def _setup_routes(self) -> None:
        self.app.router.add_post(self.settings.endpoint, self.handle_webhook)
        self.app.router.add_get("/health", self.health_check)

    async def handle_webhook(self, request: web.Request) -> web.Response:
        """Verify, rate limit, and queue one delivery.

        The signature is checked before anything else so an unauthenticated
        request never changes state.
        """
        self.counters["received"] += 1
        signature_header = request.headers.get("X-Hub-Signature-256", "")
        event_type = request.headers.get("X-GitHub-Event", "")
        delivery_id = request.headers.get("X-GitHub-Delivery", "unknown")
        hook_id = request.headers.get("X-GitHub-Hook-ID") or None

        body = await request.read()

        if not verify_webhook_signature(signature_header, body, self._secret):
            self.counters["invalid_signature"] += 1
            logger.warning(
                f"Invalid webhook signature for delivery {delivery_id}",
                extra={"event_id": delivery_id, "event_type": event_type},
            )
            return web.Response(status=401, text="Invalid signature")

        try:
            payload = json.loads(body)
            if not isinstance(payload, dict):
                raise ValueError("payload is not a JSON object")
        except ValueError as exc:
            self.counters["invalid_payload"] += 1
            logger.error(
                f"Failed to parse webhook payload for delivery {delivery_id}: {exc}",
                extra={"event_id": delivery_id, "event_type": event_type},
            )
            if hook_id:
                await asyncio.to_thread(
                    self.subscriptions.record_delivery,
                    False,
                    f"Invalid JSON payload: {exc}",
                    webhook_id=hook_id,
                )
            return web.Response(status=400, text="Invalid JSON payload")

        event = WebhookEvent.from_delivery(
            event_id=delivery_id,
            event_type=event_type,
            hook_id=hook_id,
            payload=payload,
        )

        rate_key = event.repository or hook_id or "unknown"
        if not self.rate_limiter.allow_request(rate_key):
            self.counters["rate_limited"] += 1
            return web.Response(status=429, text="Rate limit exceeded")

        try:
            await asyncio.wait_for(self.event_queue.put(event), timeout=self.queue_put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"Event queue full, dropping delivery {delivery_id}",
                extra={"event_id": delivery_id, "queue_size": self.event_queue.qsize()},
            )
            return web.Response(status=503, text="Queue full")

        self.counters["queued"] += 1
        logger.info(
            f"Webhook event queued: {event_type} for {event.repository}",
            extra={"event_id": delivery_id, "event_type": event_type, "repository": event.repository},
        )
        return web.Response(status=200, text="Event queued")

    async def health_check(self, request: web.Request) -> web.Response:
        return web.json_response(self.health())

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "queue_size": self.event_queue.qsize(),
            "max_queue_size": self.settings.queue_size,
            "rate_limiter_tracked_repos": len(self.rate_limiter.request_times),
            **self.counters,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.settings.listen_host, self.settings.listen_port)
        await self.site.start()
        self._processor_task = asyncio.create_task(self._process_events())
        self._prune_task = asyncio.create_task(self._prune_rate_limiter())
        logger.info(
            f"Webhook server listening on {self.settings.listen_host}:{self.settings.listen_port}",
            extra={
                "host": self.settings.listen_host,
                "port": self.settings.listen_port,
                "callback_url": self.settings.callback_url,
            },
        )

    async def stop(self) -> None:
        """Stop accepting deliveries, drain the queue, and release the port."""
        logger.info("Stopping webhook server...")
        if self.site:
            await self.site.stop()

        for task in (self._processor_task, self._prune_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._processor_task = None
        self._prune_task = None

        if not self.event_queue.empty():
            logger.info(f"Draining event queue ({self.event_queue.qsize()} events remaining)...")
            try:
                await asyncio.wait_for(self.drain(), timeout=30.0)
            except asyncio.TimeoutError:
                logger.warning("Queue drain timeout, some events may be lost")

        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        logger.info("Webhook server stopped")

    async def drain(self) -> int:
        """Process every event currently queued; returns how many ran."""
        count = 0
        while not self.event_queue.empty():
            event = self.event_queue.get_nowait()
            try:
                await self.process_event(event)
            finally:
                self.event_queue.task_done()
            count += 1
        return count

    async def _prune_rate_limiter(self) -> None:
        while True:
            await asyncio.sleep(self.rate_limit_prune_interval)
            self.rate_limiter.cleanup_old_entries(max_age_seconds=self.rate_limit_prune_interval)

    async def _process_events(self) -> None:
        while True:
            event = await self.event_queue.get()
            try:
                await self.process_event(event)
            except Exception as exc:
                logger.error(f"Unexpected error in event processor: {exc}", exc_info=True)
            finally:
                self.event_queue.task_done()

    async def process_event(self, event: WebhookEvent) -> None:
        """Apply one event and record the delivery outcome."""
        if event.known_type == WebhookEventType.PING:
            logger.info(
                f"Ping received for hook {event.hook_id}",
                extra={"event_id": event.event_id, "repository": event.repository},
            )
            event.mark_processed()
        else:
            try:
                await asyncio.to_thread(
                    self.incremental_sync.handle_event,
                    event.repository,
                    event.event_type,
                    event.payload,
                )
                event.mark_processed()
            except Exception as exc:
                event.mark_failed(str(exc))
                logger.error(
                    f"Error processing webhook event {event.event_id}: {exc}",
                    extra={
                        "event_id": event.event_id,
                        "event_type": event.event_type,
                        "repository": event.repository,
                    },
                    exc_info=True,
                )

        success = event.processing_error is None
        self.counters["processed" if success else "failed"] += 1
        await asyncio.to_thread(
            self.subscriptions.record_delivery,
            success,
            event.processing_error,
            webhook_id=event.hook_id,
            repository_github_id=event.repository_github_id,
            repository_full_name=event.repository,
        )


__all__ = ["WebhookServer"]

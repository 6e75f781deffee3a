"""Background worker pool for repository sync passes.

Sync passes are blocking (HTTP plus SQLite), so workers run them in threads
off the event loop. Requests for a repository that is already waiting in the
queue are coalesced, and every worker pauses between jobs to spread load on
the provider.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from .sync_orchestrator import RepositorySyncOrchestrator, SyncPassResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncRequest:
    """One queued full sync."""

    repository_id: int
    token: str = field(repr=False)
    reason: str = "discovery"


class BackgroundSyncQueue:
    """asyncio worker pool that runs :meth:`RepositorySyncOrchestrator.sync_repository`."""

    def __init__(
        self,
        orchestrator: RepositorySyncOrchestrator,
        *,
        worker_count: int = 2,
        inter_repository_delay: float = 1.0,
        on_complete: Optional[Callable[[SyncPassResult], None]] = None,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self._orchestrator = orchestrator
        self._worker_count = worker_count
        self._delay = inter_repository_delay
        self._on_complete = on_complete

        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._workers: List[asyncio.Task] = []
        self._pending: Set[int] = set()
        self._pending_lock = threading.Lock()

        self.completed = 0
        self.failed = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    async def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"sync-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info(f"Background sync queue started with {self._worker_count} workers")

    async def stop(self) -> None:
        if not self.running:
            return
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        with self._pending_lock:
            dropped = len(self._pending)
            self._pending.clear()
        logger.info(
            "Background sync queue stopped",
            extra={"dropped_requests": dropped, "completed": self.completed},
        )

    async def join(self) -> None:
        """Wait until every queued request has been processed."""
        if self._queue is not None:
            await self._queue.join()

    def submit(self, request: SyncRequest) -> bool:
        """Queue a request; safe to call from any thread.

        Returns:
            False when the repository is already waiting in the queue
        """
        if self._queue is None or self._loop is None:
            raise RuntimeError("Background sync queue is not started")
        with self._pending_lock:
            if request.repository_id in self._pending:
                logger.debug(
                    f"Sync for repository {request.repository_id} already queued",
                    extra={"repository_id": request.repository_id, "reason": request.reason},
                )
                return False
            self._pending.add(request.repository_id)

        if threading.get_ident() == self._loop_thread:
            self._queue.put_nowait(request)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, request)
        return True

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            request: SyncRequest = await self._queue.get()
            with self._pending_lock:
                self._pending.discard(request.repository_id)
            try:
                result = await asyncio.to_thread(
                    self._orchestrator.sync_repository,
                    request.repository_id,
                    request.token,
                )
                if result.skipped:
                    self.skipped += 1
                else:
                    self.completed += 1
                if self._on_complete is not None:
                    await asyncio.to_thread(self._on_complete, result)
            except Exception as exc:
                self.failed += 1
                logger.error(
                    f"Background sync of repository {request.repository_id} failed: {exc}",
                    extra={"repository_id": request.repository_id, "worker": index},
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

            if self._delay > 0:
                await asyncio.sleep(self._delay)


__all__ = ["BackgroundSyncQueue", "SyncRequest"]

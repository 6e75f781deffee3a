"""Tests for the background sync worker pool."""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from repomirror.github.models import SyncStatus
from repomirror.github.sync_orchestrator import SyncPassResult
from repomirror.github.sync_queue import BackgroundSyncQueue, SyncRequest


def _result(repository_id: int, *, skipped: bool = False) -> SyncPassResult:
    return SyncPassResult(
        repository_id=repository_id,
        status=None if skipped else SyncStatus.COMPLETED,
        skipped=skipped,
    )


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.sync_repository.side_effect = lambda repository_id, token: _result(repository_id)
    return mock


@pytest_asyncio.fixture
async def queue(orchestrator):
    completed = []
    sync_queue = BackgroundSyncQueue(
        orchestrator,
        worker_count=2,
        inter_repository_delay=0,
        on_complete=completed.append,
    )
    sync_queue.completed_results = completed
    await sync_queue.start()
    yield sync_queue
    await sync_queue.stop()


@pytest.mark.asyncio
async def test_processes_submitted_requests(queue, orchestrator, github_token):
    assert queue.submit(SyncRequest(1, github_token))
    assert queue.submit(SyncRequest(2, github_token))

    await asyncio.wait_for(queue.join(), timeout=5)

    synced = sorted(c.args[0] for c in orchestrator.sync_repository.call_args_list)
    assert synced == [1, 2]
    assert queue.completed == 2
    assert sorted(r.repository_id for r in queue.completed_results) == [1, 2]


@pytest.mark.asyncio
async def test_duplicate_pending_request_is_coalesced(orchestrator, github_token):
    sync_queue = BackgroundSyncQueue(orchestrator, worker_count=1, inter_repository_delay=0)
    gate = threading.Event()

    def blocking_sync(repository_id, token):
        gate.wait(timeout=5)
        return _result(repository_id)

    orchestrator.sync_repository.side_effect = blocking_sync
    await sync_queue.start()
    try:
        assert sync_queue.submit(SyncRequest(1, github_token))
        await asyncio.sleep(0.05)
        assert sync_queue.submit(SyncRequest(2, github_token))
        assert not sync_queue.submit(SyncRequest(2, github_token, reason="webhook"))
        assert sync_queue.pending == 1
        gate.set()
        await asyncio.wait_for(sync_queue.join(), timeout=5)
    finally:
        gate.set()
        await sync_queue.stop()

    assert orchestrator.sync_repository.call_count == 2


@pytest.mark.asyncio
async def test_worker_survives_failures(queue, orchestrator, github_token):
    def flaky(repository_id, token):
        if repository_id == 1:
            raise RuntimeError("database is locked")
        return _result(repository_id)

    orchestrator.sync_repository.side_effect = flaky
    queue.submit(SyncRequest(1, github_token))
    queue.submit(SyncRequest(2, github_token))

    await asyncio.wait_for(queue.join(), timeout=5)

    assert queue.failed == 1
    assert queue.completed == 1


@pytest.mark.asyncio
async def test_skipped_results_are_counted(queue, orchestrator, github_token):
    orchestrator.sync_repository.side_effect = lambda repository_id, token: _result(
        repository_id, skipped=True
    )
    queue.submit(SyncRequest(5, github_token))

    await asyncio.wait_for(queue.join(), timeout=5)

    assert queue.skipped == 1
    assert queue.completed == 0


@pytest.mark.asyncio
async def test_submit_from_other_thread(queue, orchestrator, github_token):
    await asyncio.to_thread(queue.submit, SyncRequest(9, github_token))
    await asyncio.sleep(0.05)

    await asyncio.wait_for(queue.join(), timeout=5)

    orchestrator.sync_repository.assert_called_once_with(9, github_token)


def test_submit_before_start_raises(orchestrator, github_token):
    sync_queue = BackgroundSyncQueue(orchestrator)
    with pytest.raises(RuntimeError):
        sync_queue.submit(SyncRequest(1, github_token))


def test_request_repr_hides_token(github_token):
    assert github_token not in repr(SyncRequest(1, github_token))

"""
Tests for the reconcile dispatcher, the cluster watcher and the resync worker.
"""
import asyncio
from collections import Counter

import pytest

from mongo_operator.workers.event_watcher import ClusterWatcher, ReconcileDispatcher
from mongo_operator.workers.reconciliation_worker import ReconciliationWorker

from tests.conftest import NAMESPACE, make_cluster_object


class RecordingReconcile:
    """Reconcile stand-in that tracks overlap per key."""

    def __init__(self, hold: float = 0.05, fail_times: int = 0):
        self.hold = hold
        self.fail_times = fail_times
        self.calls = Counter()
        self.active = Counter()
        self.max_active_per_key = 0
        self.max_active_total = 0

    async def __call__(self, namespace: str, name: str):
        key = f"{namespace}/{name}"
        self.calls[key] += 1
        self.active[key] += 1
        self.max_active_per_key = max(self.max_active_per_key, self.active[key])
        self.max_active_total = max(self.max_active_total, sum(self.active.values()))
        try:
            await asyncio.sleep(self.hold)
            if self.fail_times:
                self.fail_times -= 1
                raise RuntimeError("transient")
        finally:
            self.active[key] -= 1


@pytest.mark.asyncio
async def test_one_pass_per_key_and_coalescing():
    """Triggers during a pass collapse into exactly one rerun."""
    reconcile = RecordingReconcile()
    dispatcher = ReconcileDispatcher(reconcile, max_concurrent=4)
    await dispatcher.start()
    try:
        dispatcher.enqueue(NAMESPACE, "demo")
        await asyncio.sleep(0.01)
        for _ in range(5):
            dispatcher.enqueue(NAMESPACE, "demo")
        await dispatcher.wait_idle()
    finally:
        await dispatcher.stop()

    assert reconcile.calls[f"{NAMESPACE}/demo"] == 2
    assert reconcile.max_active_per_key == 1


@pytest.mark.asyncio
async def test_queued_duplicates_are_dropped():
    reconcile = RecordingReconcile(hold=0.01)
    dispatcher = ReconcileDispatcher(reconcile, max_concurrent=1)
    for _ in range(3):
        dispatcher.enqueue(NAMESPACE, "demo")
    await dispatcher.start()
    try:
        await dispatcher.wait_idle()
    finally:
        await dispatcher.stop()
    assert reconcile.calls[f"{NAMESPACE}/demo"] == 1


@pytest.mark.asyncio
async def test_different_keys_run_concurrently_up_to_limit():
    reconcile = RecordingReconcile()
    dispatcher = ReconcileDispatcher(reconcile, max_concurrent=2)
    await dispatcher.start()
    try:
        for name in ("a", "b", "c", "d"):
            dispatcher.enqueue(NAMESPACE, name)
        await dispatcher.wait_idle()
    finally:
        await dispatcher.stop()

    assert sum(reconcile.calls.values()) == 4
    assert reconcile.max_active_total == 2


@pytest.mark.asyncio
async def test_failed_pass_is_requeued():
    reconcile = RecordingReconcile(hold=0.0, fail_times=2)
    dispatcher = ReconcileDispatcher(reconcile, max_concurrent=1, base_delay=0.01, max_delay=0.02)
    await dispatcher.start()
    try:
        dispatcher.enqueue(NAMESPACE, "demo")
        for _ in range(100):
            if reconcile.calls[f"{NAMESPACE}/demo"] >= 3:
                break
            await asyncio.sleep(0.01)
        await dispatcher.wait_idle()
    finally:
        await dispatcher.stop()
    assert reconcile.calls[f"{NAMESPACE}/demo"] == 3


def _event(event_type: str, generation: int, name: str = "demo") -> dict:
    obj = make_cluster_object(name=name)
    obj["metadata"]["generation"] = generation
    return {"type": event_type, "object": obj}


def test_watcher_filters_seen_generations(test_settings):
    """Status-only updates do not trigger another pass."""
    dispatcher = ReconcileDispatcher(RecordingReconcile())
    watcher = ClusterWatcher(custom_api=None, dispatcher=dispatcher, config=test_settings)

    assert watcher.handle_event(_event("ADDED", 1)) is True
    assert watcher.handle_event(_event("MODIFIED", 1)) is False
    assert watcher.handle_event(_event("MODIFIED", 2)) is True
    assert watcher.handle_event(_event("DELETED", 2)) is False
    assert watcher.handle_event(_event("ADDED", 2)) is True
    assert dispatcher._queued == {f"{NAMESPACE}/demo"}


@pytest.mark.asyncio
async def test_resync_enqueues_every_cluster(reconciler, k8s):
    k8s.custom_api.add(make_cluster_object(name="a"))
    k8s.custom_api.add(make_cluster_object(name="b"))
    dispatcher = ReconcileDispatcher(RecordingReconcile())
    worker = ReconciliationWorker(reconciler, dispatcher, resync_interval=60)

    assert await worker.resync_all() == 2
    assert dispatcher._queued == {f"{NAMESPACE}/a", f"{NAMESPACE}/b"}


@pytest.mark.asyncio
async def test_resync_worker_stops(reconciler, k8s):
    dispatcher = ReconcileDispatcher(RecordingReconcile())
    worker = ReconciliationWorker(reconciler, dispatcher, resync_interval=60)
    task = asyncio.create_task(worker.start())
    await asyncio.sleep(0.01)
    assert worker.running

    await worker.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert not worker.running

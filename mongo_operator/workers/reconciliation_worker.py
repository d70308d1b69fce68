"""
Periodic resync of every MongoDBCluster.

Watch events only fire when a cluster object changes. Drift in the resources
it owns (a deleted Service, a scaled StatefulSet, a replica set that lost
its config) is repaired by requesting a pass for every cluster at a fixed
interval.
"""
import asyncio
from typing import Optional

from mongo_operator.config.logging import get_logger
from mongo_operator.services.reconciler import ClusterReconciler
from mongo_operator.workers.event_watcher import ReconcileDispatcher

logger = get_logger(__name__)


class ReconciliationWorker:
    """
    Enqueues every cluster in the watched scope at a fixed interval.

    The passes themselves run on the dispatcher, so a resync never overlaps
    a pass triggered by a watch event for the same object.
    """

    def __init__(
        self,
        reconciler: ClusterReconciler,
        dispatcher: ReconcileDispatcher,
        resync_interval: int = 300,
    ):
        """
        Initialize reconciliation worker.

        Args:
            reconciler: Used to list cluster objects
            dispatcher: Receives one request per cluster and cycle
            resync_interval: Seconds between resync cycles (default: 300 = 5 minutes)
        """
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.resync_interval = resync_interval
        self.running = False
        self._sleep_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start resync worker (runs until stopped)."""
        self.running = True

        logger.info(
            "reconciliation_worker_started",
            interval_seconds=self.resync_interval,
        )

        while self.running:
            try:
                await self.resync_all()
                delay = self.resync_interval
            except asyncio.CancelledError:
                logger.info("reconciliation_worker_cancelled")
                break
            except Exception as e:
                logger.error(
                    "resync_cycle_error",
                    error=str(e),
                    exc_info=True,
                )
                delay = min(60, self.resync_interval)

            if not self.running:
                break
            try:
                self._sleep_task = asyncio.create_task(asyncio.sleep(delay))
                await self._sleep_task
            except asyncio.CancelledError:
                logger.info("reconciliation_sleep_cancelled")
                break
            finally:
                self._sleep_task = None

        logger.info("reconciliation_worker_stopped")

    async def stop(self):
        """Stop resync worker gracefully."""
        logger.info("stopping_reconciliation_worker")
        self.running = False

        if self._sleep_task and not self._sleep_task.done():
            self._sleep_task.cancel()
            try:
                await self._sleep_task
            except asyncio.CancelledError:
                pass

    async def resync_all(self) -> int:
        """
        Request a pass for every cluster.

        Returns:
            Number of clusters enqueued
        """
        keys = await self.reconciler.list_cluster_keys()
        for namespace, name in keys:
            self.dispatcher.enqueue(namespace, name)

        logger.info(
            "resync_cycle_completed",
            cluster_count=len(keys),
            next_run_in_seconds=self.resync_interval,
        )
        return len(keys)

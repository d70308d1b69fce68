"""
Event watcher and reconcile dispatcher.

The watcher streams MongoDBCluster events from the API server and hands
object keys to the dispatcher. The dispatcher runs reconciliation passes
with these guarantees:

- at most one pass per ``namespace/name`` is in flight at any time;
- triggers arriving while a pass runs collapse into a single rerun;
- different objects reconcile concurrently, up to a fixed worker count;
- a failed pass is requeued with exponential backoff.
"""
import asyncio
from typing import Awaitable, Callable, Dict, Optional, Set

from kubernetes_asyncio import watch

from mongo_operator.config.logging import get_logger
from mongo_operator.config.settings import Settings, settings as default_settings
from mongo_operator.services import metrics
from mongo_operator.utils.retry import backoff_delay

logger = get_logger(__name__)

ReconcileFn = Callable[[str, str], Awaitable[object]]


def split_key(key: str):
    namespace, _, name = key.partition("/")
    return namespace, name


class ReconcileDispatcher:
    """Per-key serializing work queue in front of the reconciler."""

    def __init__(
        self,
        reconcile: ReconcileFn,
        max_concurrent: int = 4,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
    ):
        self.reconcile = reconcile
        self.max_concurrent = max_concurrent
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[str] = set()
        self._running: Set[str] = set()
        self._dirty: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._delayed: Dict[str, asyncio.Task] = {}
        self._workers: list = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def in_flight(self) -> int:
        return len(self._running)

    def enqueue(self, namespace: str, name: str) -> None:
        """Ask for a pass over one object."""
        self._enqueue(f"{namespace}/{name}")

    def _enqueue(self, key: str) -> None:
        if key in self._running:
            # Rerun once the current pass finishes
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)
        self._update_stats()

    def enqueue_after(self, key: str, delay: float) -> None:
        """Requeue ``key`` after ``delay`` seconds, replacing any pending requeue."""
        pending = self._delayed.pop(key, None)
        if pending:
            pending.cancel()
        self._delayed[key] = asyncio.create_task(self._requeue_later(key, delay))

    async def _requeue_later(self, key: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._delayed.pop(key, None)
        self._enqueue(key)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(worker_id)) for worker_id in range(1, self.max_concurrent + 1)
        ]
        logger.info("reconcile_dispatcher_started", workers=self.max_concurrent)

    async def stop(self) -> None:
        """Cancel workers and pending requeues; passes in flight are cancelled too."""
        logger.info("stopping_reconcile_dispatcher", in_flight=len(self._running))
        tasks = self._workers + list(self._delayed.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        logger.info("reconcile_dispatcher_stopped")

    async def wait_idle(self) -> None:
        """Wait until nothing is queued or running. Delayed requeues are not waited for."""
        while True:
            await self._queue.join()
            if not self._queued and not self._running:
                return

    async def _worker(self, worker_id: int) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._running.add(key)
            self._update_stats()
            try:
                await self._process(key, worker_id)
            finally:
                self._running.discard(key)
                if key in self._dirty:
                    self._dirty.discard(key)
                    self._enqueue(key)
                self._update_stats()
                self._queue.task_done()

    async def _process(self, key: str, worker_id: int) -> None:
        namespace, name = split_key(key)
        try:
            await self.reconcile(namespace, name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = backoff_delay(failures, self.base_delay, self.max_delay)
            logger.warning(
                "reconcile_requeued",
                key=key,
                worker_id=worker_id,
                failures=failures,
                delay_seconds=delay,
                error_type=type(e).__name__,
                error=str(e),
            )
            self.enqueue_after(key, delay)
            return
        self._failures.pop(key, None)

    def _update_stats(self) -> None:
        metrics.update_queue_stats(len(self._queued), len(self._running))


class ClusterWatcher:
    """
    Streams MongoDBCluster events into the dispatcher.

    Status writes bump the resourceVersion but not the generation, so events
    for a generation that was already dispatched are dropped. Drift in owned
    resources is picked up by the periodic resync instead.
    """

    def __init__(
        self,
        custom_api,
        dispatcher: ReconcileDispatcher,
        config: Optional[Settings] = None,
    ):
        self.custom_api = custom_api
        self.dispatcher = dispatcher
        self.config = config or default_settings
        self.running = False
        self.connected = False
        self._watch: Optional[watch.Watch] = None
        self._sleep_task: Optional[asyncio.Task] = None
        self._generations: Dict[str, int] = {}

    def handle_event(self, event: dict) -> bool:
        """
        Dispatch one watch event.

        Returns:
            True if a pass was requested
        """
        event_type = event.get("type")
        obj = event.get("object") or {}
        meta = obj.get("metadata") or {}
        namespace = meta.get("namespace", "default")
        name = meta.get("name")
        if not name:
            return False
        key = f"{namespace}/{name}"

        if event_type == "DELETED":
            # Owned resources go with the object through their owner references
            self._generations.pop(key, None)
            logger.info("cluster_deleted", key=key)
            return False

        generation = meta.get("generation", 0)
        if self._generations.get(key) == generation:
            logger.debug("cluster_event_skipped", key=key, event_type=event_type, generation=generation)
            return False

        self._generations[key] = generation
        logger.info("cluster_event", key=key, event_type=event_type, generation=generation)
        self.dispatcher.enqueue(namespace, name)
        return True

    def _stream(self):
        crd = {
            "group": self.config.crd_group,
            "version": self.config.crd_version,
            "plural": self.config.crd_plural,
            "timeout_seconds": self.config.watch_timeout_seconds,
        }
        if self.config.watch_namespace:
            return self._watch.stream(
                self.custom_api.list_namespaced_custom_object, namespace=self.config.watch_namespace, **crd
            )
        return self._watch.stream(self.custom_api.list_cluster_custom_object, **crd)

    async def start(self):
        """Watch until stopped, reconnecting after errors and server-side timeouts."""
        self.running = True
        failures = 0
        logger.info("cluster_watcher_started", namespace=self.config.watch_namespace or "*")

        while self.running:
            self._watch = watch.Watch()
            try:
                self.connected = True
                async for event in self._stream():
                    if event.get("type") == "ERROR":
                        logger.warning("cluster_watch_error_event", object=event.get("raw_object"))
                        break
                    self.handle_event(event)
                failures = 0
                logger.debug("cluster_watch_expired")
            except asyncio.CancelledError:
                logger.info("cluster_watcher_cancelled")
                break
            except Exception as e:
                self.connected = False
                failures += 1
                delay = backoff_delay(failures, 1.0, 30.0)
                logger.error("cluster_watch_failed", error=str(e), failures=failures, retry_in_seconds=delay)
                if not self.running:
                    break
                try:
                    self._sleep_task = asyncio.create_task(asyncio.sleep(delay))
                    await self._sleep_task
                except asyncio.CancelledError:
                    logger.info("cluster_watch_sleep_cancelled")
                    break
                finally:
                    self._sleep_task = None
            finally:
                self._watch.stop()

        self.connected = False
        logger.info("cluster_watcher_stopped")

    async def stop(self):
        """Stop watching."""
        logger.info("stopping_cluster_watcher")
        self.running = False
        if self._watch:
            self._watch.stop()
        if self._sleep_task and not self._sleep_task.done():
            self._sleep_task.cancel()
            try:
                await self._sleep_task
            except asyncio.CancelledError:
                pass

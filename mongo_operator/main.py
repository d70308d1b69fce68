"""
Operator entry point.

One process runs the health/metrics server and, while it holds leadership,
the controllers: the cluster watcher, the periodic resync and the reconcile
dispatcher they feed.
"""
import asyncio
import socket
import sys
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from mongo_operator.api.v1 import health
from mongo_operator.config.kubernetes import KubernetesClientSet
from mongo_operator.config.logging import configure_logging, get_logger
from mongo_operator.config.mongodb import MongoClientFactory
from mongo_operator.config.redis import RedisConnection
from mongo_operator.config.settings import Settings, settings
from mongo_operator.exceptions import OperatorException
from mongo_operator.services.reconciler import ClusterReconciler
from mongo_operator.workers.event_watcher import ClusterWatcher, ReconcileDispatcher
from mongo_operator.workers.leader_election import LeaderElection
from mongo_operator.workers.reconciliation_worker import ReconciliationWorker

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Initialize Sentry for error tracking (production)
if settings.sentry_dsn and settings.is_production:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=settings.app_version,
    )


class Controllers:
    """The watcher, resync worker and dispatcher, started and stopped together."""

    def __init__(self, k8s: KubernetesClientSet, reconciler: ClusterReconciler, config: Settings):
        self.dispatcher = ReconcileDispatcher(
            reconciler.reconcile,
            max_concurrent=config.max_concurrent_reconciles,
            base_delay=config.requeue_base_delay_seconds,
            max_delay=config.requeue_max_delay_seconds,
        )
        self.watcher = ClusterWatcher(k8s.custom_api, self.dispatcher, config)
        self.resync = ReconciliationWorker(reconciler, self.dispatcher, config.resync_interval_seconds)
        self._tasks = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self):
        if self._tasks:
            return
        await self.dispatcher.start()
        self._tasks = [
            asyncio.create_task(self.watcher.start()),
            asyncio.create_task(self.resync.start()),
        ]
        logger.info("controllers_started")

    async def stop(self):
        if not self._tasks:
            return
        await self.watcher.stop()
        await self.resync.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.dispatcher.stop()
        logger.info("controllers_stopped")


async def run_with_leader_election(controllers: Controllers, leader_election: LeaderElection, lease_seconds: int):
    """Run the controllers only while this instance holds the lease."""
    renew_every = max(1, lease_seconds // 3)
    while True:
        try:
            is_leader = await leader_election.acquire_leadership()

            if is_leader:
                if not controllers.running:
                    logger.info("became_leader_starting_controllers", instance_id=leader_election.instance_id)
                    await controllers.start()
                await asyncio.sleep(renew_every)
                if not await leader_election.renew_lease():
                    logger.info("lost_leadership_stopping_controllers", instance_id=leader_election.instance_id)
                    await controllers.stop()
            else:
                if controllers.running:
                    logger.info("lost_leadership_stopping_controllers", instance_id=leader_election.instance_id)
                    await controllers.stop()
                await asyncio.sleep(renew_every)
        except asyncio.CancelledError:
            await controllers.stop()
            await leader_election.release_leadership()
            break
        except Exception as e:
            logger.error("leader_election_error", error=str(e))
            await asyncio.sleep(renew_every)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.
    Builds the client handles at startup and tears everything down on shutdown.
    """
    logger.info(
        "operator_starting",
        version=settings.app_version,
        environment=settings.environment,
        watch_namespace=settings.watch_namespace or "*",
    )

    background_tasks = []
    redis: Optional[RedisConnection] = None

    try:
        k8s = await KubernetesClientSet.create(
            kubeconfig_path=settings.kubeconfig_path,
            in_cluster=settings.k8s_in_cluster,
        )
        reconciler = ClusterReconciler(k8s, MongoClientFactory(), settings)
        controllers = Controllers(k8s, reconciler, settings)

        if settings.leader_election_enabled:
            logger.info("initializing_redis_connection")
            redis = RedisConnection(str(settings.redis_url), settings.redis_max_connections)
            await redis.connect()

            instance_id = f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
            leader_election = LeaderElection(redis, instance_id, settings.leader_lease_seconds)
            background_tasks.append(
                asyncio.create_task(
                    run_with_leader_election(controllers, leader_election, settings.leader_lease_seconds)
                )
            )
        else:
            logger.info("leader_election_disabled")
            await controllers.start()

        app.state.k8s = k8s
        app.state.controllers = controllers
        logger.info("operator_started", leader_election=settings.leader_election_enabled)

    except Exception as e:
        logger.error("operator_startup_failed", error=str(e))
        raise

    yield

    logger.info("operator_shutting_down")

    for task in background_tasks:
        task.cancel()
    if background_tasks:
        try:
            await asyncio.wait_for(asyncio.gather(*background_tasks, return_exceptions=True), timeout=30.0)
        except asyncio.TimeoutError:
            logger.warning("background_tasks_shutdown_timeout")

    await controllers.stop()

    if redis:
        try:
            await redis.close()
        except Exception as e:
            logger.error("redis_close_error", error=str(e))

    await k8s.close()
    logger.info("operator_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Kubernetes operator for sharded MongoDB clusters",
    docs_url=None,
    redoc_url=None,
    lifespan=lifespan,
)


@app.exception_handler(OperatorException)
async def operator_exception_handler(request: Request, exc: OperatorException) -> JSONResponse:
    """Handle operator exceptions raised while serving a probe."""
    logger.error(
        "operator_exception",
        path=request.url.path,
        error=exc.message,
        reason=exc.reason,
        details=exc.details,
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": {"message": exc.message, "reason": exc.reason}},
    )


# Initialize Prometheus metrics
if settings.prometheus_enabled:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")


app.include_router(health.router, prefix="/health", tags=["Health"])


def run():
    """Serve the health API and run the controllers until interrupted."""
    import uvicorn

    try:
        uvicorn.run(
            "mongo_operator.main:app",
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    except (KeyboardInterrupt, SystemExit):
        logger.info("operator_stopped")
    finally:
        sys.exit(0)


if __name__ == "__main__":
    run()

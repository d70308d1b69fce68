"""
Structured logging for the operator, built on structlog.

Every event carries the operator identity (app, version, pod) and the watch
scope. Inside a reconciliation pass ``cluster_context`` binds the cluster
being reconciled, so events logged by the builders, bootstrappers and
resource manager are attributable without passing names around.
Production renders one JSON object per line; elsewhere a console renderer.
"""
import logging
import socket
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

from mongo_operator.config.settings import settings

# Libraries whose INFO output drowns the reconcile events
QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "kubernetes_asyncio": logging.WARNING,
    "aiohttp": logging.WARNING,
    "pymongo": logging.WARNING,
    "motor": logging.WARNING,
}

_POD_NAME = socket.gethostname()


def add_operator_identity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp which operator replica, for which scope, emitted the event."""
    event_dict.setdefault("app", settings.app_name)
    event_dict.setdefault("version", settings.app_version)
    event_dict.setdefault("pod", _POD_NAME)
    event_dict.setdefault("watch_scope", settings.watch_namespace or "*")
    return event_dict


def add_cluster_key(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Join bound namespace and cluster into a single ``key`` field matching the dispatcher's keys."""
    namespace = event_dict.get("namespace")
    cluster = event_dict.get("cluster")
    if namespace and cluster and "key" not in event_dict:
        event_dict["key"] = f"{namespace}/{cluster}"
    return event_dict


def add_severity_level(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    if "level" in event_dict:
        event_dict["severity"] = event_dict["level"].upper()
    return event_dict


@contextmanager
def cluster_context(namespace: str, name: str, **extra: Any) -> Iterator[None]:
    """Bind the cluster under reconciliation to every event logged in this task."""
    with structlog.contextvars.bound_contextvars(cluster=name, namespace=namespace, **extra):
        yield


def configure_logging(json_output: Optional[bool] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        json_output: Force JSON (True) or console (False) rendering; by default
            JSON is used in production only
    """
    if json_output is None:
        json_output = settings.is_production

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_operator_identity,
        add_cluster_key,
        add_severity_level,
    ]
    renderer: Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=shared_processors + [renderer],  # type: ignore
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger, typically for ``__name__``."""
    return structlog.get_logger(name)

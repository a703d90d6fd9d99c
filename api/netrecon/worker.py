"""RQ worker entrypoint with Prometheus metrics export."""
from __future__ import annotations

import logging
from os import getenv

from prometheus_client import start_http_server
from rq import SimpleWorker, Worker

from netrecon import metrics as _metrics  # noqa: F401  registers metric families
from netrecon.config import settings
from netrecon.db import get_redis
from netrecon.logging_config import setup_logging

setup_logging(service="netrecon-worker")
logger = logging.getLogger(__name__)


def _start_metrics_server() -> None:
    port = int(getenv("NETRECON_WORKER_METRICS_PORT", "8003"))
    start_http_server(port, addr="0.0.0.0")
    logger.info("Worker metrics endpoint started on :%s/metrics", port)


def main() -> None:
    _start_metrics_server()
    # Forked job processes would keep their metric updates to themselves, so
    # jobs run in the worker process unless told otherwise.
    worker_mode = getenv("NETRECON_WORKER_EXECUTION_MODE", "simple").strip().lower()
    worker_cls = SimpleWorker if worker_mode == "simple" else Worker
    logger.info("Starting worker with execution_mode=%s (%s)", worker_mode, worker_cls.__name__)
    worker = worker_cls([settings.queue_name], connection=get_redis())
    # Delayed post-deploy triggers are moved onto the queue by the scheduler
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()

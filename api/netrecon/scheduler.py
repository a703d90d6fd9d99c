"""Scheduler process: periodic drift checks plus health and metrics endpoints.

Usage:
    python -m netrecon.scheduler
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from netrecon import db
from netrecon.config import settings
from netrecon.logging_config import setup_logging
from netrecon.metrics import get_metrics
from netrecon.tasks.network_reconciliation import network_drift_monitor
from netrecon.utils.supervisor import supervised_task

setup_logging(service="netrecon-scheduler")
logger = logging.getLogger(__name__)

MONITORS = [
    ("network_drift_monitor", network_drift_monitor),
]

_monitor_tasks: list[asyncio.Task] = []


async def healthz(request: Request) -> JSONResponse:
    """Liveness plus running monitor counts."""
    active = sum(1 for t in _monitor_tasks if not t.done())
    return JSONResponse(
        {
            "status": "ok",
            "service": "netrecon-scheduler",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "monitors": {"active": active, "total": len(_monitor_tasks)},
            "enabled": settings.enabled,
            "isolation_mode": settings.isolation_mode,
        }
    )


async def metrics(_: Request) -> Response:
    """Prometheus metrics endpoint for the scheduler process."""
    content, content_type = get_metrics()
    return Response(content=content, media_type=content_type)


async def _wait_for_database(attempts: int = 30, delay: float = 2.0) -> None:
    for attempt in range(attempts):
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection verified")
            return
        except Exception as e:
            if attempt == attempts - 1:
                logger.error(f"Database not reachable after {attempts} attempts: {e}")
                raise
            logger.warning(f"Database not ready (attempt {attempt + 1}/{attempts}), retrying in {delay:.0f}s...")
            await asyncio.sleep(delay)


async def startup() -> None:
    logger.info("Starting network reconciliation scheduler")
    await _wait_for_database()
    db.init_db()

    for name, monitor_fn in MONITORS:
        task = asyncio.create_task(supervised_task(monitor_fn, name=name), name=f"supervised_{name}")
        _monitor_tasks.append(task)
    logger.info(f"Started {len(_monitor_tasks)} supervised monitor tasks")


async def shutdown() -> None:
    logger.info("Shutting down network reconciliation scheduler")
    for task in _monitor_tasks:
        task.cancel()
    if _monitor_tasks:
        await asyncio.gather(*_monitor_tasks, return_exceptions=True)
    _monitor_tasks.clear()
    logger.info("Monitors stopped")


@asynccontextmanager
async def lifespan(app: Starlette):
    await startup()
    try:
        yield
    finally:
        await shutdown()


app = Starlette(
    routes=[Route("/healthz", healthz), Route("/metrics", metrics)],
    lifespan=lifespan,
)


def main() -> None:
    import uvicorn

    uvicorn.run(
        "netrecon.scheduler:app",
        host="0.0.0.0",
        port=settings.metrics_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

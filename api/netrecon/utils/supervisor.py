"""Restart wrapper for the scheduler's long-running monitors.

A monitor that raises is restarted after an exponential backoff. Crashes
are counted consecutively: a run that stayed up for ``healthy_after``
seconds starts the count again. Cancellation is always propagated.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

MonitorFactory = Callable[[], Coroutine[Any, Any, None]]


def _backoff(crashes: int, base: float, cap: float) -> float:
    return min(base * 2 ** (crashes - 1), cap)


async def supervised_task(
    coro_factory: MonitorFactory,
    name: str,
    max_restarts: int = 10,
    base_backoff: float = 5.0,
    max_backoff: float = 300.0,
    healthy_after: float = 600.0,
) -> None:
    """Keep a monitor coroutine running.

    Args:
        coro_factory: Returns a fresh coroutine for every run
        name: Monitor name used in log lines
        max_restarts: Consecutive crashes after which the monitor is abandoned
        base_backoff: Delay before the first restart, doubled per crash
        max_backoff: Upper bound on the restart delay
        healthy_after: Uptime after which earlier crashes are forgotten
    """
    crashes = 0
    while True:
        started = time.monotonic()
        logger.info(f"Monitor {name} starting")
        try:
            await coro_factory()
        except asyncio.CancelledError:
            logger.info(f"Monitor {name} cancelled")
            raise
        except Exception as e:
            uptime = time.monotonic() - started
            crashes = 1 if uptime >= healthy_after else crashes + 1
            logger.error(
                f"Monitor {name} crashed after {uptime:.0f}s ({crashes}/{max_restarts}): {e}",
                exc_info=True,
            )
            if crashes >= max_restarts:
                logger.critical(f"Monitor {name} crashed {crashes} times in a row, giving up")
                return
            delay = _backoff(crashes, base_backoff, max_backoff)
            logger.info(f"Monitor {name} restarting in {delay:.0f}s")
            await asyncio.sleep(delay)
        else:
            logger.warning(f"Monitor {name} returned, not restarting")
            return

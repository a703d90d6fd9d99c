"""Duration tracking for reconciliation work.

``TimedOperation`` observes one histogram sample and writes one structured
log line per block. The histogram's outcome label (``status`` by default) is
filled in on exit from whether the block raised.

    with TimedOperation(
        reconcile_task_duration,
        labels={"kind": task.kind},
        event="network_reconcile",
        extras={"task_id": task.id},
    ):
        run()
"""
from __future__ import annotations

import logging
import time

logger = logging.getLogger(__name__)


class TimedOperation:
    def __init__(
        self,
        histogram=None,
        *,
        labels: dict[str, str] | None = None,
        outcome_label: str | None = "status",
        event: str = "timed_operation",
        extras: dict | None = None,
    ):
        self.histogram = histogram
        self.labels = dict(labels or {})
        self.outcome_label = outcome_label
        self.event = event
        self.extras = extras or {}
        self.elapsed: float = 0.0
        self.success: bool = True
        self._started: float | None = None

    @property
    def duration_ms(self) -> int:
        return int(self.elapsed * 1000)

    def __enter__(self) -> "TimedOperation":
        self._started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed = time.monotonic() - (self._started or time.monotonic())
        self.success = exc_type is None
        self._observe()

        fields = {
            "event": self.event,
            "duration_ms": self.duration_ms,
            "success": self.success,
            **self.labels,
            **self.extras,
        }
        if exc_val is not None:
            fields["error"] = str(exc_val)
        level = logging.INFO if self.success else logging.WARNING
        logger.log(level, "%s completed in %dms", self.event, self.duration_ms, extra=fields)
        return False

    def _observe(self) -> None:
        if self.histogram is None:
            return
        labels = dict(self.labels)
        if self.outcome_label:
            labels[self.outcome_label] = "success" if self.success else "error"
        try:
            self.histogram.labels(**labels).observe(self.elapsed)
        except Exception as e:
            # Label mismatches must not fail the reconciliation itself
            logger.warning("Failed to record %s duration: %s", self.event, e)

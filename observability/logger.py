"""
Observability Layer: structured execution events and node timings.

Every event is one JSON line on the ``observability`` logger, tagged with the
execution, workflow and trace ids. ``measure`` times an operation and keeps a
running tally per operation name so a run can report where its time went.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("observability")


class Observability:
    """Structured event log for one execution."""

    def __init__(self, execution_id: str | None = None, workflow_id: str | None = None):
        self.execution_id = execution_id or str(uuid.uuid4())
        self.workflow_id = workflow_id or ""
        self.trace_id = str(uuid.uuid4())
        self._timings: dict[str, dict[str, float]] = {}

    def log_event(self, event_type: str, payload: dict[str, Any], level: str = "INFO") -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "trace_id": self.trace_id,
            "event": event_type,
            "level": level,
            **payload,
        }
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(json.dumps(entry, default=str))

    @contextmanager
    def measure(self, operation: str, metadata: dict[str, Any] | None = None):
        """Time the wrapped block and log an ``execution_metric`` event.

        A block left through cancellation is recorded as failed with
        error ``cancelled``.
        """
        start_time = time.perf_counter()
        meta = metadata or {}
        success = False
        error: str | None = "cancelled"
        try:
            yield
            success = True
            error = None
        except Exception as e:
            error = str(e) or type(e).__name__
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self._record(operation, duration_ms, success)
            self.log_event(
                "execution_metric",
                {
                    "operation": operation,
                    "duration_ms": round(duration_ms, 2),
                    "success": success,
                    "error": error,
                    **meta,
                },
            )

    def timing_summary(self) -> dict[str, dict[str, float]]:
        """Per-operation ``count``, ``failures`` and ``total_ms`` so far."""
        return {
            operation: {**tally, "total_ms": round(tally["total_ms"], 2)}
            for operation, tally in self._timings.items()
        }

    def _record(self, operation: str, duration_ms: float, success: bool) -> None:
        tally = self._timings.setdefault(operation, {"count": 0, "failures": 0, "total_ms": 0.0})
        tally["count"] += 1
        tally["total_ms"] += duration_ms
        if not success:
            tally["failures"] += 1

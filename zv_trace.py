"""
Request-scoped tracing for zonal lookups.

Provides a thread-local TraceContext that records:
  - Per-stage timing (geocode, dataset, match, facilities, highlight)
  - Per-upstream-attempt timing (service, endpoint host, attempt index,
    elapsed_ms, HTTP status, outcome such as "ok" / "fallback" / "cancelled")
  - End-of-request summary (total_elapsed, total attempts, outcome)

Usage:
    from zv_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

Worker threads do not inherit thread-locals; pass the parent trace and
call set_trace() at the top of the thread body.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class UpstreamAttempt:
    """One HTTP attempt against one endpoint of a fallback chain."""
    service: str          # "overpass" | "nominatim" | "manifest" | "dataset"
    endpoint: str         # endpoint host
    caller: str           # e.g. "facilities.amenity", "anchor"
    attempt: int          # 0-based position in the fallback chain
    elapsed_ms: int
    status_code: int      # 0 when no response (network error, cancel)
    outcome: str = "ok"   # "ok" | "fallback" | "cancelled" | "cache_hit"
    stage: str = ""


@dataclass
class StageRecord:
    """One pipeline stage."""
    stage_name: str
    elapsed_ms: int = 0
    attempts: int = 0
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single user action."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    attempts: List[UpstreamAttempt] = field(default_factory=list)
    _current_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            in_stage = sum(1 for a in self.attempts if a.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                attempts=in_stage,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)

        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms upstream=%d%s",
            self.trace_id, stage_name, status, rec.elapsed_ms, in_stage, err_info,
        )

    def record_attempt(
        self,
        service: str,
        endpoint: str,
        caller: str,
        attempt: int,
        elapsed_ms: int,
        status_code: int,
        outcome: str = "ok",
    ):
        rec = UpstreamAttempt(
            service=service,
            endpoint=endpoint,
            caller=caller,
            attempt=attempt,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            outcome=outcome,
            stage=self._current_stage,
        )
        with self._lock:
            self.attempts.append(rec)
        logger.info(
            "  [upstream] trace=%s stage=%s svc=%s ep=%s caller=%s try=%d ms=%d http=%d %s",
            self.trace_id, self._current_stage or "-", service, endpoint,
            caller, attempt, elapsed_ms, status_code, outcome,
        )

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        with self._lock:
            errored = [s for s in self.stages if s.error_class]
            fallbacks = sum(1 for a in self.attempts if a.outcome == "fallback")
            total = len(self.attempts)
            stages = len(self.stages)
        if errored and len(errored) == stages:
            outcome = "error"
        elif errored:
            outcome = "partial"
        elif not stages:
            outcome = "empty"
        else:
            outcome = "success"
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "upstream_attempts": total,
            "fallbacks": fallbacks,
            "stages": stages,
            "stages_errored": len(errored),
            "final_outcome": outcome,
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d upstream=%d fallbacks=%d "
            "stages=%d errored=%d outcome=%s",
            s["trace_id"], s["total_elapsed_ms"], s["upstream_attempts"],
            s["fallbacks"], s["stages"], s["stages_errored"], s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current action's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None

"""
Per-request trace for neighborhood searches.

A single /api/neighborhood-finder request turns into a few dozen Google
Maps calls spread across worker threads: a reverse geocode, the text-search
battery, every nearby-search page and the Distance Matrix batches.  A
FinderTrace collects, for that one request:
  - each orchestration stage (region, discover, reconcile, filter) with
    its wall time and how many Maps calls it made
  - each Maps call (endpoint, latency, HTTP status, provider status)
  - each upstream failure the finder recovered from, by component and kind

The active trace lives in a thread-local.  Pool threads start with no
trace, so work submitted to an executor is wrapped with with_trace().

Usage:
    trace = FinderTrace(trace_id=request_id)
    set_trace(trace)
    try:
        ...
        trace.log_summary()
    finally:
        clear_trace()
"""

import functools
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Provider statuses that mean the request itself worked.
_PROVIDER_OK = ("OK", "ZERO_RESULTS")


@dataclass
class MapsCall:
    endpoint: str           # geocode, reverse_geocode, text_search, nearby_search, distance_matrix
    elapsed_ms: int
    http_status: int
    provider_status: str = ""
    stage: str = ""

    @property
    def failed(self) -> bool:
        return self.http_status != 200 or self.provider_status not in _PROVIDER_OK


@dataclass
class StageTiming:
    name: str
    elapsed_ms: int = 0
    maps_calls: int = 0
    error: str = ""         # "ExcType: message" if the stage raised


@dataclass
class FinderTrace:
    """Timing and Maps call log for one neighborhood search."""
    trace_id: str
    started: float = field(default_factory=time.time)
    stages: List[StageTiming] = field(default_factory=list)
    calls: List[MapsCall] = field(default_factory=list)
    recovered: Counter = field(default_factory=Counter)
    stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    # ------------------------------------------------------------------
    # Stages (orchestrator thread only)
    # ------------------------------------------------------------------

    def start_stage(self, name: str) -> None:
        self.stage = name

    def end_stage(self) -> None:
        self.stage = ""

    def record_stage(
        self,
        name: str,
        start_ts: float,
        end_ts: float,
        exc: Optional[BaseException] = None,
    ) -> StageTiming:
        with self._lock:
            made = sum(1 for c in self.calls if c.stage == name)
        timing = StageTiming(
            name=name,
            elapsed_ms=int(round((end_ts - start_ts) * 1000)),
            maps_calls=made,
            error=f"{type(exc).__name__}: {str(exc)[:200]}" if exc is not None else "",
        )
        self.stages.append(timing)

        logger.info(
            "  [stage] trace=%s %s %s %dms maps_calls=%d%s",
            self.trace_id,
            name,
            "ERR" if timing.error else "OK",
            timing.elapsed_ms,
            made,
            f" err={timing.error}" if timing.error else "",
        )
        return timing

    # ------------------------------------------------------------------
    # Calls and recovered failures (any thread)
    # ------------------------------------------------------------------

    def record_call(
        self,
        endpoint: str,
        elapsed_ms: int,
        http_status: int,
        provider_status: str = "",
    ) -> None:
        call = MapsCall(
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            http_status=http_status,
            provider_status=provider_status,
            stage=self.stage,
        )
        with self._lock:
            self.calls.append(call)
        logger.debug(
            "  [api] trace=%s stage=%s %s %dms http=%d status=%s",
            self.trace_id, call.stage or "-", endpoint, elapsed_ms,
            http_status, provider_status or "-",
        )

    def note_recovered(self, component: str, kind: str) -> None:
        with self._lock:
            self.recovered[f"{component}:{kind}"] += 1

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            calls = list(self.calls)
            recovered = dict(self.recovered)
        failed = sum(1 for c in calls if c.failed)

        if any(s.error for s in self.stages):
            outcome = "error"
        elif failed or recovered:
            outcome = "partial"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "elapsed_ms": int((time.time() - self.started) * 1000),
            "maps_calls": len(calls),
            "failed_calls": failed,
            "calls_by_endpoint": dict(Counter(c.endpoint for c in calls)),
            "recovered": recovered,
            "outcome": outcome,
        }

    def log_summary(self) -> None:
        s = self.summary()
        logger.info(
            "[trace-summary] trace=%s %dms maps_calls=%d failed=%d recovered=%d outcome=%s",
            s["trace_id"],
            s["elapsed_ms"],
            s["maps_calls"],
            s["failed_calls"],
            sum(s["recovered"].values()),
            s["outcome"],
        )

    def to_dict(self) -> Dict[str, Any]:
        """Summary plus per-stage breakdown, for debug output."""
        out = self.summary()
        out["stages"] = [
            {
                "name": s.name,
                "elapsed_ms": s.elapsed_ms,
                "maps_calls": s.maps_calls,
                "error": s.error or None,
            }
            for s in self.stages
        ]
        return out


# =============================================================================
# Active trace (thread-local)
# =============================================================================

_active = threading.local()


def get_trace() -> Optional[FinderTrace]:
    return getattr(_active, "trace", None)


def set_trace(trace: Optional[FinderTrace]) -> None:
    _active.trace = trace


def clear_trace() -> None:
    _active.trace = None


def with_trace(fn: Callable) -> Callable:
    """Wrap *fn* so it runs under the caller's trace on a worker thread."""
    parent = get_trace()

    @functools.wraps(fn)
    def _run(*args, **kwargs):
        set_trace(parent)
        try:
            return fn(*args, **kwargs)
        finally:
            clear_trace()

    return _run

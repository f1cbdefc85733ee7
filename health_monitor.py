"""
Passive health tracking for CommuteScout's upstream dependencies.

Nothing here probes anything: every Google Maps request is billed, so the
status shown on /healthz is derived only from requests the finder already
made.  Two signals are kept per process:

  call outcomes      GoogleMapsClient._traced_get reports every request.
                     The last WINDOW outcomes per service give a status of
                     healthy / degraded / down (or unknown before any call).
  recovered failures The finder keeps going when one text query, nearby
                     page or matrix batch fails.  Each such recovery bumps a
                     (component, kind) counter, so a provider outage that
                     only ever produces empty result lists is still visible.

All callers share the module-level monitor (get_monitor()).
"""

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

from cs_trace import get_trace

logger = logging.getLogger(__name__)

# Outcomes remembered per service.
WINDOW = 50

# Success-rate cut-offs.
HEALTHY_AT = 0.95
DEGRADED_AT = 0.70

# Kinds used with record_failure().
UPSTREAM_TRANSPORT = "upstream_transport"
UPSTREAM_STATUS = "upstream_status"
MALFORMED_RESPONSE = "malformed_response"
DATA_SOURCE_UNAVAILABLE = "data_source_unavailable"

MONITORED_SERVICES = ("google_maps",)


@dataclass(frozen=True)
class CallOutcome:
    at: float
    ok: bool
    latency_ms: int
    error: Optional[str] = None


@dataclass
class ServiceStatus:
    service: str
    status: str                     # healthy | degraded | down | unknown
    sample_size: int = 0
    success_rate: Optional[float] = None
    latency_ms: int = 0             # mean over the window
    last_seen: Optional[str] = None # ISO-8601, newest outcome
    error: Optional[str] = None     # newest recorded error

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status,
            "sample_size": self.sample_size,
            "latency_ms": self.latency_ms,
        }
        if self.success_rate is not None:
            d["success_rate"] = self.success_rate
        if self.last_seen:
            d["last_seen"] = self.last_seen
        if self.error:
            d["error"] = self.error
        return d


def classify(success_rate: float) -> str:
    if success_rate >= HEALTHY_AT:
        return "healthy"
    if success_rate >= DEGRADED_AT:
        return "degraded"
    return "down"


class HealthMonitor:
    """Rolling call outcomes plus recovered-failure counters, thread-safe."""

    def __init__(self, window: int = WINDOW) -> None:
        self._window = window
        self._lock = threading.Lock()
        self._outcomes: Dict[str, Deque[CallOutcome]] = {
            name: deque(maxlen=window) for name in MONITORED_SERVICES
        }
        self._recovered: Counter = Counter()

    def record_call(
        self,
        service: str,
        success: bool,
        latency_ms: int,
        error: Optional[str] = None,
    ) -> None:
        outcome = CallOutcome(at=time.time(), ok=success, latency_ms=latency_ms, error=error)
        with self._lock:
            self._outcomes.setdefault(service, deque(maxlen=self._window)).append(outcome)

    def record_failure(self, component: str, kind: str) -> None:
        with self._lock:
            self._recovered[(component, kind)] += 1

    def failure_counts(self) -> Dict[str, Dict[str, int]]:
        """``{component: {kind: count}}``, components and kinds sorted."""
        with self._lock:
            counted = sorted(self._recovered.items())
        nested: Dict[str, Dict[str, int]] = {}
        for (component, kind), n in counted:
            nested.setdefault(component, {})[kind] = n
        return nested

    def service_status(self, service: str) -> ServiceStatus:
        with self._lock:
            outcomes = list(self._outcomes.get(service, ()))
        if not outcomes:
            return ServiceStatus(service=service, status="unknown")

        n = len(outcomes)
        rate = sum(1 for o in outcomes if o.ok) / n
        newest_error = next(
            (o.error for o in reversed(outcomes) if not o.ok and o.error), None,
        )
        newest = max(o.at for o in outcomes)
        return ServiceStatus(
            service=service,
            status=classify(rate),
            sample_size=n,
            success_rate=round(rate, 3),
            latency_ms=int(sum(o.latency_ms for o in outcomes) / n),
            last_seen=datetime.fromtimestamp(newest, tz=timezone.utc).isoformat(),
            error=newest_error,
        )

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            services = sorted(self._outcomes)
        return {name: self.service_status(name).to_dict() for name in services}

    def reset(self) -> None:
        with self._lock:
            for outcomes in self._outcomes.values():
                outcomes.clear()
            self._recovered.clear()


_monitor = HealthMonitor()


def get_monitor() -> HealthMonitor:
    return _monitor


def record_call(
    service: str,
    success: bool,
    latency_ms: int,
    error: Optional[str] = None,
) -> None:
    _monitor.record_call(service, success, latency_ms, error)


def record_failure(component: str, kind: str) -> None:
    """Count one recovered upstream failure, process-wide and on the active trace."""
    _monitor.record_failure(component, kind)
    trace = get_trace()
    if trace:
        trace.note_recovered(component, kind)
    logger.debug("[health] recovered %s failure in %s", kind, component)


def get_status() -> Dict[str, Dict[str, Any]]:
    return _monitor.snapshot()


def get_failure_counts() -> Dict[str, Dict[str, int]]:
    return _monitor.failure_counts()

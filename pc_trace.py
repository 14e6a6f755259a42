"""
Per-assessment tracing.

A TraceContext collects two kinds of record while one assessment runs:

  stages     named units of work (residential, education, ..., risk_analysis)
             with wall time, error and the number of outbound calls made
  api calls  every outbound request (Overpass, Supabase, link resolver) with
             latency, HTTP status and a provider status such as "cache_hit"

The assessment fans its stages out to worker threads that share one trace,
so the stage a call belongs to is tracked per thread, and appends are
locked.

    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    try:
        evaluate_parcel(...)
    finally:
        ctx.log_summary()
        clear_trace()

Clients record calls with:

    trace = get_trace()
    if trace:
        trace.record_api_call(service, endpoint, elapsed_ms, status_code)
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CACHE_HIT = "cache_hit"
STALE_CACHE = "stale_cache"


@dataclass
class APICallRecord:
    service: str
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    stage: str = ""

    @property
    def from_cache(self) -> bool:
        return self.provider_status in (CACHE_HIT, STALE_CACHE)


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""

    @property
    def ok(self) -> bool:
        return not self.error_class


@dataclass
class TraceContext:
    """Timing data for a single assessment request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    model_version: str = ""
    _lock: Any = field(default_factory=threading.Lock, repr=False, compare=False)
    _local: Any = field(default_factory=threading.local, repr=False, compare=False)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @property
    def current_stage(self) -> str:
        return getattr(self._local, "stage", "")

    def start_stage(self, name: str) -> None:
        """Attribute this thread's following API calls to *name*."""
        self._local.stage = name

    def end_stage(self) -> None:
        self._local.stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ) -> StageRecord:
        with self._lock:
            calls = sum(1 for c in self.api_calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                api_calls_made=calls,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)
        if self.current_stage == stage_name:
            self.end_stage()

        if rec.ok:
            logger.info("  [stage] trace=%s %s OK %dms calls=%d",
                        self.trace_id, stage_name, rec.elapsed_ms, calls)
        else:
            logger.info("  [stage] trace=%s %s ERR %dms calls=%d %s: %s",
                        self.trace_id, stage_name, rec.elapsed_ms, calls,
                        error_class, error_message)
        return rec

    # ------------------------------------------------------------------
    # Outbound calls
    # ------------------------------------------------------------------

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ) -> APICallRecord:
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            stage=self.current_stage,
        )
        with self._lock:
            self.api_calls.append(rec)
        logger.debug(
            "  [api] trace=%s stage=%s %s/%s %dms http=%d %s",
            self.trace_id, rec.stage or "-", service, endpoint,
            elapsed_ms, status_code, provider_status,
        )
        return rec

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def outcome(self) -> str:
        """success / partial / error / empty, from the recorded stages."""
        ok = sum(1 for s in self.stages if s.ok)
        failed = len(self.stages) - ok
        if not self.stages:
            return "empty"
        if not failed:
            return "success"
        return "partial" if ok else "error"

    def summary_dict(self) -> Dict[str, Any]:
        with self._lock:
            calls = list(self.api_calls)
            stages = list(self.stages)
        summary = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "total_api_calls": len(calls),
            "calls_by_service": dict(Counter(c.service for c in calls)),
            "cache_hits": sum(1 for c in calls if c.provider_status == CACHE_HIT),
            "stale_responses": sum(1 for c in calls if c.provider_status == STALE_CACHE),
            "stages_completed": sum(1 for s in stages if s.ok),
            "stages_errored": sum(1 for s in stages if not s.ok),
            "final_outcome": self.outcome(),
        }
        if self.model_version:
            summary["model_version"] = self.model_version
        return summary

    def log_summary(self) -> None:
        """One structured line per assessment."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d cache_hits=%d "
            "stale=%d completed=%d errored=%d outcome=%s",
            s["trace_id"], s["total_elapsed_ms"], s["total_api_calls"],
            s["cache_hits"], s["stale_responses"], s["stages_completed"],
            s["stages_errored"], s["final_outcome"],
        )

    def full_trace_dict(self) -> Dict[str, Any]:
        """Summary plus every stage and call, for the builder debug endpoint."""
        data = self.summary_dict()
        with self._lock:
            data["stages"] = [
                {
                    "stage": s.stage_name,
                    "elapsed_ms": s.elapsed_ms,
                    "api_calls": s.api_calls_made,
                    "error": f"{s.error_class}: {s.error_message}" if s.error_class else None,
                }
                for s in self.stages
            ]
            data["api_calls"] = [
                {
                    "service": c.service,
                    "endpoint": c.endpoint,
                    "elapsed_ms": c.elapsed_ms,
                    "status_code": c.status_code,
                    "provider_status": c.provider_status,
                    "stage": c.stage,
                }
                for c in self.api_calls
            ]
        return data


# =============================================================================
# Thread-local current trace
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]) -> None:
    _trace_local.ctx = ctx


def clear_trace() -> None:
    _trace_local.ctx = None

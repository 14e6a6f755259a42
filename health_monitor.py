"""
Health of the services ParcelCheck depends on.

Each monitored service keeps a rolling window of real call outcomes
(recorded by overpass_http, parcel_store and maps_links as they serve
assessments). Overpass and Supabase can also be probed actively by a
daemon thread every HEALTH_CHECK_INTERVAL seconds; a probe result, while
fresh, takes precedence over the passive window.

Status per service: healthy / degraded / down / unknown.

One monitor per process; the module functions delegate to it.
"""

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional

import requests

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = int(os.environ.get("HEALTH_CHECK_INTERVAL", "300"))

MONITORED_SERVICES = ("overpass", "supabase", "link_resolver")

WINDOW_SIZE = 50
HEALTHY_RATE = 0.95
DEGRADED_RATE = 0.70

_PROBE_TIMEOUT = 10
# Probe results older than two intervals are ignored
_PROBE_MAX_AGE = 2 * HEALTH_CHECK_INTERVAL


def _now_iso(ts: Optional[float] = None) -> str:
    if ts is None:
        ts = time.time()
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def classify(success_rate: float) -> str:
    if success_rate >= HEALTHY_RATE:
        return "healthy"
    if success_rate >= DEGRADED_RATE:
        return "degraded"
    return "down"


@dataclass
class ProbeResult:
    status: str
    latency_ms: int
    checked_at: float = field(default_factory=time.time)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "status": self.status,
            "mode": "active",
            "latency_ms": self.latency_ms,
            "last_checked": _now_iso(self.checked_at),
        }
        if self.error:
            d["error"] = self.error
        return d


class ServiceWindow:
    """Rolling window of (timestamp, ok, latency_ms, error) for one service."""

    def __init__(self, size: int = WINDOW_SIZE) -> None:
        self._calls: Deque[tuple] = deque(maxlen=size)

    def add(self, ok: bool, latency_ms: int, error: Optional[str] = None) -> None:
        self._calls.append((time.time(), ok, latency_ms, error))

    def __len__(self) -> int:
        return len(self._calls)

    def to_dict(self) -> Dict[str, Any]:
        calls = list(self._calls)
        if not calls:
            return {
                "status": "unknown",
                "mode": "passive",
                "latency_ms": 0,
                "last_checked": None,
                "sample_size": 0,
            }
        ok_count = sum(1 for _, ok, _, _ in calls if ok)
        rate = ok_count / len(calls)
        d = {
            "status": classify(rate),
            "mode": "passive",
            "latency_ms": int(sum(c[2] for c in calls) / len(calls)),
            "last_checked": _now_iso(calls[-1][0]),
            "success_rate": round(rate, 3),
            "sample_size": len(calls),
        }
        last_error = next((err for _, ok, _, err in reversed(calls) if not ok and err), None)
        if last_error:
            d["error"] = last_error
        return d


# ---------------------------------------------------------------------------
# Active probes
# ---------------------------------------------------------------------------

def _timed_get(url: str, **kwargs) -> ProbeResult:
    start = time.monotonic()
    try:
        resp = requests.get(url, timeout=_PROBE_TIMEOUT, **kwargs)
    except requests.Timeout:
        return ProbeResult("down", int((time.monotonic() - start) * 1000), error="timeout")
    except requests.RequestException as e:
        return ProbeResult("down", int((time.monotonic() - start) * 1000), error=str(e))
    elapsed_ms = int((time.monotonic() - start) * 1000)
    if resp.status_code == 200:
        return ProbeResult("healthy", elapsed_ms)
    return ProbeResult("degraded", elapsed_ms, error=f"HTTP {resp.status_code}")


def probe_overpass() -> Optional[ProbeResult]:
    """Overpass /status endpoint; costs no query slot."""
    url = os.environ.get("OVERPASS_STATUS_URL", "https://overpass-api.de/api/status")
    return _timed_get(url)


def probe_supabase() -> Optional[ProbeResult]:
    """PostgREST root; skipped (None) when Supabase is not configured."""
    base = os.environ.get("SUPABASE_URL", "").rstrip("/")
    key = os.environ.get("SUPABASE_ANON_KEY", "")
    if not base or not key:
        return None
    return _timed_get(f"{base}/rest/v1/", headers={"apikey": key})


DEFAULT_PROBES: Dict[str, Callable[[], Optional[ProbeResult]]] = {
    "overpass": probe_overpass,
    "supabase": probe_supabase,
}


class HealthMonitor:
    """Thread-safe per-service health tracker."""

    def __init__(self, probes: Optional[Dict[str, Callable]] = None) -> None:
        self._lock = threading.Lock()
        self._windows: Dict[str, ServiceWindow] = {s: ServiceWindow() for s in MONITORED_SERVICES}
        self._probes = DEFAULT_PROBES if probes is None else probes
        self._probe_results: Dict[str, ProbeResult] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def record_call(self, service: str, success: bool, latency_ms: int,
                    error: Optional[str] = None) -> None:
        with self._lock:
            window = self._windows.setdefault(service, ServiceWindow())
            window.add(success, latency_ms, error)

    def run_active_checks(self) -> None:
        """Run every probe once and keep the results."""
        for service, probe in self._probes.items():
            try:
                result = probe()
            except Exception as e:
                logger.exception("[health] %s probe crashed", service)
                result = ProbeResult("down", 0, error=f"probe crashed: {e}")
            if result is None:
                continue
            with self._lock:
                previous = self._probe_results.get(service)
                self._probe_results[service] = result
            if previous and previous.status != result.status:
                logger.warning("[health] %s: %s -> %s (%s)", service,
                               previous.status, result.status, result.error)
            else:
                logger.info("[health] %s: %s (%dms)", service, result.status, result.latency_ms)

    def service_status(self, service: str) -> Dict[str, Any]:
        with self._lock:
            probe = self._probe_results.get(service)
            window = self._windows.get(service) or ServiceWindow()
            passive = window.to_dict()
        if probe and time.time() - probe.checked_at <= _PROBE_MAX_AGE:
            status = probe.to_dict()
            status["passive"] = passive
            return status
        return passive

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            services = list(self._windows)
        return {s: self.service_status(s) for s in services}

    def _loop(self) -> None:
        logger.info("[health] monitor started (interval=%ds)", HEALTH_CHECK_INTERVAL)
        while not self._stop_event.is_set():
            self.run_active_checks()
            self._stop_event.wait(timeout=HEALTH_CHECK_INTERVAL)
        logger.info("[health] monitor stopped")

    def start(self) -> None:
        """Start the probe thread; no-op if it is already running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="health-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()


_monitor = HealthMonitor()


def record_call(service: str, success: bool, latency_ms: int,
                error: Optional[str] = None) -> None:
    _monitor.record_call(service, success, latency_ms, error)


def get_status() -> Dict[str, Dict[str, Any]]:
    return _monitor.get_all_status()


def start_monitor() -> None:
    _monitor.start()


def stop_monitor() -> None:
    _monitor.stop()

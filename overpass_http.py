"""
Overpass API access for ParcelCheck.

All place lookups reach OpenStreetMap through overpass_query(). A call
reads the SQLite cache in models.py before anything else and only goes
to the network on a miss. Outbound requests are spaced at least one
second apart within the process, retried on rate limits and 5xx answers,
and recorded in the request trace and the health monitor.

When Overpass stays unavailable after the retries, an expired cache entry
for the same query is returned, marked with "_stale". Client errors (4xx
other than 429, unparseable bodies) never fall back.

OVERPASS_BASE_URL points the client at a self-hosted instance.
"""

import json
import logging
import os
import threading
import time
from typing import Any, Dict, Optional

import requests

import health_monitor
from models import (
    get_overpass_cache,
    get_overpass_cache_stale,
    overpass_cache_key,
    set_overpass_cache,
)
from pc_trace import get_trace

logger = logging.getLogger(__name__)

_SERVICE = "overpass"
_PUBLIC_ENDPOINT = "https://overpass-api.de/api/interpreter"

# Remark fragments Overpass puts in an otherwise-200 body when the query failed
_BODY_ERROR_MARKERS = ("runtime error", "timed out", "out of memory")

_RETRYABLE_STATUS = {500, 502, 503, 504}


class OverpassRateLimitError(Exception):
    """Overpass kept answering 429 (or a rate-limit remark) after all retries."""


class OverpassQueryError(Exception):
    """Overpass failed with an HTTP, transport or body error.

    ``retryable`` is True for failures that say Overpass is unavailable
    (timeouts, connection errors, 5xx, server remarks) rather than that the
    query itself is bad.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def _record(caller: str, elapsed_ms: int, status_code: int,
            provider_status: str = "") -> None:
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service=_SERVICE,
            endpoint=caller,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
        )


def _fail(caller: str, elapsed_ms: int, status_code: int, provider_status: str,
          message: str, retryable: bool = False) -> OverpassQueryError:
    _record(caller, elapsed_ms, status_code, provider_status)
    return OverpassQueryError(f"{message} ({caller})", retryable=retryable)


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = 30
    MIN_SPACING = 1.0
    MAX_RETRIES = 2
    BACKOFF_SECONDS = (2, 4)

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = base_url or os.environ.get("OVERPASS_BASE_URL", _PUBLIC_ENDPOINT)
        self._spacing_lock = threading.Lock()
        self._last_sent = 0.0

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        timeout: Optional[int] = None,
        ttl_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Run an Overpass QL query and return the decoded JSON.

        Args:
            overpass_ql: Query text; also the cache key source.
            caller: Label for trace records, e.g. "nearby_places.education".
            timeout: Per-request timeout; DEFAULT_TIMEOUT when omitted.
            ttl_days: How old a cache entry may be; None means 7 days.

        Raises:
            OverpassRateLimitError: still rate limited after the retries and
                nothing cached for this query.
            OverpassQueryError: a client-side failure, or an availability
                failure with nothing cached for this query.
        """
        key = overpass_cache_key(overpass_ql)
        cached = self._read_cache(key, caller, ttl_days)
        if cached is not None:
            return cached

        try:
            result = self._send_with_retries(
                overpass_ql, caller, timeout or self.DEFAULT_TIMEOUT
            )
        except OverpassRateLimitError as e:
            return self._stale_or_raise(key, caller, e)
        except OverpassQueryError as e:
            if not e.retryable:
                raise
            return self._stale_or_raise(key, caller, e)

        set_overpass_cache(key, json.dumps(result))
        return result

    @staticmethod
    def _read_cache(key: str, caller: str, ttl_days: Optional[int]) -> Optional[Dict[str, Any]]:
        raw = get_overpass_cache(key, ttl_days=ttl_days)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Unreadable Overpass cache row %s; querying again", key)
            return None
        _record(caller, 0, 200, "cache_hit")
        return data

    def _send_with_retries(self, overpass_ql: str, caller: str, timeout: int) -> Dict[str, Any]:
        for attempt in range(self.MAX_RETRIES + 1):
            last_attempt = attempt == self.MAX_RETRIES
            try:
                return self._send(overpass_ql, caller, timeout)
            except OverpassRateLimitError:
                if last_attempt:
                    raise
                why = "rate limited"
            except OverpassQueryError as e:
                if last_attempt or not e.retryable:
                    raise
                why = str(e)
            delay = self.BACKOFF_SECONDS[attempt]
            logger.info("Overpass retry %d/%d in %ds: %s",
                        attempt + 1, self.MAX_RETRIES, delay, why)
            time.sleep(delay)
        raise AssertionError("unreachable")

    def _throttle(self) -> None:
        with self._spacing_lock:
            wait = self.MIN_SPACING - (time.monotonic() - self._last_sent)
            if wait > 0:
                time.sleep(wait)
            self._last_sent = time.monotonic()

    def _send(self, overpass_ql: str, caller: str, timeout: int) -> Dict[str, Any]:
        self._throttle()
        started = time.monotonic()

        def took():
            return int((time.monotonic() - started) * 1000)

        # new session per call; threads in one assessment share this client
        session = requests.Session()
        session.trust_env = False
        try:
            resp = session.post(self.base_url, data={"data": overpass_ql}, timeout=timeout)
        except requests.exceptions.Timeout:
            ms = took()
            health_monitor.record_call(_SERVICE, False, ms, "timeout")
            raise _fail(caller, ms, 0, "timeout",
                        f"Overpass timeout: no answer within {timeout}s", retryable=True)
        except requests.exceptions.RequestException as e:
            ms = took()
            health_monitor.record_call(_SERVICE, False, ms, str(e))
            raise _fail(caller, ms, 0, "exception",
                        f"Overpass unreachable: {e}", retryable=True) from e

        ms = took()
        try:
            data = self._parse(resp, caller, ms)
        except (OverpassRateLimitError, OverpassQueryError) as e:
            health_monitor.record_call(_SERVICE, False, ms, str(e))
            raise
        _record(caller, ms, resp.status_code)
        health_monitor.record_call(_SERVICE, True, ms)
        return data

    @staticmethod
    def _parse(resp, caller: str, ms: int) -> Dict[str, Any]:
        """Turn a response into JSON data or the matching exception."""
        status = resp.status_code
        if status == 429:
            _record(caller, ms, status, "rate_limit")
            raise OverpassRateLimitError(f"Overpass answered 429 ({caller})")
        if status >= 400:
            raise _fail(caller, ms, status, "timeout" if status == 504 else "http_error",
                        f"Overpass answered HTTP {status}",
                        retryable=status in _RETRYABLE_STATUS)

        try:
            data = resp.json()
        except ValueError:
            raise _fail(caller, ms, status, "parse_error",
                        f"Overpass body is not JSON (HTTP {status})")

        remark = ""
        if isinstance(data, dict):
            remark = str((data.get("osm3s") or {}).get("remark") or data.get("remark") or "")
        lowered = remark.lower()
        if "too many requests" in lowered:
            _record(caller, ms, status, "rate_limit")
            raise OverpassRateLimitError(f"Overpass rate-limit remark ({caller})")
        if any(marker in lowered for marker in _BODY_ERROR_MARKERS):
            raise _fail(caller, ms, status, "body_error",
                        f"Overpass remark: {remark[:100]}", retryable=True)
        return data

    @staticmethod
    def _stale_or_raise(key: str, caller: str, error: Exception) -> Dict[str, Any]:
        row = get_overpass_cache_stale(key)
        if row is None:
            raise error
        raw, created_at = row
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            raise error
        logger.warning("%s failed (%s); using cached answer from %s",
                       caller, error, created_at)
        data["_stale"] = True
        data["_stale_created_at"] = created_at
        _record(caller, 0, 0, "stale_cache")
        return data


_client = OverpassHTTPClient()


def overpass_query(
    overpass_ql: str,
    caller: str = "unknown",
    timeout: Optional[int] = None,
    ttl_days: Optional[int] = None,
) -> Dict[str, Any]:
    """Query Overpass through the shared process-wide client."""
    return _client.query(overpass_ql, caller=caller, timeout=timeout, ttl_days=ttl_days)

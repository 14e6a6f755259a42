"""
Gunicorn settings and hooks for ParcelCheck.

    gunicorn -c gunicorn_config.py app:app

Each worker process runs its own health probe thread (post_fork), so
/healthz answers with a recent active check whichever worker serves it.
Once the arbiter is listening, when_ready smoke-tests the landing page,
the discovery options, /healthz and a missing snapshot
over localhost.
"""

import logging
import os
import threading
import time

PORT = os.environ.get("PORT", "8000")

bind = f"0.0.0.0:{PORT}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
# five parallel lookups, each with up to two Overpass retries
timeout = 120

SMOKE_DELAY_SECONDS = float(os.environ.get("SMOKE_DELAY_SECONDS", "2"))

log = logging.getLogger("gunicorn.error")


def _smoke(base_url):
    time.sleep(SMOKE_DELAY_SECONDS)
    try:
        from smoke_test import run_tests
        log.info("ParcelCheck smoke test: %s", base_url)
        passed = run_tests(base_url)
    except Exception:
        log.exception("ParcelCheck smoke test raised")
        return
    if passed:
        log.info("ParcelCheck smoke test passed")
    else:
        log.error("ParcelCheck smoke test failed; see alerts")


def when_ready(server):
    threading.Thread(
        target=_smoke, args=(f"http://127.0.0.1:{PORT}",),
        name="parcelcheck-smoke", daemon=True,
    ).start()


def post_fork(server, worker):
    try:
        from health_monitor import start_monitor
        start_monitor()
    except Exception:
        log.exception("Health monitor did not start in worker %s", worker.pid)

"""Tests for pc_trace.py: stage attribution across threads and summaries."""

import threading

from pc_trace import (
    CACHE_HIT,
    STALE_CACHE,
    TraceContext,
    clear_trace,
    get_trace,
    set_trace,
)


class TestThreadLocalTrace:
    def test_set_get_clear(self):
        ctx = TraceContext(trace_id="abc")
        set_trace(ctx)
        assert get_trace() is ctx
        clear_trace()
        assert get_trace() is None

    def test_not_visible_in_other_threads(self):
        set_trace(TraceContext(trace_id="main"))
        seen = []
        t = threading.Thread(target=lambda: seen.append(get_trace()))
        t.start()
        t.join()
        clear_trace()
        assert seen == [None]


class TestStages:
    def test_calls_attributed_to_current_stage(self):
        ctx = TraceContext(trace_id="t")
        ctx.start_stage("education")
        ctx.record_api_call("overpass", "nearby_places.education", 120, 200)
        ctx.record_api_call("overpass", "nearby_places.education", 0, 200, CACHE_HIT)
        rec = ctx.record_stage("education", 100.0, 100.25)

        assert rec.api_calls_made == 2
        assert rec.elapsed_ms == 250
        assert rec.ok
        assert ctx.current_stage == ""

    def test_stage_per_thread(self):
        ctx = TraceContext(trace_id="t")
        barrier = threading.Barrier(2)

        def run(stage):
            ctx.start_stage(stage)
            barrier.wait()
            ctx.record_api_call("overpass", stage, 10, 200)
            ctx.end_stage()

        threads = [threading.Thread(target=run, args=(s,)) for s in ("water", "transport")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert {(c.endpoint, c.stage) for c in ctx.api_calls} == {
            ("water", "water"), ("transport", "transport"),
        }

    def test_error_stage(self):
        ctx = TraceContext(trace_id="t")
        rec = ctx.record_stage("risk_analysis", 0.0, 0.1, "ValueError", "bad input")
        assert not rec.ok
        assert rec.error_class == "ValueError"


class TestOutcome:
    def _ctx(self, *oks):
        ctx = TraceContext(trace_id="t")
        for i, ok in enumerate(oks):
            ctx.record_stage(f"s{i}", 0.0, 0.0, "" if ok else "RuntimeError")
        return ctx

    def test_empty(self):
        assert self._ctx().outcome() == "empty"

    def test_success(self):
        assert self._ctx(True, True).outcome() == "success"

    def test_partial(self):
        assert self._ctx(True, False).outcome() == "partial"

    def test_error(self):
        assert self._ctx(False, False).outcome() == "error"


class TestSummaries:
    def test_summary_counts(self):
        ctx = TraceContext(trace_id="sum", model_version="1.0.0")
        ctx.record_api_call("overpass", "a", 100, 200)
        ctx.record_api_call("overpass", "b", 0, 200, CACHE_HIT)
        ctx.record_api_call("overpass", "c", 0, 0, STALE_CACHE)
        ctx.record_api_call("supabase", "landdetails", 40, 200)
        ctx.record_stage("education", 0.0, 0.1)
        ctx.record_stage("water", 0.0, 0.1, "OverpassQueryError", "504")

        s = ctx.summary_dict()
        assert s["trace_id"] == "sum"
        assert s["total_api_calls"] == 4
        assert s["calls_by_service"] == {"overpass": 3, "supabase": 1}
        assert s["cache_hits"] == 1
        assert s["stale_responses"] == 1
        assert s["stages_completed"] == 1
        assert s["stages_errored"] == 1
        assert s["final_outcome"] == "partial"
        assert s["model_version"] == "1.0.0"

    def test_from_cache(self):
        ctx = TraceContext(trace_id="t")
        assert ctx.record_api_call("overpass", "a", 0, 200, STALE_CACHE).from_cache
        assert not ctx.record_api_call("overpass", "a", 10, 200).from_cache

    def test_full_trace(self):
        ctx = TraceContext(trace_id="full")
        ctx.start_stage("commercial")
        ctx.record_api_call("overpass", "nearby_places.commercial", 80, 200)
        ctx.record_stage("commercial", 0.0, 0.125)
        ctx.record_stage("risk_analysis", 0.0, 0.01, "ValueError", "no location")

        data = ctx.full_trace_dict()
        assert data["stages"][0] == {
            "stage": "commercial", "elapsed_ms": 125, "api_calls": 1, "error": None,
        }
        assert data["stages"][1]["error"] == "ValueError: no location"
        assert data["api_calls"][0]["stage"] == "commercial"

    def test_log_summary(self, caplog):
        ctx = TraceContext(trace_id="logged")
        ctx.record_stage("education", 0.0, 0.0)
        with caplog.at_level("INFO", logger="pc_trace"):
            ctx.log_summary()
        assert "trace=logged" in caplog.text
        assert "outcome=success" in caplog.text

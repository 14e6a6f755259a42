import os
import sys
import logging
import uuid

from flask import (
    Flask, request, render_template, url_for, abort, jsonify, g,
)
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

import health_monitor
from discovery import (
    DiscoverySelection, SelectionError, cost_filter, discovery_options,
    distance_filter, size_filter,
)
from map_generator import generate_parcel_map
from maps_links import (
    LinkResolutionError, link_error_message, parse_google_maps_link,
    resolve_short_link,
)
from models import (
    init_db, save_snapshot, get_snapshot, increment_view_count,
    log_event, get_event_counts,
)
from nearby_places import RADIUS_OPTIONS
from parcel_analysis import (
    CATEGORIES, evaluate_parcel, evaluation_to_dict, manual_parcel,
)
from parcel_filters import ParcelFilters, search_parcels
from parcel_store import ParcelNotFoundError, ParcelStoreError, get_store
from pc_trace import TraceContext, set_trace, clear_trace
from scoring_config import SCORING_MODEL, score_badge

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions
    from overpass_http import OverpassQueryError, OverpassRateLimitError

    _EXPECTED_ERRORS = (
        (OverpassQueryError, "overpass"),
        (OverpassRateLimitError, "overpass"),
        (LinkResolutionError, "link_resolver"),
        (ParcelStoreError, "supabase"),
        (requests.exceptions.RequestException, "http"),
    )

    def _sentry_before_send(event, hint):
        """Demote expected upstream failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            for expected, category in _EXPECTED_ERRORS:
                if exc_type is not None and issubclass(exc_type, expected):
                    sentry_sdk.add_breadcrumb(
                        category=category,
                        message=msg,
                        level="warning",
                    )
                    return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'parcelcheck-dev-key')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'parcelcheck-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Behind a reverse proxy: rewrite remote_addr from X-Forwarded-For so the
# limiter and the logs see the real client.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection on every POST. Templates render the token into a <meta>
# tag and fetch() calls send it back as X-CSRFToken.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting. In-memory storage is per-process (with 2 gunicorn workers
# the effective limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_EVAL = os.environ.get("RATE_LIMIT_EVAL", "10/hour")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)


@limiter.request_filter
def _builder_bypass():
    """Exempt builder-mode requests from all rate limits."""
    return _is_builder(request)


REQUIRED_ENV = ("SUPABASE_URL", "SUPABASE_ANON_KEY")

if not all(os.environ.get(k) for k in REQUIRED_ENV):
    logger.warning(
        "SUPABASE_URL / SUPABASE_ANON_KEY are not set. "
        "Parcel search and residential projects will fail until configured. "
        "For local development, copy .env.example to .env and add your keys."
    )


def _generate_request_id():
    return uuid.uuid4().hex[:10]


# ---------------------------------------------------------------------------
# Builder mode
# ---------------------------------------------------------------------------
BUILDER_MODE_ENV = os.environ.get("BUILDER_MODE", "").lower() == "true"
BUILDER_SECRET = os.environ.get("BUILDER_SECRET", "parcelcheck-builder")


def _is_builder(req):
    """
    Builder mode unlocks /debug routes and skips rate limits.

    Enabled by BUILDER_MODE=true, the 'pc_builder' cookie, or
    ?builder_key=<secret> (which also sets the cookie).
    """
    if BUILDER_MODE_ENV:
        return True
    if req.cookies.get("pc_builder") == BUILDER_SECRET:
        return True
    if req.args.get("builder_key") == BUILDER_SECRET:
        return True
    return False


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()
    g.is_builder = _is_builder(request)


@app.after_request
def _after_request(response):
    if request.args.get("builder_key") == BUILDER_SECRET:
        response.set_cookie(
            "pc_builder", BUILDER_SECRET,
            max_age=90 * 24 * 3600, httponly=True, samesite="Lax"
        )
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


@app.context_processor
def _template_helpers():
    return {
        "score_badge": score_badge,
        "model_version": SCORING_MODEL.version,
        "is_builder": getattr(g, "is_builder", False),
        "request_id": getattr(g, "request_id", None),
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _check_service_config():
    """Return (is_ok, missing_keys)."""
    missing = [k for k in REQUIRED_ENV if not os.environ.get(k)]
    return (len(missing) == 0, missing)


def _wants_json():
    """Return True if the client prefers a JSON response."""
    accept = request.headers.get("Accept", "")
    return "application/json" in accept


def _json_error(message, status):
    """Failure body shared by every endpoint: message, retry hint, request id."""
    return jsonify({
        "error": message,
        "retry": True,
        "request_id": getattr(g, "request_id", "unknown"),
    }), status


_ERROR_PAGES = {400: "400.html", 404: "404.html"}


def _page_error(message, status):
    if _wants_json():
        return _json_error(message, status)
    template = _ERROR_PAGES.get(status, "500.html")
    return render_template(template, error=message), status


BODY_NOT_OBJECT = "Request body must be a JSON object"


def _json_body(form_fallback=False):
    """The JSON request body as a dict, {} (or the form) when absent, None if not an object."""
    data = request.get_json(silent=True)
    if data is None:
        return request.form if form_fallback else {}
    return data if isinstance(data, dict) else None


def _body_error():
    return jsonify({"error": BODY_NOT_OBJECT, "request_id": g.request_id}), 400


def _radii_from_json(data):
    radii = data.get("radii") or {}
    if not isinstance(radii, dict):
        raise ValueError("radii must be an object")
    return radii


def _radii_from_args(args):
    """<category>_radius query parameters."""
    return {
        c: args.get(f"{c}_radius")
        for c in CATEGORIES
        if args.get(f"{c}_radius") not in (None, "")
    }


def _parcel_from_location(data):
    """Manual parcel from {latitude, longitude} or {link}.

    Raises:
        ValueError: with a user-facing message.
    """
    link = (data.get("link") or "").strip()
    if link:
        coords = parse_google_maps_link(link)
        if coords is None:
            raise ValueError(link_error_message(link) or "Please paste a Google Maps link.")
        return manual_parcel(coords.lat, coords.lng, link)

    lat = data.get("latitude", data.get("lat"))
    lng = data.get("longitude", data.get("lng"))
    if lat in (None, "") or lng in (None, ""):
        raise ValueError("latitude and longitude are required")
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        raise ValueError("latitude and longitude must be numbers")
    return manual_parcel(lat, lng)


def _run_evaluation(parcel, radii):
    """evaluate_parcel under a request trace; returns (result, trace)."""
    trace_ctx = TraceContext(trace_id=g.request_id)
    set_trace(trace_ctx)
    try:
        result = evaluate_parcel(parcel, radii)
        return result, trace_ctx
    finally:
        trace_ctx.log_summary()
        clear_trace()


def _report_context(result):
    result_dict = evaluation_to_dict(result)
    parcel = result.parcel
    map_image = None
    if parcel.has_coordinates:
        map_image = generate_parcel_map(
            parcel.latitude, parcel.longitude,
            places=result_dict["places"],
            residential=result_dict["residential_projects"],
        )
    return result_dict, map_image


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/")
def index():
    options = discovery_options()
    if _wants_json():
        return jsonify({
            "discovery": options,
            "radius_options": list(RADIUS_OPTIONS),
            "categories": list(CATEGORIES),
        })
    return render_template(
        "index.html",
        options=options,
        radius_options=RADIUS_OPTIONS,
        categories=CATEGORIES,
    )


@app.route("/api/location", methods=["POST"])
def resolve_location():
    """Google Maps link -> coordinates."""
    data = _json_body(form_fallback=True)
    if data is None:
        return _body_error()
    link = (data.get("link") or "").strip()
    if not link:
        return jsonify({"error": "Please paste a Google Maps link."}), 400

    coords = parse_google_maps_link(link)
    if coords is None:
        message = link_error_message(link) or "Please paste a Google Maps link."
        logger.info("[%s] Unparseable map link (%d chars)", g.request_id, len(link))
        return jsonify({"error": message, "request_id": g.request_id}), 400

    log_event("location_resolved", metadata={"short_link": "goo.gl" in link})
    return jsonify({
        "latitude": coords.lat,
        "longitude": coords.lng,
        "link": link,
    })


@app.route("/api/resolve")
def resolve_link():
    """Follow a short link's redirects and return the final URL."""
    url = (request.args.get("url") or "").strip()
    if not url or not url.startswith(("http://", "https://")):
        return jsonify({"error": "Missing or invalid 'url' query parameter"}), 400
    try:
        final_url = resolve_short_link(url)
    except LinkResolutionError as e:
        logger.warning("[%s] Short link resolution failed: %s", g.request_id, e)
        return jsonify({"error": str(e) or "Failed to resolve URL"}), 500
    return jsonify({"finalUrl": final_url})


@app.route("/api/discovery", methods=["GET", "POST"])
def discovery():
    if request.method == "GET":
        return jsonify(discovery_options())

    data = _json_body()
    if data is None:
        return _body_error()
    selection = DiscoverySelection.from_dict(data)
    try:
        filters = selection.to_filters()
    except SelectionError as e:
        return jsonify({"error": str(e), "request_id": g.request_id}), 400
    return jsonify({"filters": filters, "selected": selection.total})


def _quick_filter(quick):
    kind = quick.get("kind")
    if kind == "cost":
        return cost_filter(quick.get("value"))
    if kind == "size":
        return size_filter(quick.get("min"), quick.get("max"))
    if kind == "distance":
        return distance_filter(quick.get("value"))
    raise SelectionError(f"Unknown quick filter: {kind!r}")


@app.route("/api/parcels/search", methods=["POST"])
def parcel_search():
    """Filter cascade + LAS/VAS ranking over every stored parcel.

    Body: a filters dict (snake_case or camelCase keys), optionally with
    {"quick": {"kind": "cost"|"size"|"distance", ...}} from the main
    navigation quick filters.
    """
    data = _json_body()
    if data is None:
        return _body_error()
    filter_data = dict(data.get("filters") or data)
    quick = filter_data.pop("quick", None) or data.get("quick")
    if quick:
        try:
            filter_data.update(_quick_filter(quick))
        except SelectionError as e:
            return jsonify({"error": str(e), "request_id": g.request_id}), 400
    filters = ParcelFilters.from_dict(filter_data)

    try:
        parcels = get_store().fetch_all_parcels()
    except ParcelStoreError as e:
        logger.error("[%s] Failed to load land parcels: %s", g.request_id, e)
        return _json_error("Failed to load land parcels", 503)

    results = search_parcels(parcels, filters)
    results["filters"] = filters.to_dict()
    results["request_id"] = g.request_id
    return jsonify(results)


@app.route("/api/parcels/<parcel_id>")
@limiter.limit(RATE_LIMIT_EVAL)
def parcel_detail(parcel_id):
    try:
        radii = _radii_from_args(request.args)
        parcel = get_store().find_parcel(parcel_id)
        result, _ = _run_evaluation(parcel, radii)
    except ParcelNotFoundError as e:
        return _json_error(str(e), 404)
    except ParcelStoreError as e:
        logger.error("[%s] Parcel lookup failed: %s", g.request_id, e)
        return _json_error("Failed to fetch land details", 503)
    except ValueError as e:
        return jsonify({"error": str(e), "request_id": g.request_id}), 400

    payload = evaluation_to_dict(result)
    payload["request_id"] = g.request_id
    return jsonify(payload)


@app.route("/api/assessment", methods=["POST"])
@limiter.limit(RATE_LIMIT_EVAL)
def assessment():
    """Detailed analysis for a user-picked point or pasted link."""
    data = _json_body()
    if data is None:
        return _body_error()
    try:
        radii = _radii_from_json(data)
        parcel = _parcel_from_location(data)
        result, _ = _run_evaluation(parcel, radii)
    except ValueError as e:
        return jsonify({"error": str(e), "request_id": g.request_id}), 400

    log_event("assessment_run", metadata={
        "latitude": parcel.latitude, "longitude": parcel.longitude,
    })
    payload = evaluation_to_dict(result)
    payload["request_id"] = g.request_id
    return jsonify(payload)


@app.route("/parcels/<parcel_id>/report")
@limiter.limit(RATE_LIMIT_EVAL)
def parcel_report(parcel_id):
    try:
        radii = _radii_from_args(request.args)
        parcel = get_store().find_parcel(parcel_id)
        result, _ = _run_evaluation(parcel, radii)
    except ParcelNotFoundError as e:
        return _page_error(str(e), 404)
    except ParcelStoreError as e:
        logger.error("[%s] Parcel lookup failed: %s", g.request_id, e)
        return _page_error("Failed to fetch land details", 503)
    except ValueError as e:
        return _page_error(str(e), 400)

    result_dict, map_image = _report_context(result)
    if _wants_json():
        return jsonify(result_dict)
    return render_template("report.html", result=result_dict, map_image=map_image)


@app.route("/assessment/report")
@limiter.limit(RATE_LIMIT_EVAL)
def assessment_report():
    try:
        radii = _radii_from_args(request.args)
        parcel = _parcel_from_location(request.args)
        result, _ = _run_evaluation(parcel, radii)
    except ValueError as e:
        return _page_error(str(e), 400)

    result_dict, map_image = _report_context(result)
    if _wants_json():
        return jsonify(result_dict)
    return render_template("report.html", result=result_dict, map_image=map_image)


@app.route("/api/assessment/share", methods=["POST"])
@limiter.limit(RATE_LIMIT_EVAL)
def share_assessment():
    """Re-run an assessment server-side and store it as a shareable snapshot.

    Body: {"parcel_id": ...} or {"latitude", "longitude"} / {"link"},
    plus optional "radii".
    """
    data = _json_body()
    if data is None:
        return _body_error()
    try:
        radii = _radii_from_json(data)
        if data.get("parcel_id") not in (None, ""):
            parcel = get_store().find_parcel(data["parcel_id"])
        else:
            parcel = _parcel_from_location(data)
        result, _ = _run_evaluation(parcel, radii)
    except ParcelNotFoundError as e:
        return _json_error(str(e), 404)
    except ParcelStoreError as e:
        logger.error("[%s] Parcel lookup failed: %s", g.request_id, e)
        return _json_error("Failed to fetch land details", 503)
    except ValueError as e:
        return jsonify({"error": str(e), "request_id": g.request_id}), 400

    snapshot_id = save_snapshot(evaluation_to_dict(result))
    log_event("snapshot_created", snapshot_id=snapshot_id)
    logger.info("[%s] Snapshot %s saved for %s", g.request_id, snapshot_id,
                parcel.property_name)
    return jsonify({
        "snapshot_id": snapshot_id,
        "url": url_for("view_snapshot", snapshot_id=snapshot_id),
    }), 201


@app.route("/s/<snapshot_id>")
def view_snapshot(snapshot_id):
    """Public, read-only snapshot page. No auth required."""
    snapshot = get_snapshot(snapshot_id)
    if not snapshot:
        if _wants_json():
            return _json_error("Snapshot not found", 404)
        abort(404)

    increment_view_count(snapshot_id)
    log_event("snapshot_viewed", snapshot_id=snapshot_id)

    if _wants_json():
        return jsonify({
            "snapshot_id": snapshot_id,
            "created_at": snapshot["created_at"],
            "view_count": snapshot["view_count"] + 1,
            "result": snapshot["result"],
        })
    return render_template(
        "snapshot.html",
        snapshot=snapshot,
        result=snapshot["result"],
        snapshot_id=snapshot_id,
    )


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Config check plus passive per-service health."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
        "services": health_monitor.get_status(),
        "model_version": SCORING_MODEL.version,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Builder-only routes
# ---------------------------------------------------------------------------

@app.route("/debug/assess", methods=["POST"])
@limiter.exempt
def debug_assess():
    """Run an assessment and return the full trace. Builder-only.

    Accepts JSON: {"parcel_id": ...} or {"latitude": .., "longitude": ..}
    """
    if not g.is_builder:
        abort(404)

    data = _json_body()
    if data is None:
        return _body_error()
    trace_ctx = TraceContext(trace_id=g.request_id)
    set_trace(trace_ctx)
    try:
        if data.get("parcel_id") not in (None, ""):
            parcel = get_store().find_parcel(data["parcel_id"])
        else:
            parcel = _parcel_from_location(data)
        result = evaluate_parcel(parcel, _radii_from_json(data))
        trace_ctx.log_summary()
        return jsonify({
            "parcel": parcel.property_name,
            "overall": result.assessment_scores.overall,
            "notes": result.notes,
            "trace": trace_ctx.full_trace_dict(),
        })
    except Exception as e:
        trace_ctx.log_summary()
        return jsonify({
            "error": str(e),
            "trace": trace_ctx.full_trace_dict(),
        }), 500
    finally:
        clear_trace()


@app.route("/debug/events")
def debug_events():
    if not g.is_builder:
        abort(404)
    return jsonify(get_event_counts())


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    if _wants_json() or request.path.startswith("/api/"):
        return _json_error("Too many requests. Please wait and try again.", 429)
    return render_template("429.html"), 429


@app.errorhandler(404)
def not_found(e):
    if _wants_json() or request.path.startswith("/api/"):
        return _json_error("Not found", 404)
    return render_template("404.html"), 404


@app.errorhandler(500)
def internal_error(e):
    if _wants_json() or request.path.startswith("/api/"):
        return _json_error("Something went wrong. Please try again.", 500)
    return render_template("500.html"), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)

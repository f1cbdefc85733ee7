import os
import logging
import uuid

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from city_catalog import get_catalog
from cs_trace import FinderTrace, set_trace, clear_trace
from geo import Coordinate
from health_monitor import get_failure_counts, get_status
from maps_client import GoogleMapsClient, resolve_api_key
from neighborhood_finder import (
    InputValidationError,
    build_search_context,
    find_neighborhoods,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry: only initialised when SENTRY_DSN is set
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    from maps_client import MapsAPIError

    _BREADCRUMB_ONLY = (
        (MapsAPIError, "google_maps"),
        (requests.exceptions.RequestException, "http"),
    )

    def _sentry_before_send(event, hint):
        """Upstream Maps failures are recovered in-request; keep them as breadcrumbs."""
        exc_type, exc_value = (hint.get("exc_info") or (None, None, None))[:2]
        for exc_cls, category in _BREADCRUMB_ONLY:
            if exc_type is not None and issubclass(exc_type, exc_cls):
                sentry_sdk.add_breadcrumb(
                    category=category, message=str(exc_value or ""), level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Behind a reverse proxy, X-Forwarded-For carries the real client IP that
# Flask-Limiter keys on.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limits. One finder search costs dozens of billed Maps requests, so the
# finder route gets its own tighter limit. Counters live in process memory.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_FINDER = os.environ.get("RATE_LIMIT_FINDER", "20/hour")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Missing server key is allowed (callers may bring their own), but say so.
# ---------------------------------------------------------------------------
if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "[startup] No GOOGLE_MAPS_API_KEY in the environment; requests "
        "without apiKey or X-Maps-Api-Key will get a 500 (see .env.example)"
    )


@app.before_request
def _assign_request_id():
    g.request_id = uuid.uuid4().hex[:12]


REQUIRED_ENV = ("GOOGLE_MAPS_API_KEY",)


def _missing_env():
    return [name for name in REQUIRED_ENV if not os.environ.get(name)]


def _bad_request(message: str):
    return jsonify({"error": message}), 400


# ---------------------------------------------------------------------------
# Neighborhood finder
# ---------------------------------------------------------------------------

@app.route("/api/neighborhood-finder")
@limiter.limit(RATE_LIMIT_FINDER)
def neighborhood_finder():
    """Towns within maxTime minutes of (lat, lng) by the given mode.

    Query params: lat, lng, maxTime (minutes), mode (default driving),
    optional apiKey (or X-Maps-Api-Key header) to use the caller's own key.
    An empty ``cities`` array is a normal 200 response.
    """
    lat_raw = request.args.get("lat")
    lng_raw = request.args.get("lng")
    max_raw = request.args.get("maxTime")
    mode = request.args.get("mode") or "driving"

    if not lat_raw or not lng_raw or not max_raw:
        return _bad_request("Work location (lat, lng) and maxTime parameters are required")

    try:
        max_minutes = int(max_raw)
    except ValueError:
        return _bad_request("maxTime must be a positive number")

    try:
        work = Coordinate(float(lat_raw), float(lng_raw))
    except ValueError:
        return _bad_request("lat and lng must be numbers")

    try:
        context = build_search_context(work, mode, max_minutes)
    except InputValidationError as e:
        return _bad_request(str(e))

    api_key = resolve_api_key(
        request.headers.get("X-Maps-Api-Key") or request.args.get("apiKey")
    )
    if not api_key:
        return jsonify({"error": "Google Maps API key not configured"}), 500

    request_id = getattr(g, "request_id", "unknown")
    trace_ctx = FinderTrace(trace_id=request_id)
    set_trace(trace_ctx)
    try:
        maps = GoogleMapsClient(api_key)
        results = find_neighborhoods(
            maps,
            context.work_location,
            context.travel_mode,
            context.max_commute_minutes,
            catalog=get_catalog(),
        )
        trace_ctx.log_summary()
    finally:
        clear_trace()

    return jsonify({
        "cities": [r.to_dict() for r in results],
        "workLocation": work.to_dict(),
        "mode": mode,
        "maxTime": max_minutes,
    })


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Config, Maps call health and recovered-failure counters."""
    missing = _missing_env()
    config_ok = not missing
    # Loading the catalog may record a failure; read counters afterwards.
    catalog_records = len(get_catalog().records())
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
        "services": get_status(),
        "recovered_failures": get_failure_counts(),
        "city_catalog": {"records": catalog_records},
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({"error": "Rate limit exceeded: %s" % e.description}), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(e):
    return jsonify({
        "error": "Internal server error",
        "request_id": getattr(g, "request_id", None),
    }), 500


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)

import os
import logging
import threading
import uuid
from collections import OrderedDict
from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
from zv_trace import TraceContext, get_trace, set_trace, clear_trace
from cancellation import CancelledError
from datasets import DatasetLoadError, NoDatasetMappingError
from geocoder import NotFoundError, Suggestion
from http_fallback import UpstreamError, is_transient
from records import Record
from zonal_lookup import InvalidRadiusError, LookupSession, ZonalLookupService

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Superseded user actions are control flow, not errors
            if exc_type is not None and issubclass(exc_type, CancelledError):
                return None
            # Busy Overpass / Nominatim mirrors after exhausting fallback
            if exc_value is not None and isinstance(exc_value, UpstreamError) and is_transient(exc_value):
                sentry_sdk.add_breadcrumb(category="upstream", message=msg, level="warning")
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        environment=os.environ.get("ZONAL_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config["RATELIMIT_ENABLED"] = os.environ.get("RATELIMIT_ENABLED", "true").lower() == "true"

# Behind a reverse proxy, X-Forwarded-For carries the client address used
# for rate limiting and for anonymous session keys.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: every lookup fans out to shared public geocoding and
# Overpass mirrors, so per-client volume is capped before it reaches them.
# In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "120/minute")
RATE_LIMIT_LOOKUP = os.environ.get("RATE_LIMIT_LOOKUP", "30/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Lookup service and per-client sessions
# ---------------------------------------------------------------------------
# The session key is client-supplied, so the map is LRU-capped; an evicted
# client just gets a fresh session (default radius, no in-flight actions).
MAX_SESSIONS = int(os.environ.get("ZONAL_MAX_SESSIONS", "1000"))

_state_lock = threading.Lock()
_sessions = OrderedDict()


def get_service() -> ZonalLookupService:
    """Process-wide service; caches are shared by every client."""
    with _state_lock:
        service = app.extensions.get("zonal_service")
        if service is None:
            service = ZonalLookupService.build_default()
            app.extensions["zonal_service"] = service
        return service


def get_session() -> LookupSession:
    """Session for the calling client (X-Client-Id, else remote address)."""
    client_id = request.headers.get("X-Client-Id") or f"addr:{request.remote_addr}"
    service = get_service()
    evicted = []
    with _state_lock:
        session = _sessions.get(client_id)
        if session is None or session.service is not service:
            session = LookupSession(service)
            _sessions[client_id] = session
        _sessions.move_to_end(client_id)
        while len(_sessions) > max(MAX_SESSIONS, 1):
            _, stale = _sessions.popitem(last=False)
            evicted.append(stale)
    for stale in evicted:
        stale.close()
    if evicted:
        logger.info("Evicted %d idle client session(s); %d live", len(evicted), len(_sessions))
    return session


def reset_sessions():
    """Cancel and forget every client session."""
    with _state_lock:
        sessions = list(_sessions.values())
        _sessions.clear()
    for session in sessions:
        session.close()


# ---------------------------------------------------------------------------
# Request ID + trace: every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()
    set_trace(TraceContext(trace_id=g.request_id))


@app.teardown_request
def _finish_trace(exc):
    trace = get_trace()
    if trace and (trace.stages or trace.attempts):
        trace.log_summary()
    clear_trace()


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
class BadRequest(ValueError):
    pass


@app.errorhandler(CancelledError)
def _cancelled(exc):
    # A newer action from the same client superseded this one.
    return jsonify({"cancelled": True, "request_id": g.get("request_id")}), 200


@app.errorhandler(NotFoundError)
def _not_found(exc):
    return jsonify({"error": str(exc), "request_id": g.get("request_id")}), 404


@app.errorhandler(NoDatasetMappingError)
def _no_dataset(exc):
    return jsonify({
        "error": str(exc),
        "key": exc.key,
        "city": exc.city,
        "province": exc.province,
        "address": exc.address,
        "request_id": g.get("request_id"),
    }), 422


@app.errorhandler(DatasetLoadError)
def _dataset_load(exc):
    logger.error("Dataset load failed [request_id=%s]: %s", g.get("request_id"), exc)
    return jsonify({"error": str(exc), "request_id": g.get("request_id")}), 502


@app.errorhandler(UpstreamError)
def _upstream(exc):
    retryable = is_transient(exc)
    logger.warning(
        "Upstream failure [request_id=%s retryable=%s]: %s", g.get("request_id"), retryable, exc,
    )
    if retryable:
        return jsonify({
            "error": "The map service is busy. Please try again shortly.",
            "retryable": True,
            "request_id": g.get("request_id"),
        }), 503
    return jsonify({"error": str(exc), "retryable": False, "request_id": g.get("request_id")}), 502


@app.errorhandler(BadRequest)
@app.errorhandler(InvalidRadiusError)
def _bad_request(exc):
    return jsonify({"error": str(exc), "request_id": g.get("request_id")}), 400


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest("Expected a JSON object body")
    return data


def _float_arg(value, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be a number")


def _record_arg(data: dict) -> Record:
    raw = data.get("record")
    if not isinstance(raw, dict):
        raise BadRequest("record must be an object")
    return Record.from_dict(raw)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.route("/api/suggest")
def suggest():
    """Typeahead suggestions.  A superseded request answers cancelled."""
    results = get_session().suggest(request.args.get("q", ""))
    if results is None:
        return jsonify({"cancelled": True})
    return jsonify({"suggestions": [s.to_dict() for s in results]})


@app.route("/api/search", methods=["POST"])
@limiter.limit(RATE_LIMIT_LOOKUP)
def search():
    """Free-text search, or a picked suggestion (no second geocode)."""
    data = _json_body()
    session = get_session()
    if isinstance(data.get("suggestion"), dict):
        try:
            suggestion = Suggestion.from_dict(data["suggestion"])
        except ValueError as e:
            raise BadRequest(str(e))
        return jsonify(session.pick_suggestion(suggestion).to_dict())

    query = (data.get("q") or "").strip()
    if not query:
        raise BadRequest("q is required")
    return jsonify(session.search(query).to_dict())


@app.route("/api/pick", methods=["POST"])
@limiter.limit(RATE_LIMIT_LOOKUP)
def pick():
    """Map click ("click"), pin drag ("drag") or drag end ("dragend")."""
    data = _json_body()
    lat = _float_arg(data.get("lat"), "lat")
    lng = _float_arg(data.get("lng"), "lng")
    source = data.get("source") or "click"
    if source not in ("click", "drag", "dragend"):
        raise BadRequest("source must be click, drag or dragend")
    result = get_session().pick(lat, lng, source)
    if result is None:
        return jsonify({"throttled": True})
    return jsonify(result.to_dict())


@app.route("/api/facilities")
def facilities():
    lat = _float_arg(request.args.get("lat"), "lat")
    lng = _float_arg(request.args.get("lng"), "lng")
    radius = request.args.get("radius")
    if radius is not None:
        try:
            radius = int(radius)
        except ValueError:
            raise BadRequest("radius must be an integer")
    session = get_session()
    report = session.facilities(lat, lng, radius)
    return jsonify({"radius": session.radius, "reports": report.to_dict()})


@app.route("/api/records/focus", methods=["POST"])
@limiter.limit(RATE_LIMIT_LOOKUP)
def focus_record():
    record = _record_arg(_json_body())
    return jsonify(get_session().focus_record(record).to_dict())


@app.route("/api/records/highlight", methods=["POST"])
@limiter.limit(RATE_LIMIT_LOOKUP)
def highlight_record():
    record = _record_arg(_json_body())
    return jsonify(get_session().highlight(record).to_dict())


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    service = get_service()
    return jsonify({
        "status": "ok",
        "model_version": service.model.version,
        "caches": service.caches.stats(),
    })


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)

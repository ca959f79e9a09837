# Overview: Request decorators and response helpers for API routes.

from functools import wraps
from flask import request, jsonify, g, has_request_context


# Header used by admin/vendor tooling to attribute ledger events
ACTOR_HEADER = "X-Actor"
DEFAULT_ACTOR = "api"


def json_error(error: str, message: str, status: int):
    """Uniform error body: {"error": <code>, "message": <human readable>}."""
    return jsonify({"error": error, "message": message}), status


def current_actor() -> str:
    """
    Who triggered the operation, recorded as created_by on ledger events.

    Session handling lives outside this service; the calling tool passes the
    operator identity in X-Actor.
    """
    if not has_request_context():
        return DEFAULT_ACTOR
    return _header_actor()


def _header_actor() -> str:
    header = (request.headers.get(ACTOR_HEADER) or "").strip()
    return header[:128] or DEFAULT_ACTOR


def require_json(f):
    """
    Parse the request body as a JSON object into g.payload.

    Returns 400 if the body is missing, not JSON, or not an object.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return json_error("validation_error", "Request body must be a JSON object", 400)
        g.payload = payload
        g.actor = _header_actor()
        return f(*args, **kwargs)

    return decorated_function

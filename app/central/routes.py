from flask import Blueprint, jsonify

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return jsonify({"name": "app-central", "status": "ok"})


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancer probes. No DB access, minimal overhead.
    """
    return "ok", 200

from datetime import datetime

from flask import Blueprint, jsonify

from trust_monitor import __version__

bp = Blueprint("health", __name__)


@bp.get("/healthz")
def healthz():
    """
    Infrastructure liveness (load balancer / docker)
    ---
    tags: [Health]
    responses:
      200: {description: OK}
    """
    return jsonify({"ok": True}), 200


@bp.get("/api/monitor/health")
def monitor_health():
    """
    Audit system liveness (public)
    ---
    tags: [Health]
    responses:
      200: {description: "status, timestamp and version"}
    """
    now = datetime.utcnow().replace(microsecond=0)
    return jsonify({
        "ok": True,
        "data": {"status": "healthy", "timestamp": now.isoformat() + "Z", "version": __version__},
    }), 200

# trust_monitor/routes/monitor_routes.py
import hmac
import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from trust_monitor.models.audit_alert import ALERT_SEVERITIES, ALERT_STATUSES
from trust_monitor.models.audit_log import LOG_CATEGORIES, LOG_SEVERITIES
from trust_monitor.models.risk_score import USER_TYPES
from trust_monitor.services.monitor_agent import get_monitor

logger = logging.getLogger(__name__)

bp = Blueprint("monitor", __name__)  # URL prefix applied at registration in trust_monitor/__init__.py

MAX_PAGE_SIZE = 200


# --- Local helpers ---

def _as_bool(v) -> bool:
    return str(v).lower() in ("1", "true", "yes", "on")


def _iso(dt):
    return dt.replace(microsecond=0).isoformat() + "Z" if dt else None


def _int_arg(name: str, default: int, minimum: int = 1, maximum: int = None) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    value = max(minimum, value)
    return min(value, maximum) if maximum else value


def _log_to_dict(l):
    return {
        "id": l.id,
        "timestamp": _iso(l.timestamp),
        "type": l.category,
        "severity": l.severity,
        "endpoint": l.endpoint,
        "method": l.method,
        "statusCode": l.status_code,
        "responseTime": l.latency_ms,
        "error": l.error,
        "contractAddress": l.contract_address,
        "blockNumber": l.block_number,
        "eventName": l.event_name,
        "metadata": l.details,
    }


def _alert_to_dict(a):
    return {
        "alertId": a.alert_id,
        "type": a.type,
        "title": a.title,
        "description": a.description,
        "severity": a.severity,
        "status": a.status,
        "orderId": a.order_id,
        "walletAddress": a.wallet_address,
        "contractAddress": a.contract_address,
        "metadata": a.details,
        "recommendedAction": a.recommended_action,
        "resolvedAt": _iso(a.resolved_at),
        "resolvedBy": a.resolved_by,
        "createdAt": _iso(a.created_at),
        "updatedAt": _iso(a.updated_at),
    }


def _risk_to_dict(r):
    return {
        "walletAddress": r.wallet_address,
        "userType": r.user_type,
        "riskScore": r.risk_score,
        "riskLevel": r.risk_level,
        "factors": r.factors,
        "flagged": r.flagged,
        "lastUpdated": _iso(r.last_updated),
    }


def require_admin(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("AUDIT_ADMIN_KEY")
        if not expected:
            logger.error("AUDIT_ADMIN_KEY not configured; rejecting %s", request.path)
            return jsonify({"ok": False, "error": "Admin access not configured"}), 503
        provided = request.headers.get("X-Admin-Key") or ""
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            return jsonify({"ok": False, "error": "Unauthorized"}), 401
        return fn(*args, **kwargs)
    return wrapper


# --- Routes ---

@bp.post("/start")
@require_admin
def start():
    """
    Monitor: start the agent
    ---
    tags: [Monitor]
    parameters:
      - {in: header, name: X-Admin-Key, required: true, type: string}
    responses:
      200: {description: OK (idempotent)}
      401: {description: Unauthorized}
    """
    started = get_monitor().start()
    msg = "Audit agent started" if started else "Audit agent already running"
    return jsonify({"ok": True, "message": msg, "running": True}), 200


@bp.post("/stop")
@require_admin
def stop():
    """
    Monitor: stop the agent (waits for the in-flight cycle)
    ---
    tags: [Monitor]
    parameters:
      - {in: header, name: X-Admin-Key, required: true, type: string}
    responses:
      200: {description: OK (idempotent)}
      401: {description: Unauthorized}
    """
    stopped = get_monitor().stop()
    msg = "Audit agent stopped" if stopped else "Audit agent was not running"
    return jsonify({"ok": True, "message": msg, "running": False}), 200


@bp.post("/run")
@require_admin
def run_now():
    """
    Monitor: run a full cycle now
    ---
    tags: [Monitor]
    parameters:
      - {in: header, name: X-Admin-Key, required: true, type: string}
    responses:
      200: {description: Cycle finished (may carry partial errors)}
      401: {description: Unauthorized}
    """
    summary = get_monitor().run_full_cycle()
    return jsonify({"ok": True, "message": "Full audit completed", "cycle": summary.to_dict()}), 200


@bp.get("/status")
@require_admin
def status():
    """
    Monitor: scheduler status
    ---
    tags: [Monitor]
    parameters:
      - {in: header, name: X-Admin-Key, required: true, type: string}
    responses:
      200: {description: OK}
    """
    return jsonify({"ok": True, "data": get_monitor().status()}), 200


@bp.get("/logs")
@require_admin
def logs():
    """
    Monitor: paginated audit logs (retention window)
    ---
    tags: [Monitor]
    parameters:
      - {in: header, name: X-Admin-Key, required: true, type: string}
      - {in: query, name: page, type: integer, default: 1}
      - {in: query, name: limit, type: integer, default: 50}
      - {in: query, name: type, type: string, enum: [health_check, endpoint_test, contract_scan, fraud_detection]}
      - {in: query, name: severity, type: string, enum: [info, warning, error, critical]}
    responses:
      200: {description: OK}
      400: {description: Invalid filter}
    """
    page = _int_arg("page", 1)
    limit = _int_arg("limit", 50, maximum=MAX_PAGE_SIZE)
    category = request.args.get("type") or request.args.get("category")
    severity = request.args.get("severity")

    if category and category not in LOG_CATEGORIES:
        return jsonify({"ok": False, "error": f"Invalid type '{category}'"}), 400
    if severity and severity not in LOG_SEVERITIES:
        return jsonify({"ok": False, "error": f"Invalid severity '{severity}'"}), 400

    items, total = get_monitor().store.query_logs(page=page, limit=limit, category=category, severity=severity)
    return jsonify({
        "ok": True,
        "data": {
            "logs": [_log_to_dict(l) for l in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        },
    }), 200


@bp.get("/alerts")
@require_admin
def alerts():
    """
    Monitor: alerts (status=open by default)
    ---
    tags: [Monitor]
    parameters:
      - {in: header, name: X-Admin-Key, required: true, type: string}
      - {in: query, name: status, type: string, default: open, enum: [open, investigating, resolved, false_positive]}
      - {in: query, name: severity, type: string, enum: [low, medium, high, critical]}
    responses:
      200: {description: OK}
      400: {description: Invalid filter}
    """
    status_filter = request.args.get("status", "open")
    severity = request.args.get("severity")
    if status_filter not in ALERT_STATUSES:
        return jsonify({"ok": False, "error": f"Invalid status '{status_filter}'"}), 400
    if severity and severity not in ALERT_SEVERITIES:
        return jsonify({"ok": False, "error": f"Invalid severity '{severity}'"}), 400

    items = get_monitor().store.query_alerts(status=status_filter, severity=severity)
    return jsonify({"ok": True, "data": [_alert_to_dict(a) for a in items]}), 200


@bp.patch("/alerts/<alert_id>")
@require_admin
def resolve_alert(alert_id: str):
    """
    Monitor: resolve / change the status of an alert
    ---
    tags: [Monitor]
    consumes: [application/json]
    parameters:
      - {in: header, name: X-Admin-Key, required: true, type: string}
      - {in: path, name: alert_id, required: true, type: string}
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [status]
          properties:
            status: {type: string, enum: [open, investigating, resolved, false_positive], example: resolved}
            resolvedBy: {type: string, example: "ops@marketplace"}
    responses:
      200: {description: OK}
      400: {description: Invalid status}
      404: {description: Alert not found}
    """
    data = request.get_json(silent=True) or {}
    new_status = (data.get("status") or "").strip()
    resolved_by = data.get("resolvedBy") or data.get("resolved_by")

    if new_status not in ALERT_STATUSES:
        return jsonify({"ok": False, "error": f"Invalid status '{new_status}'"}), 400

    alert = get_monitor().store.resolve_alert(alert_id, new_status, resolved_by)
    if alert is None:
        return jsonify({"ok": False, "error": "Alert not found"}), 404
    return jsonify({"ok": True, "data": _alert_to_dict(alert)}), 200


@bp.get("/report/latest")
@require_admin
def latest_report():
    """
    Monitor: report for the last 24h
    ---
    tags: [Monitor]
    parameters:
      - {in: header, name: X-Admin-Key, required: true, type: string}
    responses:
      200: {description: OK}
    """
    return jsonify({"ok": True, "data": get_monitor().generate_report()}), 200


@bp.get("/risk-scores")
@require_admin
def risk_scores():
    """
    Monitor: risk scores per wallet
    ---
    tags: [Monitor]
    parameters:
      - {in: header, name: X-Admin-Key, required: true, type: string}
      - {in: query, name: flagged, type: boolean}
      - {in: query, name: userType, type: string, enum: [buyer, seller]}
    responses:
      200: {description: OK}
      400: {description: Invalid filter}
    """
    flagged_arg = request.args.get("flagged")
    flagged = _as_bool(flagged_arg) if flagged_arg is not None else None
    user_type = request.args.get("userType")
    if user_type and user_type not in USER_TYPES:
        return jsonify({"ok": False, "error": f"Invalid userType '{user_type}'"}), 400

    items = get_monitor().store.query_risk_scores(flagged=flagged, user_type=user_type)
    return jsonify({"ok": True, "data": [_risk_to_dict(r) for r in items]}), 200

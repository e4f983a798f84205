# trust_monitor/routes/deep_scan_routes.py
import logging

from flask import Blueprint, current_app, jsonify, request

from trust_monitor.services.exceptions import (
    ChainReadError,
    MonitorConfigError,
    OrderNotFound,
    PaymentVerificationError,
)
from trust_monitor.services.monitor_agent import get_monitor

logger = logging.getLogger(__name__)

bp = Blueprint("deep_scan", __name__)

PAYMENT_HEADER = "X-Payment-Tx"


@bp.post("/deep-scan/<order_id>")
def deep_scan(order_id: str):
    """
    Deep scan of an order (x402 payment)
    Without an X-Payment-Tx header it answers 402 with the quote; with one it
    verifies the payment on-chain and runs the analysis.
    ---
    tags: [Deep Scan]
    parameters:
      - {in: path, name: order_id, required: true, type: string}
      - {in: header, name: X-Payment-Tx, required: false, type: string, description: Payment transaction hash}
    responses:
      200: {description: Deep scan result}
      400: {description: Invalid or reused payment}
      402: {description: Payment Required (quote)}
      404: {description: Order not found}
      502: {description: Chain unavailable}
      503: {description: Incomplete configuration}
    """
    monitor = get_monitor()
    gate, scanner = monitor.payment_gate, monitor.deep_scanner
    payment_tx = (request.headers.get(PAYMENT_HEADER) or "").strip()

    try:
        if not payment_tx:
            quote = gate.generate_payment_request("deepScan", current_app.config.get("DEEP_SCAN_PRICE", "0.05"))
            return jsonify({"ok": False, "message": "Payment Required", **quote.to_dict()}), 402

        gate.require_payment(payment_tx)
        result = scanner.perform_deep_scan(order_id)
        return jsonify({"ok": True, "data": result.to_dict()}), 200

    except PaymentVerificationError as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    except OrderNotFound as e:
        return jsonify({"ok": False, "error": str(e)}), 404
    except MonitorConfigError as e:
        logger.error("Deep scan misconfigured: %s", e)
        return jsonify({"ok": False, "error": str(e)}), 503
    except ChainReadError as e:
        return jsonify({"ok": False, "error": str(e)}), 502

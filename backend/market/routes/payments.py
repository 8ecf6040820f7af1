# Overview: Flask API routes for payment triggers; parses input and returns JSON responses.

# backend/market/routes/payments.py
"""
Payment Trigger API Routes

WHY: Payment confirmation reaches the backend three ways. Each route is a
thin shell over payment_service; none of them settles anything itself.

ROUTES:
- POST /api/payment/webhook                 gateway notification (signed, no bearer token)
- POST /api/payment/manual-verify/<id>      admin override
- GET  /api/payment/check-status/<ref>      client poll (payment id or order id)

RESPONSES (webhook):
    200: processed, including duplicates and no-ops
    400: malformed notification
    403: invalid signature (nothing read or written)
    404: unknown payment id
    500: internal failure, gateway may redeliver
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import payment_service
from ..services.payment_service import PaymentError, AuthenticationError, PaymentAccessDeniedError
from ..services.settlement_service import (
    AlreadySettledError,
    NotFoundError,
    TransactionAbortError,
    FallbackPartialFailureError,
)
from ..decorators import require_auth, require_role
from ..models.auth import ROLE_ADMIN


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payment")


@payments_bp.post("/webhook")
def gateway_notification_route():
    """
    Gateway notification endpoint.

    Request body:
    {
        "order_id": "ORDER-1712345678-123",
        "transaction_status": "settlement",
        "fraud_status": "accept",
        "status_code": "200",
        "gross_amount": "100000.00",
        "signature_key": "<sha512 hex>"
    }
    """
    try:
        payload = request.get_json(silent=True)
        outcome = payment_service.handle_gateway_notification(payload)
        return jsonify({"message": "Notification processed", **outcome}), 200

    except AuthenticationError as e:
        return jsonify({"error": str(e)}), 403
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PaymentError as e:
        return jsonify({"error": str(e)}), 400
    except FallbackPartialFailureError:
        current_app.logger.exception("Gateway notification partially applied; reconcile manually")
        return jsonify({"error": "Internal server error"}), 500
    except TransactionAbortError:
        current_app.logger.exception("Gateway notification settlement aborted")
        return jsonify({"error": "Internal server error"}), 500
    except Exception:
        current_app.logger.exception("Failed to handle gateway notification")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/manual-verify/<int:order_id>")
@require_auth
@require_role(ROLE_ADMIN)
def manual_verify_route(order_id: int):
    """
    Mark an order as paid without a gateway confirmation.

    Available to: admin

    Returns:
        200: Settled, with breakdown
        400: Order already paid
        404: Order not found
        500: Settlement failed (safe to retry unless "degraded")
    """
    try:
        result = payment_service.manual_verify_payment(order_id, actor=g.current_user)
        return jsonify({
            "message": "Order manually verified as paid",
            "settlement": result.to_dict(),
        }), 200

    except AlreadySettledError:
        return jsonify({"error": "Order already paid"}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except FallbackPartialFailureError as e:
        current_app.logger.exception("Manual verify partially applied for order %s", order_id)
        return jsonify({
            "error": "Settlement partially applied; manual reconciliation required",
            "committed_steps": e.committed_steps,
        }), 500
    except TransactionAbortError:
        current_app.logger.exception("Manual verify aborted for order %s", order_id)
        return jsonify({"error": "Settlement failed, please retry"}), 500
    except Exception:
        current_app.logger.exception("Failed to manually verify payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/check-status/<ref>")
@require_auth
def check_status_route(ref: str):
    """
    Ask the gateway for the payment status and settle if it is paid.

    Buyers may only poll their own orders. When the gateway cannot be
    reached the locally known status is returned (still 200).
    """
    try:
        result = payment_service.check_payment_status(ref, requester=g.current_user)
        return jsonify(result), 200

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PaymentAccessDeniedError as e:
        return jsonify({"error": str(e)}), 403
    except PaymentError as e:
        return jsonify({"error": str(e)}), 400
    except TransactionAbortError:
        current_app.logger.exception("Status poll settlement aborted for %s", ref)
        return jsonify({"error": "Internal server error"}), 500
    except Exception:
        current_app.logger.exception("Failed to check payment status")
        return jsonify({"error": "Internal server error"}), 500

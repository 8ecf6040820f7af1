# Overview: Flask API routes for the admin treasury console (balances and payouts).

# backend/market/routes/treasury.py
"""
Treasury API Routes

All routes require the admin role.

- GET  /api/admin/treasury                 balances, counters, pending payout totals
- GET  /api/admin/payouts                  history (filters: status, store_id, type, limit)
- GET  /api/admin/payouts/pending          pending payouts grouped by store
- POST /api/admin/payouts                  create a manual payout
- POST /api/admin/payouts/<id>/complete    disburse: debits seller pending balance
- POST /api/admin/payouts/<id>/fail        mark failed (no ledger effect)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import payout_service, treasury_service
from ..services.payout_service import PayoutError, PayoutNotFoundError
from ..decorators import require_auth, require_role
from ..models.auth import ROLE_ADMIN


treasury_bp = Blueprint("treasury", __name__, url_prefix="/api/admin")


@treasury_bp.get("/treasury")
@require_auth
@require_role(ROLE_ADMIN)
def get_treasury_route():
    try:
        return jsonify({"treasury": treasury_service.get_treasury_summary()}), 200
    except Exception:
        current_app.logger.exception("Failed to load treasury")
        return jsonify({"error": "Internal server error"}), 500


@treasury_bp.get("/payouts")
@require_auth
@require_role(ROLE_ADMIN)
def list_payouts_route():
    try:
        payouts = payout_service.list_payouts(
            status=request.args.get("status"),
            store_id=request.args.get("store_id", type=int),
            payout_type=request.args.get("type"),
            limit=request.args.get("limit", 100, type=int),
        )
        return jsonify({"payouts": [p.to_dict() for p in payouts]}), 200
    except PayoutError as e:
        return jsonify({"error": str(e)}), 400


@treasury_bp.get("/payouts/pending")
@require_auth
@require_role(ROLE_ADMIN)
def pending_payouts_route():
    grouped = payout_service.pending_payouts_by_store()
    return jsonify({
        "grouped_by_store": grouped,
        "total_pending": sum(group["total_amount"] for group in grouped),
    }), 200


@treasury_bp.post("/payouts")
@require_auth
@require_role(ROLE_ADMIN)
def create_manual_payout_route():
    """
    Request body:
    {
        "store_id": 3,
        "amount": 50000,
        "notes": "optional"
    }
    """
    data = request.get_json(silent=True) or {}
    store_id = data.get("store_id")
    amount = data.get("amount")
    if not store_id or amount is None:
        return jsonify({"error": "store_id and amount required"}), 400

    try:
        payout = payout_service.create_manual_payout(
            store_id=store_id,
            amount=amount,
            actor_user_id=g.current_user.id,
            notes=data.get("notes") or "",
        )
        return jsonify({"payout": payout.to_dict()}), 201
    except PayoutNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PayoutError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create manual payout")
        return jsonify({"error": "Internal server error"}), 500


@treasury_bp.post("/payouts/<int:payout_id>/complete")
@require_auth
@require_role(ROLE_ADMIN)
def complete_payout_route(payout_id: int):
    try:
        payout = payout_service.complete_payout(payout_id, actor_user_id=g.current_user.id)
        return jsonify({
            "payout": payout.to_dict(),
            "treasury": treasury_service.get_treasury_summary(),
        }), 200
    except PayoutNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PayoutError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to complete payout")
        return jsonify({"error": "Internal server error"}), 500


@treasury_bp.post("/payouts/<int:payout_id>/fail")
@require_auth
@require_role(ROLE_ADMIN)
def fail_payout_route(payout_id: int):
    data = request.get_json(silent=True) or {}
    try:
        payout = payout_service.fail_payout(
            payout_id,
            actor_user_id=g.current_user.id,
            reason=data.get("reason") or "",
        )
        return jsonify({"payout": payout.to_dict()}), 200
    except PayoutNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PayoutError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to mark payout failed")
        return jsonify({"error": "Internal server error"}), 500

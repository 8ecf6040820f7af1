# Overview: Flask API routes for order status transitions and order reads.

# backend/market/routes/orders.py
"""
Order Lifecycle API Routes

- PATCH /api/admin/orders/<id>/status   admin: pending, shipped, delivered, canceled
- PUT   /api/seller/orders/<id>/status  seller: pending, shipped (own store)
- GET   /api/orders/<id>                buyer (own), seller (own store), admin

SECURITY: The acting user comes from the bearer token, never the body.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_lifecycle_service
from ..services.order_lifecycle_service import (
    OrderTransitionError,
    OrderStateConflictError,
    OrderPermissionError,
    OrderNotFoundError,
)
from ..decorators import require_auth, require_role
from ..models.auth import ROLE_ADMIN, ROLE_SELLER


orders_bp = Blueprint("orders", __name__, url_prefix="/api")


def _update_status(order_id: int):
    data = request.get_json(silent=True) or {}
    status = data.get("status")
    if not status:
        return jsonify({"error": "status required"}), 400

    try:
        order = order_lifecycle_service.update_order_status(
            order_id,
            status,
            actor=g.current_user,
            description=data.get("description"),
            tracking_number=data.get("tracking_number"),
        )
        return jsonify({
            "message": "Order status updated successfully",
            "order": order.to_dict(),
        }), 200

    except OrderStateConflictError as e:
        return jsonify({"error": str(e)}), 409
    except OrderTransitionError as e:
        return jsonify({"error": str(e)}), 400
    except OrderPermissionError as e:
        return jsonify({"error": str(e)}), 403
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/admin/orders/<int:order_id>/status")
@require_auth
@require_role(ROLE_ADMIN)
def admin_update_order_status_route(order_id: int):
    """
    Request body:
    {
        "status": "shipped",
        "description": "optional tracking text",
        "tracking_number": "optional"
    }
    """
    return _update_status(order_id)


@orders_bp.put("/seller/orders/<int:order_id>/status")
@require_auth
@require_role(ROLE_SELLER)
def seller_update_order_status_route(order_id: int):
    """Sellers may only mark their own store's orders as pending or shipped."""
    return _update_status(order_id)


@orders_bp.get("/orders/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_lifecycle_service.get_order_for(g.current_user, order_id)
        return jsonify({"order": order.to_dict()}), 200
    except OrderPermissionError as e:
        return jsonify({"error": str(e)}), 403
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404

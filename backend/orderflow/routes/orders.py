# Overview: Flask API routes for order placement and lifecycle; parses input and returns JSON responses.

# backend/orderflow/routes/orders.py
"""Order API routes"""

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..actors import ADMIN, CUSTOMER_SESSION, can_view_order, require_restaurant_member, staff_restaurant_id
from ..errors import NotFoundError, OrderflowError
from ..extensions import db
from ..models import Restaurant
from ..services import assignment_service, order_service
from ..decorators import require_actor
from ..time_utils import parse_iso_datetime


orders_bp = Blueprint("orders", __name__, url_prefix="/api")


PLACE_ORDER_FIELDS = (
    "session_id",
    "table_id",
    "order_type",
    "payment_method",
    "tip_cents",
    "tax_cents",
    "subtotal_cents",
    "total_cents",
    "customer_name",
    "special_instructions",
)


def _load_visible_order(order_id: int):
    order = order_service.get_order(order_id)
    if not can_view_order(g.actor, order, staff_restaurant_id(g.actor)):
        # Don't reveal other tenants' orders
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


@orders_bp.post("/restaurants/<int:restaurant_id>/orders")
@require_actor()
def place_order_route(restaurant_id: int):
    """
    Place an order and route it (auto-claim, announce, or queue).

    Body: {"items": [{"item_name", "quantity", "unit_price_cents", "menu_item_id"?, "note"?}],
           "order_type"?, "payment_method"?, "tip_cents"?, "tax_cents"?, "total_cents"?, ...}
    """
    try:
        data = request.get_json() or {}
        fields = {k: data[k] for k in PLACE_ORDER_FIELDS if data.get(k) is not None}

        order = assignment_service.place_order(restaurant_id, data.get("items"), g.actor, **fields)

        return jsonify({"order": order_service.order_summary(order)}), 201

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to place order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/restaurants/<int:restaurant_id>/orders")
@require_actor()
def list_orders_route(restaurant_id: int):
    """
    List a restaurant's orders, newest first.

    Customers only see their own session's orders.
    Query: status (comma-separated), assigned_staff_id, start, end, limit
    """
    try:
        restaurant = db.session.get(Restaurant, restaurant_id)
        if restaurant is None:
            return jsonify({"error": "Restaurant not found"}), 404

        session_id = None
        if g.actor.kind == CUSTOMER_SESSION:
            session_id = g.actor.id
        else:
            require_restaurant_member(g.actor, restaurant)

        statuses = [s for s in (request.args.get("status") or "").split(",") if s.strip()]
        try:
            orders = order_service.list_orders(
                restaurant_id=restaurant_id,
                statuses=statuses or None,
                assigned_staff_id=request.args.get("assigned_staff_id", type=int),
                session_id=session_id,
                start=parse_iso_datetime(request.args.get("start")),
                end=parse_iso_datetime(request.args.get("end")),
                limit=min(request.args.get("limit", 200, type=int), 500),
            )
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        return jsonify({"orders": [o.to_dict(include_items=False) for o in orders]}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/orders/<int:order_id>")
@require_actor()
def get_order_route(order_id: int):
    try:
        order = _load_visible_order(order_id)
        return jsonify({"order": order_service.order_summary(order)}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/restaurants/<int:restaurant_id>/orders/track/<order_number>")
@require_actor()
def track_order_route(restaurant_id: int, order_number: str):
    """Track an order by its human-readable number (e.g. ORD-0042)."""
    try:
        order = order_service.get_order_by_number(restaurant_id, order_number)
        if not can_view_order(g.actor, order, staff_restaurant_id(g.actor)):
            raise NotFoundError("Order not found", details={"order_number": order_number})

        return jsonify({
            "order": order_service.order_summary(order),
            "tracking_steps": order_service.tracking_steps(order),
        }), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to track order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# Items
# =============================================================================

@orders_bp.post("/orders/<int:order_id>/items")
@require_actor()
def add_item_route(order_id: int):
    try:
        data = request.get_json() or {}
        order = order_service.add_item(order_id, g.actor, data)
        return jsonify({"order": order_service.order_summary(order)}), 201

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to add order item")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/orders/<int:order_id>/items/<int:item_id>")
@require_actor()
def update_item_route(order_id: int, item_id: int):
    try:
        data = request.get_json() or {}
        if "quantity" not in data:
            return jsonify({"error": "quantity required"}), 400

        order = order_service.update_item_quantity(order_id, g.actor, item_id, data.get("quantity"))
        return jsonify({"order": order_service.order_summary(order)}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order item")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/orders/<int:order_id>/items/<int:item_id>")
@require_actor()
def remove_item_route(order_id: int, item_id: int):
    try:
        order = order_service.remove_item(order_id, g.actor, item_id)
        return jsonify({"order": order_service.order_summary(order)}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to remove order item")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# Lifecycle
# =============================================================================

@orders_bp.post("/orders/<int:order_id>/claim")
@require_actor("staff")
def claim_order_route(order_id: int):
    """
    Claim a pending order for the calling staff member.

    409 already_claimed: someone else got it first; refetch before retrying.
    """
    try:
        order = assignment_service.claim_order(order_id, g.actor.staff_id)
        return jsonify({"order": order_service.order_summary(order)}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to claim order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/orders/<int:order_id>/transition")
@require_actor()
def transition_order_route(order_id: int):
    """
    Move an order to a target status.

    Body: {"status": "preparing" | "ready" | "served" | "delivered" | "completed"
                     | "cancelled" | "assigned" | "pending",
           "reason"?, "payment_reference"?, "payment_method"?}
    """
    try:
        data = request.get_json() or {}
        target = data.get("status")
        if not target:
            return jsonify({"error": "status required"}), 400

        order = assignment_service.transition_order(
            order_id,
            target,
            g.actor,
            reason=data.get("reason") or "",
            payment_reference=data.get("payment_reference"),
            payment_method=data.get("payment_method"),
        )
        return jsonify({"order": order_service.order_summary(order)}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to transition order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/orders/<int:order_id>/release")
@require_actor("staff", "owner", ADMIN)
def release_order_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = assignment_service.release_order(order_id, g.actor, data.get("reason") or "")
        return jsonify({"order": order_service.order_summary(order)}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to release order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/orders/<int:order_id>/cancel")
@require_actor()
def cancel_order_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = assignment_service.cancel_order(order_id, g.actor, data.get("reason") or "")
        return jsonify({"order": order_service.order_summary(order)}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/orders/<int:order_id>/complete")
@require_actor("staff", "owner", ADMIN)
def complete_order_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = assignment_service.complete_order(
            order_id,
            g.actor,
            payment_reference=data.get("payment_reference"),
            payment_method=data.get("payment_method"),
        )
        return jsonify({"order": order_service.order_summary(order)}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to complete order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/orders/<int:order_id>/payment-failed")
@require_actor()
def payment_failed_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.record_payment_failure(order_id, g.actor, data.get("reference"))
        return jsonify({"order": order_service.order_summary(order)}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record payment failure")
        return jsonify({"error": "Internal server error"}), 500

# Overview: Flask API routes for the unassigned-order queue; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..actors import ADMIN, require_owner, require_restaurant_member
from ..errors import OrderflowError
from ..extensions import db
from ..models import Restaurant
from ..services import order_service, queue_service
from ..decorators import require_actor


queue_bp = Blueprint("queue", __name__, url_prefix="/api")


@queue_bp.get("/restaurants/<int:restaurant_id>/queue")
@require_actor("staff", "owner", ADMIN)
def list_queue_route(restaurant_id: int):
    try:
        restaurant = db.session.get(Restaurant, restaurant_id)
        if restaurant is None:
            return jsonify({"error": "Restaurant not found"}), 404
        require_restaurant_member(g.actor, restaurant)

        return jsonify({
            "queue": queue_service.list_queue(restaurant_id),
            "average_fulfillment_minutes": round(
                queue_service.average_recent_fulfillment_minutes(restaurant_id), 1
            ),
        }), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list queue")
        return jsonify({"error": "Internal server error"}), 500


@queue_bp.put("/orders/<int:order_id>/queue-priority")
@require_actor("owner", ADMIN)
def set_priority_route(order_id: int):
    """Escalate a queued order. Body: {"priority": "normal" | "high" | "urgent"}"""
    try:
        data = request.get_json() or {}
        priority = data.get("priority")
        if not priority:
            return jsonify({"error": "priority required"}), 400

        order = order_service.get_order(order_id)
        require_owner(g.actor, order.restaurant)

        entry = queue_service.set_priority(order_id, priority)
        return jsonify({"entry": entry.to_dict()}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to set queue priority")
        return jsonify({"error": "Internal server error"}), 500

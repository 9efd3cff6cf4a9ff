# Overview: Flask API routes for staff availability and workload; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..actors import ADMIN, require_owner, require_restaurant_member
from ..errors import AuthorizationError, OrderflowError
from ..extensions import db
from ..models import Restaurant
from ..services import assignment_service, staff_service
from ..decorators import require_actor


staff_bp = Blueprint("staff", __name__, url_prefix="/api")


@staff_bp.put("/staff/<int:staff_id>/online")
@require_actor("staff", "owner", ADMIN)
def set_online_route(staff_id: int):
    """
    Go online/offline for today.

    Body: {"online": true|false}
    Staff toggle themselves; the owner may toggle any of their staff.
    """
    try:
        data = request.get_json() or {}
        online = data.get("online")
        if not isinstance(online, bool):
            return jsonify({"error": "online must be true or false"}), 400

        staff = staff_service.get_staff(staff_id)
        if g.actor.staff_id != staff.id:
            require_owner(g.actor, staff.restaurant)

        availability = staff_service.set_online(staff.id, online)
        return jsonify({"availability": availability.to_dict()}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to set staff availability")
        return jsonify({"error": "Internal server error"}), 500


@staff_bp.put("/staff/<int:staff_id>/capacity")
@require_actor("owner", ADMIN)
def set_capacity_route(staff_id: int):
    """Owner setting: concurrent-order cap for today. Body: {"max_capacity": int}"""
    try:
        data = request.get_json() or {}
        staff = staff_service.get_staff(staff_id)
        require_owner(g.actor, staff.restaurant)

        availability = staff_service.set_max_capacity(staff.id, data.get("max_capacity"))
        return jsonify({"availability": availability.to_dict()}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to set staff capacity")
        return jsonify({"error": "Internal server error"}), 500


@staff_bp.get("/restaurants/<int:restaurant_id>/staff/workload")
@require_actor("staff", "owner", ADMIN)
def workload_route(restaurant_id: int):
    try:
        restaurant = db.session.get(Restaurant, restaurant_id)
        if restaurant is None:
            return jsonify({"error": "Restaurant not found"}), 404
        require_restaurant_member(g.actor, restaurant)

        return jsonify({"staff": staff_service.staff_workload(restaurant_id)}), 200

    except AuthorizationError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load staff workload")
        return jsonify({"error": "Internal server error"}), 500


@staff_bp.get("/restaurants/<int:restaurant_id>/staff/stale-assignments")
@require_actor("owner", ADMIN)
def stale_assignments_route(restaurant_id: int):
    """Orders claimed but not started for longer than ?minutes= (default from config)."""
    try:
        restaurant = db.session.get(Restaurant, restaurant_id)
        if restaurant is None:
            return jsonify({"error": "Restaurant not found"}), 404
        require_owner(g.actor, restaurant)

        rows = assignment_service.stale_assignments(
            restaurant_id,
            older_than_minutes=request.args.get("minutes", type=int),
        )
        return jsonify({"orders": rows}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load stale assignments")
        return jsonify({"error": "Internal server error"}), 500

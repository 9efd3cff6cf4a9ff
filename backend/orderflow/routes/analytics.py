# Overview: Flask API routes for dashboard analytics; parses input and returns JSON responses.

"""
Analytics API routes (pull-based, read-only).

Owners see their own restaurant; platform-wide figures are admin only.
Dates are ISO-8601 (start inclusive, end exclusive) on order creation time.
"""

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..actors import ADMIN, require_owner
from ..errors import AuthorizationError, NotFoundError, OrderflowError
from ..extensions import db
from ..models import Restaurant
from ..services import analytics_service
from ..decorators import require_actor


analytics_bp = Blueprint("analytics", __name__, url_prefix="/api/analytics")


def _scoped_restaurant_id() -> int | None:
    """restaurant_id query arg, checked against the caller. None = platform-wide (admin only)."""
    restaurant_id = request.args.get("restaurant_id", type=int)
    if restaurant_id is None:
        if g.actor.kind != ADMIN:
            raise AuthorizationError("restaurant_id is required")
        return None

    restaurant = db.session.get(Restaurant, restaurant_id)
    if restaurant is None:
        raise NotFoundError("Restaurant not found")
    require_owner(g.actor, restaurant)
    return restaurant_id


@analytics_bp.get("/revenue")
@require_actor("owner", ADMIN)
def revenue_route():
    try:
        summary = analytics_service.revenue_summary(
            restaurant_id=_scoped_restaurant_id(),
            start=request.args.get("start"),
            end=request.args.get("end"),
        )
        return jsonify({"summary": summary}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to compute revenue summary")
        return jsonify({"error": "Internal server error"}), 500


@analytics_bp.get("/timeline")
@require_actor("owner", ADMIN)
def timeline_route():
    try:
        rows = analytics_service.revenue_timeline(
            restaurant_id=_scoped_restaurant_id(),
            start=request.args.get("start"),
            end=request.args.get("end"),
            group_by=request.args.get("group_by", "day"),
        )
        return jsonify({"timeline": rows}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to compute revenue timeline")
        return jsonify({"error": "Internal server error"}), 500


@analytics_bp.get("/restaurants")
@require_actor(ADMIN)
def restaurants_route():
    try:
        rows = analytics_service.restaurant_breakdown(
            start=request.args.get("start"),
            end=request.args.get("end"),
            limit=min(request.args.get("limit", 10, type=int), 100),
        )
        return jsonify({"restaurants": rows}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to compute restaurant breakdown")
        return jsonify({"error": "Internal server error"}), 500


@analytics_bp.get("/staff-performance")
@require_actor("owner", ADMIN)
def staff_performance_route():
    try:
        restaurant_id = request.args.get("restaurant_id", type=int)
        if restaurant_id is None:
            return jsonify({"error": "restaurant_id required"}), 400
        restaurant = db.session.get(Restaurant, restaurant_id)
        if restaurant is None:
            return jsonify({"error": "Restaurant not found"}), 404
        require_owner(g.actor, restaurant)

        rows = analytics_service.staff_performance(
            restaurant_id,
            start=request.args.get("start"),
            end=request.args.get("end"),
        )
        return jsonify({"staff": rows}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to compute staff performance")
        return jsonify({"error": "Internal server error"}), 500

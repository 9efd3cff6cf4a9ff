# Overview: Flask API routes for recipient notifications; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..errors import OrderflowError
from ..services import notification_service
from ..decorators import require_actor


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_actor("customer_session", "staff", "owner")
def list_notifications_route():
    """Unexpired notifications for the caller, newest first. ?unread=1 for unread only."""
    try:
        unread_only = request.args.get("unread", "").lower() in {"1", "true", "yes"}
        notifications = notification_service.list_for_recipient(
            g.actor.kind,
            g.actor.id,
            unread_only=unread_only,
            limit=min(request.args.get("limit", 100, type=int), 500),
        )
        return jsonify({
            "notifications": [n.to_dict() for n in notifications],
            "unread_count": sum(1 for n in notifications if not n.is_read),
        }), 200

    except Exception:
        current_app.logger.exception("Failed to list notifications")
        return jsonify({"error": "Internal server error"}), 500


@notifications_bp.post("/<int:notification_id>/read")
@require_actor("customer_session", "staff", "owner")
def mark_read_route(notification_id: int):
    try:
        notification = notification_service.mark_read(notification_id, g.actor.kind, g.actor.id)
        return jsonify({"notification": notification.to_dict()}), 200

    except OrderflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark notification read")
        return jsonify({"error": "Internal server error"}), 500


@notifications_bp.post("/read-all")
@require_actor("customer_session", "staff", "owner")
def mark_all_read_route():
    try:
        updated = notification_service.mark_all_read(g.actor.kind, g.actor.id)
        return jsonify({"updated": updated}), 200

    except Exception:
        current_app.logger.exception("Failed to mark notifications read")
        return jsonify({"error": "Internal server error"}), 500

from __future__ import annotations

from flask import Blueprint, jsonify, request, g

from ..decorators import require_actor
from ..services import notification_service

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.route("", methods=["GET"])
@require_actor
def list_notifications():
    limit = min(request.args.get("limit", 30, type=int), 200)
    unread_only = request.args.get("unread_only", "false").lower() in {"1", "true", "yes"}
    result = notification_service.list_notifications(g.user_id, limit=limit, unread_only=unread_only)
    return jsonify({"notifications": result, "unread_count": notification_service.get_unread_count(g.user_id)})


@notifications_bp.route("/unread-count", methods=["GET"])
@require_actor
def unread_count():
    return jsonify({"unread_count": notification_service.get_unread_count(g.user_id)})


@notifications_bp.route("/<int:notification_id>/read", methods=["POST"])
@require_actor
def mark_read(notification_id: int):
    if not notification_service.mark_as_read(notification_id, g.user_id):
        return jsonify({"error": "Not found"}), 404
    return jsonify({"id": notification_id, "is_read": True})


@notifications_bp.route("/read-all", methods=["POST"])
@require_actor
def mark_all_read():
    updated = notification_service.mark_all_as_read(g.user_id)
    return jsonify({"updated": updated})

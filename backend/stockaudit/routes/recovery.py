# backend/stockaudit/routes/recovery.py
"""
Recovery ticket API routes.

Error mapping:
    400 ValidationError (field-level input problem)
    404 TicketNotFoundError
    409 TransitionConflictError (lost race or illegal transition; refresh and retry)
    500 anything else (logged)
"""
from flask import Blueprint, request, jsonify, g, current_app

from .. import get_product_catalog
from ..extensions import db
from ..decorators import require_actor
from ..validation import ValidationError, coerce_int
from ..services import recovery_service, bulk_recovery_service
from ..services.recovery_service import TicketNotFoundError, TransitionConflictError
from ..services.scan_service import MissingProductRecord


recovery_bp = Blueprint("recovery", __name__, url_prefix="/api/recovery")


def _error_response(e: Exception, action: str):
    if isinstance(e, ValidationError):
        return jsonify(e.to_dict()), 400
    if isinstance(e, TicketNotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, TransitionConflictError):
        return jsonify(e.to_dict()), 409
    db.session.rollback()
    current_app.logger.exception("Recovery %s failed", action)
    return jsonify({"error": f"Failed to {action} recovery ticket"}), 500


@recovery_bp.route("", methods=["POST"])
@require_actor
def create_ticket():
    """
    Create a PENDING recovery ticket.

    Request body:
    {
        "store_id": int,
        "product_id": int,
        "quantity": int,       // > 0
        "unit_price": int,     // >= 0, minor units
        "reason": str,
        "notes": str (optional),
        "product_name": str (optional),
        "barcode": str (optional)
    }

    Returns:
        201: Ticket created
        400: Invalid request
    """
    data = request.get_json(silent=True) or {}

    try:
        ticket = recovery_service.create_ticket(
            store_id=data.get("store_id"),
            product_id=data.get("product_id"),
            quantity=data.get("quantity"),
            unit_price=data.get("unit_price"),
            reason=data.get("reason"),
            notes=data.get("notes"),
            product_name=data.get("product_name"),
            barcode=data.get("barcode"),
            created_by_user_id=g.user_id,
        )
        return jsonify(ticket.to_dict()), 201
    except Exception as e:
        return _error_response(e, "create")


@recovery_bp.route("", methods=["GET"])
@require_actor
def list_tickets():
    """
    Query params: store_id, status, created_by, from_date, to_date, search, limit
    """
    try:
        tickets = recovery_service.list_tickets(
            store_id=request.args.get("store_id", type=int),
            status=request.args.get("status"),
            created_by_user_id=request.args.get("created_by", type=int),
            from_date=request.args.get("from_date"),
            to_date=request.args.get("to_date"),
            search=request.args.get("search"),
            limit=min(request.args.get("limit", recovery_service.DEFAULT_LIST_LIMIT, type=int), 1000),
        )
        return jsonify({"tickets": [t.to_dict() for t in tickets], "count": len(tickets)})
    except Exception as e:
        return _error_response(e, "list")


@recovery_bp.route("/stats", methods=["GET"])
@require_actor
def ticket_stats():
    try:
        stats = recovery_service.get_ticket_stats(
            store_id=request.args.get("store_id", type=int),
            from_date=request.args.get("from_date"),
            to_date=request.args.get("to_date"),
        )
        return jsonify(stats)
    except Exception as e:
        return _error_response(e, "summarize")


@recovery_bp.route("/<int:ticket_id>", methods=["GET"])
@require_actor
def get_ticket(ticket_id: int):
    try:
        return jsonify(recovery_service.get_ticket(ticket_id).to_dict())
    except Exception as e:
        return _error_response(e, "load")


@recovery_bp.route("/<int:ticket_id>/history", methods=["GET"])
@require_actor
def get_history(ticket_id: int):
    try:
        entries = recovery_service.get_ticket_history(ticket_id)
        return jsonify({"ticket_id": ticket_id, "history": [e.to_dict() for e in entries]})
    except Exception as e:
        return _error_response(e, "load history of")


@recovery_bp.route("/<int:ticket_id>", methods=["PATCH"])
@require_actor
def update_ticket(ticket_id: int):
    """Edit a PENDING ticket. 409 once it has left PENDING."""
    data = request.get_json(silent=True) or {}
    try:
        ticket = recovery_service.update_ticket(ticket_id, data, user_id=g.user_id)
        return jsonify(ticket.to_dict())
    except Exception as e:
        return _error_response(e, "update")


@recovery_bp.route("/<int:ticket_id>/approve", methods=["POST"])
@require_actor
def approve_ticket(ticket_id: int):
    data = request.get_json(silent=True) or {}
    try:
        ticket = recovery_service.approve_ticket(ticket_id, user_id=g.user_id, notes=data.get("notes"))
        return jsonify(ticket.to_dict())
    except Exception as e:
        return _error_response(e, "approve")


@recovery_bp.route("/<int:ticket_id>/reject", methods=["POST"])
@require_actor
def reject_ticket(ticket_id: int):
    """Request body: {"reason": str}  // required"""
    data = request.get_json(silent=True) or {}
    try:
        ticket = recovery_service.reject_ticket(ticket_id, user_id=g.user_id, reason=data.get("reason"))
        return jsonify(ticket.to_dict())
    except Exception as e:
        return _error_response(e, "reject")


@recovery_bp.route("/<int:ticket_id>/start", methods=["POST"])
@require_actor
def start_ticket(ticket_id: int):
    try:
        ticket = recovery_service.mark_in_progress(ticket_id, user_id=g.user_id)
        return jsonify(ticket.to_dict())
    except Exception as e:
        return _error_response(e, "start")


@recovery_bp.route("/<int:ticket_id>/recover", methods=["POST"])
@require_actor
def recover_ticket(ticket_id: int):
    """Request body: {"recovered_amount": int (optional, defaults to total_amount)}"""
    data = request.get_json(silent=True) or {}
    try:
        ticket = recovery_service.mark_recovered(
            ticket_id,
            user_id=g.user_id,
            recovered_amount=data.get("recovered_amount"),
        )
        return jsonify(ticket.to_dict())
    except Exception as e:
        return _error_response(e, "complete")


@recovery_bp.route("/<int:ticket_id>/cancel", methods=["POST"])
@require_actor
def cancel_ticket(ticket_id: int):
    data = request.get_json(silent=True) or {}
    try:
        ticket = recovery_service.cancel_ticket(ticket_id, user_id=g.user_id, reason=data.get("reason"))
        return jsonify(ticket.to_dict())
    except Exception as e:
        return _error_response(e, "cancel")


@recovery_bp.route("/<int:ticket_id>/assign", methods=["POST"])
@require_actor
def assign_ticket(ticket_id: int):
    """Request body: {"user_id": int}"""
    data = request.get_json(silent=True) or {}
    try:
        ticket = recovery_service.assign_ticket(
            ticket_id,
            assignee_user_id=data.get("user_id"),
            assigned_by_user_id=g.user_id,
        )
        return jsonify(ticket.to_dict())
    except Exception as e:
        return _error_response(e, "assign")


@recovery_bp.route("/bulk", methods=["POST"])
@require_actor
def bulk_create():
    """
    Create tickets from selected month-scan records.

    Request body:
    {
        "year": int,
        "month": int,
        "items": [MissingProductRecord, ...]
    }

    Returns:
        200: {created, failed, skipped, ticket_ids, skipped_items, errors}
        400: Invalid request
    """
    data = request.get_json(silent=True) or {}

    try:
        year = coerce_int("year", data.get("year"))
        month = coerce_int("month", data.get("month"))
        items = data.get("items")
        if not isinstance(items, list) or not items:
            raise ValidationError("items must be a non-empty list", "items")
        records = [MissingProductRecord.from_dict(item) for item in items]

        result = bulk_recovery_service.bulk_create_from_scan(
            records,
            year=year,
            month=month,
            created_by_user_id=g.user_id,
            catalog=get_product_catalog(),
        )
        return jsonify(result.to_dict()), 200
    except Exception as e:
        return _error_response(e, "bulk create")

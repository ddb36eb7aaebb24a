from __future__ import annotations

from flask import Blueprint, jsonify, current_app

from .. import get_snapshot_repository
from ..decorators import require_actor
from ..services import snapshot_service
from ..time_utils import parse_iso_date

snapshots_bp = Blueprint("snapshots", __name__, url_prefix="/api/snapshots")


@snapshots_bp.route("/<day>/summary", methods=["GET"])
@require_actor
def get_summary(day: str):
    try:
        target = parse_iso_date(day)
    except ValueError:
        return jsonify({"error": "date must be YYYY-MM-DD"}), 400
    if target is None:
        return jsonify({"error": "date must be YYYY-MM-DD"}), 400

    try:
        snapshot = get_snapshot_repository().fetch_snapshot_for_date(target)
    except snapshot_service.SnapshotError as e:
        current_app.logger.warning("Snapshot for %s unreadable: %s", target, e)
        return jsonify({"error": str(e)}), 502

    if snapshot is None:
        return jsonify({"error": f"No snapshot archived for {target.isoformat()}"}), 404

    return jsonify({
        "date": snapshot.date.isoformat(),
        "exported_at": snapshot.exported_at,
        "summaries": snapshot_service.summarize_snapshot(snapshot),
    })

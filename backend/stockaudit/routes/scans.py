# backend/stockaudit/routes/scans.py
"""
Month scan API routes.
"""
from flask import Blueprint, request, jsonify, current_app

from .. import get_reconciliation_signal, get_snapshot_repository
from ..decorators import require_actor
from ..validation import ValidationError, coerce_int
from ..services import scan_service, offset_service


scans_bp = Blueprint("scans", __name__, url_prefix="/api/scans")


def _run_scan(data: dict):
    year = coerce_int("year", data.get("year"))
    month = coerce_int("month", data.get("month"))
    scan_service.validate_period(year, month)

    return scan_service.scan_month(
        year,
        month,
        get_snapshot_repository(),
        max_workers=current_app.config.get("SCAN_FETCH_WORKERS", 4),
        fetch_timeout=current_app.config.get("SCAN_FETCH_TIMEOUT_SECONDS"),
    )


@scans_bp.route("", methods=["POST"])
@require_actor
def run_scan():
    """
    Scan a month of archived snapshots for sustained shortages.

    Request body:
    {
        "year": int,
        "month": int  // 1-12
    }

    Returns:
        200: ScanResult (per-file failures listed in "errors")
        400: Invalid period
    """
    data = request.get_json(silent=True) or {}

    try:
        result = _run_scan(data)
        return jsonify(result.to_dict()), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except Exception:
        current_app.logger.exception("Month scan failed")
        return jsonify({"error": "Scan failed"}), 500


@scans_bp.route("/offsets", methods=["POST"])
@require_actor
def run_scan_with_offsets():
    """
    Scan a month, then mark shortages explained by look-alike overages.

    Request body:
    {
        "year": int,
        "month": int,
        "audited_only": bool (optional)  // drop records never physically counted
    }

    Returns:
        200: {"scan": ScanResult, "offsets": OffsetAnalysis}
             offsets.success is false when POS reconciliation was unavailable
        400: Invalid period
    """
    data = request.get_json(silent=True) or {}

    try:
        result = _run_scan(data)

        missing = result.all_missing()
        if data.get("audited_only"):
            missing = [r for r in missing if r.is_audited]

        analysis = offset_service.analyze_cross_offsets(
            missing,
            result.all_surplus(),
            get_reconciliation_signal(),
        )
        return jsonify({"scan": result.to_dict(), "offsets": analysis.to_dict()}), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except Exception:
        current_app.logger.exception("Cross-offset scan failed")
        return jsonify({"error": "Scan failed"}), 500

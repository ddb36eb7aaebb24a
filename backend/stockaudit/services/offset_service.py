# backend/stockaudit/services/offset_service.py
"""
Cross-offset analysis of a month scan.

WHY: Some shortages are not losses. When two similar SKUs are confused at
checkout, one barcode runs short while the other runs over by the same
amount. Matching shortages against overages through the POS catalog lets
head office exclude those pairs before raising recovery tickets.

The reconciliation signal is an external, untrusted, best-effort service.
Whatever it does, the caller's ScanResult is left untouched: the analysis
works on copies and falls back to the unchanged list on any failure.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Protocol, Sequence

from .pos_client import ReconciliationOutcome
from .scan_service import MissingProductRecord, SurplusRecord

logger = logging.getLogger(__name__)


class ReconciliationSignal(Protocol):
    def analyze_against_pos(self, missing_items: Sequence, over_items: Sequence) -> ReconciliationOutcome:
        ...


@dataclass
class OffsetAnalysis:
    analyzed_missing: list[MissingProductRecord]
    matched_count: int = 0
    matched_pairs: list[dict] = field(default_factory=list)
    success: bool = True
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "error": self.error,
            "matched_count": self.matched_count,
            "matched_pairs": list(self.matched_pairs),
            "analyzed_missing": [r.to_dict() for r in self.analyzed_missing],
        }


def _failed(analyzed: list[MissingProductRecord], message: str) -> OffsetAnalysis:
    logger.warning("Cross-offset analysis unavailable: %s", message)
    return OffsetAnalysis(analyzed_missing=analyzed, success=False, error=message)


def _valid_pair(pair, missing: list, over: list) -> bool:
    if not isinstance(pair, dict):
        return False
    m_idx = pair.get("missing_index")
    o_idx = pair.get("over_index")
    if not isinstance(m_idx, int) or not isinstance(o_idx, int):
        return False
    if not (0 <= m_idx < len(missing) and 0 <= o_idx < len(over)):
        return False
    # Guard against a signal answering about a different list
    if pair.get("missing_barcode") not in (None, missing[m_idx].barcode):
        return False
    if pair.get("over_barcode") not in (None, over[o_idx].barcode):
        return False
    return True


def analyze_cross_offsets(
    missing_items: Sequence[MissingProductRecord],
    over_items: Sequence[SurplusRecord],
    signal: ReconciliationSignal,
) -> OffsetAnalysis:
    """
    Mark shortages explained by a simultaneous overage of a look-alike product.

    Args:
        missing_items: Flattened shortage records of a scan
        over_items: Surplus records of the same scan window
        signal: POS reconciliation signal

    Returns:
        OffsetAnalysis: Copies of missing_items with is_offset/offset_with_barcode
        set on matched entries. success=False (with error) if the signal failed;
        the records are then returned unchanged.
    """
    missing = [replace(r) for r in missing_items]
    over = [replace(r) for r in over_items]

    if not missing or not over:
        return OffsetAnalysis(analyzed_missing=missing)

    try:
        outcome = signal.analyze_against_pos([replace(r) for r in missing], [replace(r) for r in over])
    except Exception as exc:
        logger.exception("Reconciliation signal raised")
        return _failed(missing, f"Cross-offset analysis failed: {exc}")

    if outcome is None or not outcome.success:
        message = (outcome.error if outcome is not None else None) or "Reconciliation signal unavailable"
        return _failed(missing, message)

    matched_pairs = []
    used_missing: set[int] = set()
    used_over: set[int] = set()
    for pair in outcome.matched_pairs or []:
        if not _valid_pair(pair, missing, over):
            logger.warning("Ignoring malformed offset pair: %r", pair)
            continue
        m_idx, o_idx = pair["missing_index"], pair["over_index"]
        if m_idx in used_missing or o_idx in used_over:
            continue
        used_missing.add(m_idx)
        used_over.add(o_idx)

        missing[m_idx].is_offset = True
        missing[m_idx].offset_with_barcode = over[o_idx].barcode
        matched_pairs.append({
            "store_code": missing[m_idx].store_code,
            "missing": missing[m_idx].barcode,
            "over": over[o_idx].barcode,
        })

    logger.info("Cross-offset analysis matched %d pair(s)", len(matched_pairs))
    return OffsetAnalysis(
        analyzed_missing=missing,
        matched_count=len(matched_pairs),
        matched_pairs=matched_pairs,
    )

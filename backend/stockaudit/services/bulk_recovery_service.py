# backend/stockaudit/services/bulk_recovery_service.py
"""
Bridge from a month scan to recovery tickets.

WHY: Head office selects dozens of sustained shortages at once. One dirty
barcode must not block the rest, so the operation reports partial success
instead of aborting:
    created  - ticket written
    skipped  - record could not be resolved (unknown store or barcode)
    failed   - create_ticket rejected it or the write failed
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from ..extensions import db
from ..models import Store
from ..validation import ValidationError
from . import recovery_service
from .catalog_service import ProductCatalog
from .scan_service import MissingProductRecord, validate_period

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Sustained shortage detected by month scan"


@dataclass
class BulkCreateResult:
    created: int = 0
    failed: int = 0
    skipped: int = 0
    ticket_ids: list[int] = field(default_factory=list)
    skipped_items: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "failed": self.failed,
            "skipped": self.skipped,
            "ticket_ids": list(self.ticket_ids),
            "skipped_items": list(self.skipped_items),
            "errors": list(self.errors),
        }


def build_ticket_notes(record: MissingProductRecord, year: int, month: int) -> str:
    return (
        f"Period {month:02d}/{year} | Shift {record.shift} | "
        f"{record.consecutive_missing_days} consecutive missing day(s)"
    )


def _skip(result: BulkCreateResult, record: MissingProductRecord, why: str) -> None:
    result.skipped += 1
    result.skipped_items.append({
        "store_code": record.store_code,
        "barcode": record.barcode,
        "shift": record.shift,
        "product_name": record.product_name,
        "reason": why,
    })


def bulk_create_from_scan(
    records: Sequence[MissingProductRecord],
    *,
    year: int,
    month: int,
    created_by_user_id: int,
    catalog: ProductCatalog,
) -> BulkCreateResult:
    """
    Create one PENDING ticket per selected shortage record.

    quantity = abs(diff); unit_price starts at 0 and is filled in later
    through update_ticket. Barcodes are resolved in a single catalog batch.
    """
    year, month = validate_period(year, month)
    result = BulkCreateResult()
    if not records:
        return result

    store_codes = sorted({r.store_code for r in records if r.store_code})
    stores = {
        s.code: s.id
        for s in db.session.query(Store).filter(Store.code.in_(store_codes)).all()
    } if store_codes else {}

    product_ids = catalog.resolve_product_ids([r.barcode for r in records if r.barcode])

    for record in records:
        store_id = stores.get(record.store_code)
        if store_id is None:
            _skip(result, record, f"Unknown store '{record.store_code}'")
            continue
        product_id = product_ids.get(record.barcode) if record.barcode else None
        if product_id is None:
            _skip(result, record, "Barcode not found in product catalog")
            continue

        try:
            ticket = recovery_service.create_ticket(
                store_id=store_id,
                product_id=product_id,
                product_name=record.product_name,
                barcode=record.barcode.strip(),
                quantity=abs(record.diff),
                unit_price=0,
                reason=record.reason or DEFAULT_REASON,
                notes=build_ticket_notes(record, year, month),
                created_by_user_id=created_by_user_id,
            )
        except ValidationError as exc:
            result.failed += 1
            result.errors.append(f"{record.store_code}/{record.barcode}: {exc}")
            continue
        except Exception as exc:
            db.session.rollback()
            logger.exception("Bulk ticket creation failed for %s/%s", record.store_code, record.barcode)
            result.failed += 1
            result.errors.append(f"{record.store_code}/{record.barcode}: {exc}")
            continue

        result.created += 1
        result.ticket_ids.append(ticket.id)

    logger.info(
        "Bulk recovery for %02d/%d: created=%d failed=%d skipped=%d",
        month, year, result.created, result.failed, result.skipped,
    )
    return result

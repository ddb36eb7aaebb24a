import pytest

from stockaudit.extensions import db
from stockaudit.models import RecoveryTicket
from stockaudit.services import bulk_recovery_service
from stockaudit.services.bulk_recovery_service import DEFAULT_REASON, bulk_create_from_scan
from stockaudit.services.catalog_service import DatabaseProductCatalog, ProductCatalog
from stockaudit.services.scan_service import MissingProductRecord
from stockaudit.validation import ValidationError


def _record(barcode, *, store="BEE", diff=-3, shift=1, days=4, reason=None):
    return MissingProductRecord(
        product_name=f"Product {barcode}",
        barcode=barcode,
        store_code=store,
        shift=shift,
        system_stock=10,
        actual_stock=10 + diff,
        diff=diff,
        date="2026-01-20",
        reason=reason,
        consecutive_missing_days=days,
        last_positive_date="2026-01-16",
    )


class CountingCatalog(ProductCatalog):
    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def resolve_product_ids(self, barcodes):
        barcodes = list(barcodes)
        self.calls.append(barcodes)
        return self.inner.resolve_product_ids(barcodes)


def test_unresolved_barcode_is_skipped_not_failed(db_session, store_bee, manager, product_x, product_y, recording_sink):
    catalog = CountingCatalog(DatabaseProductCatalog())
    records = [_record("X"), _record("UNKNOWN"), _record("Y", diff=-1, shift=2, reason="Expired")]

    result = bulk_create_from_scan(records, year=2026, month=1, created_by_user_id=manager.id, catalog=catalog)

    assert (result.created, result.skipped, result.failed) == (2, 1, 0)
    assert len(catalog.calls) == 1
    assert result.skipped_items[0]["barcode"] == "UNKNOWN"

    tickets = db_session.query(RecoveryTicket).order_by(RecoveryTicket.id).all()
    assert [t.id for t in tickets] == result.ticket_ids
    first, second = tickets
    assert (first.product_id, first.quantity, first.unit_price, first.total_amount) == (product_x.id, 3, 0, 0)
    assert first.status == "PENDING"
    assert first.reason == DEFAULT_REASON
    assert first.notes == "Period 01/2026 | Shift 1 | 4 consecutive missing day(s)"
    assert (second.quantity, second.reason) == (1, "Expired")
    assert "Shift 2" in second.notes


def test_unknown_store_and_blank_barcode_are_skipped(db_session, store_bee, manager, product_x):
    records = [_record("X", store="NOPE"), _record(""), _record("X")]

    result = bulk_create_from_scan(
        records, year=2026, month=1, created_by_user_id=manager.id, catalog=DatabaseProductCatalog(),
    )

    assert (result.created, result.skipped, result.failed) == (1, 2, 0)
    assert "Unknown store" in result.skipped_items[0]["reason"]


def test_rejected_record_counts_as_failed(db_session, store_bee, manager, product_x):
    # diff 0 would mean quantity 0, which create_ticket refuses
    records = [_record("X", diff=0), _record("X")]

    result = bulk_create_from_scan(
        records, year=2026, month=1, created_by_user_id=manager.id, catalog=DatabaseProductCatalog(),
    )

    assert (result.created, result.skipped, result.failed) == (1, 0, 1)
    assert "quantity" in result.errors[0]


def test_unexpected_error_counts_as_failed(monkeypatch, db_session, store_bee, manager, product_x):
    calls = []

    def flaky_create(**kwargs):
        calls.append(kwargs)
        if len(calls) == 1:
            raise RuntimeError("disk full")
        return RecoveryTicket(id=99)

    monkeypatch.setattr(bulk_recovery_service.recovery_service, "create_ticket", flaky_create)

    result = bulk_create_from_scan(
        [_record("X"), _record("X", shift=2)], year=2026, month=1,
        created_by_user_id=manager.id, catalog=DatabaseProductCatalog(),
    )

    assert (result.created, result.failed) == (1, 1)
    assert result.ticket_ids == [99]


def test_empty_selection_creates_nothing(db_session, manager):
    result = bulk_create_from_scan([], year=2026, month=1, created_by_user_id=manager.id, catalog=DatabaseProductCatalog())

    assert result.to_dict() == {
        "created": 0, "failed": 0, "skipped": 0, "ticket_ids": [], "skipped_items": [], "errors": [],
    }


def test_invalid_period_is_rejected(db_session, manager):
    with pytest.raises(ValidationError):
        bulk_create_from_scan([_record("X")], year=2026, month=13, created_by_user_id=manager.id,
                              catalog=DatabaseProductCatalog())


def test_database_catalog_omits_unknown_barcodes(db_session, product_x, product_y):
    resolved = DatabaseProductCatalog().resolve_product_ids(["X", "Y", "missing", "", " X "])

    assert resolved == {"X": product_x.id, "Y": product_y.id, " X ": product_x.id}


def test_record_round_trips_from_client_payload():
    record = MissingProductRecord.from_dict({
        "store_code": "BEE", "barcode": "X", "product_name": "Product X", "shift": 2,
        "diff": -4, "system_stock": 9, "actual_stock": 5, "consecutive_missing_days": 3,
        "diff_reason": "Broken",
    })

    assert (record.store_code, record.shift, record.diff, record.reason) == ("BEE", 2, -4, "Broken")

    with pytest.raises(ValidationError):
        MissingProductRecord.from_dict({"barcode": "X", "diff": -1})


def test_padded_barcode_resolves_to_catalog_product(db_session, store_bee, manager, product_x):
    result = bulk_create_from_scan(
        [_record("X ")], year=2026, month=1, created_by_user_id=manager.id, catalog=DatabaseProductCatalog(),
    )

    assert (result.created, result.skipped) == (1, 0)
    ticket = db_session.get(RecoveryTicket, result.ticket_ids[0])
    assert (ticket.product_id, ticket.barcode) == (product_x.id, "X")


def test_non_object_item_is_a_validation_error():
    with pytest.raises(ValidationError) as exc:
        MissingProductRecord.from_dict("X")

    assert exc.value.field == "items"

from datetime import timedelta

from stockaudit.extensions import db
from stockaudit.models import Notification
from stockaudit.services import recovery_service
from stockaudit.time_utils import utcnow

from conftest import InMemorySnapshotRepository, line, snapshot_doc


def test_scan_run_prints_sustained_shortages(app, db_session):
    app.extensions["snapshot_repository"] = InMemorySnapshotRepository([
        snapshot_doc("2026-01-05", {"BEE": {"shift_1": [line("X", 10, 8)], "shift_2": [line("Z", 3, 3)]}}),
        snapshot_doc("2026-01-06", {"BEE": {"shift_1": [line("X", 10, 7)]}}),
    ])

    result = app.test_cli_runner().invoke(args=["scan", "run", "--year", "2026", "--month", "1", "--min-days", "2"])

    assert result.exit_code == 0, result.output
    assert "1 missing product(s)" in result.output
    assert "Product X" in result.output


def test_scan_run_json(app, db_session):
    app.extensions["snapshot_repository"] = InMemorySnapshotRepository([
        snapshot_doc("2026-01-05", {"BEE": {"shift_1": [line("X", 10, 8)]}}),
    ])

    result = app.test_cli_runner().invoke(args=["scan", "run", "--year", "2026", "--month", "1", "--json"])

    assert result.exit_code == 0, result.output
    assert '"total_missing_products": 1' in result.output


def test_scan_run_rejects_bad_month(app, db_session):
    result = app.test_cli_runner().invoke(args=["scan", "run", "--year", "2026", "--month", "13"])

    assert result.exit_code != 0
    assert "month" in result.output


def test_recovery_list(app, db_session, store_bee, manager, product_x):
    runner = app.test_cli_runner()
    assert "No recovery tickets found." in runner.invoke(args=["recovery", "list"]).output

    recovery_service.create_ticket(
        store_id=store_bee.id, product_id=product_x.id, quantity=2, unit_price=500,
        reason="Shortage", barcode="X", created_by_user_id=manager.id,
    )

    result = runner.invoke(args=["recovery", "list", "--status", "pending"])
    assert result.exit_code == 0, result.output
    assert "PENDING" in result.output
    assert "BEE" in result.output


def test_notifications_cleanup(app, db_session, employees):
    db.session.add(Notification(
        user_id=employees["alice"].id, type="SYSTEM", title="old",
        is_read=True, created_at=utcnow() - timedelta(days=90),
    ))
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["notifications", "cleanup", "--days-old", "30"])

    assert result.exit_code == 0, result.output
    assert "Deleted 1 read notifications" in result.output

# Overview: Flask CLI command groups for bootstrap, scans, and maintenance.

# backend/stockaudit/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Month scan:
# - python -m flask scan run --year 2026 --month 1 [--store BEE] [--min-days 3] [--json]
#   Scan archived snapshots and print sustained shortages.
#
# Recovery tickets:
# - python -m flask recovery list [--status PENDING] [--store-id 1] [--limit 50]
#   List recovery tickets.
#
# Maintenance:
# - python -m flask notifications cleanup --days-old 30
#   Delete read notifications older than the retention window.

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import notification_service, recovery_service, scan_service
from .validation import ValidationError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('scan')
def scan_group():
    """Month scan commands."""


@scan_group.command('run')
@click.option('--year', type=int, required=True)
@click.option('--month', type=int, required=True)
@click.option('--store', 'store_code', help='Only show this store code')
@click.option('--min-days', type=int, default=1, show_default=True, help='Minimum consecutive missing days')
@click.option('--json', 'as_json', is_flag=True, help='Print the raw ScanResult as JSON')
@with_appcontext
def run_scan(year, month, store_code, min_days, as_json):
    """Scan archived snapshots of a month for sustained shortages."""
    from . import get_snapshot_repository

    def _progress(current, total, file_name):
        click.echo(f"  [{current}/{total}] {file_name}", err=True)

    try:
        result = scan_service.scan_month(
            year,
            month,
            get_snapshot_repository(),
            _progress,
            max_workers=current_app.config.get("SCAN_FETCH_WORKERS", 4),
            fetch_timeout=current_app.config.get("SCAN_FETCH_TIMEOUT_SECONDS"),
        )
    except ValidationError as e:
        raise click.BadParameter(str(e))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return

    for error in result.errors:
        click.echo(f"WARN {error}")

    click.echo(f"\nScanned {result.total_files_scanned} file(s), "
               f"{result.total_missing_products} missing product(s)")
    click.echo("=" * 100)
    click.echo(f"{'Store':<8} {'Shift':<6} {'Barcode':<16} {'Product':<32} {'Diff':>6} {'Days':>5} {'Last OK':<11} {'Date':<11}")
    click.echo("=" * 100)

    for code, records in sorted(result.stores.items()):
        if store_code and code != store_code:
            continue
        for r in records:
            if r.consecutive_missing_days < min_days:
                continue
            flag = "" if r.is_audited else " (unaudited)"
            click.echo(
                f"{code:<8} {str(r.shift):<6} {r.barcode:<16} {r.product_name[:32]:<32} "
                f"{r.diff:>6} {r.consecutive_missing_days:>5} {r.last_positive_date or '-':<11} {r.date:<11}{flag}"
            )
    click.echo("=" * 100 + "\n")


@click.group('recovery')
def recovery_group():
    """Recovery ticket inspection commands."""


@recovery_group.command('list')
@click.option('--status', help='Filter by status')
@click.option('--store-id', type=int, help='Filter by store ID')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def list_tickets(status, store_id, limit):
    """List recovery tickets, newest first."""
    try:
        tickets = recovery_service.list_tickets(store_id=store_id, status=status, limit=limit)
    except ValidationError as e:
        raise click.BadParameter(str(e))

    if not tickets:
        click.echo("No recovery tickets found.")
        return

    click.echo("\n" + "=" * 100)
    click.echo(f"{'ID':<6} {'Store':<8} {'Status':<12} {'Barcode':<16} {'Qty':>5} {'Total':>12} {'Assignee':<9} {'Created'}")
    click.echo("=" * 100)
    for t in tickets:
        store = t.store.code if t.store else t.store_id
        assignee = t.assigned_to_user_id or "-"
        click.echo(
            f"{t.id:<6} {store:<8} {t.status:<12} {(t.barcode or ''):<16} {t.quantity:>5} "
            f"{t.total_amount:>12} {assignee!s:<9} {t.created_at:%Y-%m-%d %H:%M}"
        )
    click.echo("=" * 100 + "\n")


@click.group('notifications')
def notifications_group():
    """Notification maintenance commands."""


@notifications_group.command('cleanup')
@click.option('--days-old', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_notifications(days_old):
    """Delete read notifications older than the retention window."""
    deleted = notification_service.clean_old_notifications(days_old=days_old)
    click.echo(f"Deleted {deleted} read notifications older than {days_old} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(scan_group)
    app.cli.add_command(recovery_group)
    app.cli.add_command(notifications_group)

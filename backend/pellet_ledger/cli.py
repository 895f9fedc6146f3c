# Overview: Flask CLI command groups for bootstrap, ledger inspection, and maintenance.

# backend/pellet_ledger/cli.py
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
# Ledger inspection:
# - python -m flask ledger balances [--ledger ROLL]
#   Current quantity per key; LOW marks keys at or below min_stock.
# - python -m flask ledger reconcile [--ledger PRODUCT]
#   Compare every balance with its movement history. Exit code 1 on mismatch.
# - python -m flask ledger velocity PRODUCT "Granel" [--days 30]
#   Throughput, rotation and trend for one key.
#
# Invoice maintenance:
# - python -m flask invoices repair-tax [--dry-run]
#   Recompute drifted tax/total on supplier invoices.
#
# Check maintenance:
# - python -m flask checks expire
#   Mark every overdue PENDING check as EXPIRED.
# - python -m flask checks due-soon [--days 7]
#   List PENDING checks due within the window.

import click
from flask.cli import with_appcontext

from .amounts import cents_to_amount
from .extensions import db
from .services import check_service
from .services import stock_ledger_service as ledger
from .services.concurrency import run_with_retry
from .services.supplier_service import repair_invoice_tax


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


@click.group('ledger')
def ledger_group():
    """Stock ledger inspection commands."""


@ledger_group.command('balances')
@click.option('--ledger', 'ledger_name', type=click.Choice(ledger.LEDGERS), help='Only this ledger')
@with_appcontext
def list_balances_cli(ledger_name):
    """List balances per ledger key."""
    balances = ledger.list_balances(ledger_name)
    if not balances:
        click.echo("No stock recorded.")
        return

    click.echo(f"{'LEDGER':<8} {'KEY':<24} {'QUANTITY':>12} {'UNIT':<6} {'MIN':>10}")
    for b in balances:
        flag = "  LOW" if b.min_stock and b.quantity <= b.min_stock else ""
        click.echo(f"{b.ledger:<8} {b.key:<24} {b.quantity:>12.1f} {b.unit:<6} {b.min_stock or 0:>10.1f}{flag}")


@ledger_group.command('reconcile')
@click.option('--ledger', 'ledger_name', type=click.Choice(ledger.LEDGERS), help='Only this ledger')
@with_appcontext
def reconcile_cli(ledger_name):
    """Check that every balance equals the sum of its movements."""
    discrepancies = ledger.reconcile_ledger(ledger_name)
    if not discrepancies:
        click.echo("PASS All balances match their movement history.")
        return

    for d in discrepancies:
        click.echo(
            f"FAIL {d['ledger']}/{d['key']}: stored {d['stored_quantity']}, "
            f"movements {d['movement_quantity']} (diff {d['difference']})"
        )
    raise SystemExit(1)


@ledger_group.command('velocity')
@click.argument('ledger_name', type=click.Choice(ledger.LEDGERS))
@click.argument('key')
@click.option('--days', type=int, default=None, help='Window size in days (default VELOCITY_WINDOW_DAYS)')
@with_appcontext
def velocity_cli(ledger_name, key, days):
    """Movement statistics for one ledger key."""
    stats = ledger.ledger_velocity(ledger_name, key, days)
    click.echo(f"{stats['ledger']}/{stats['key']} over {stats['window']['days']} days")
    click.echo(f"  inbound:  {stats['inbound']['total']} in {stats['inbound']['count']} movements ({stats['inbound']['per_day']:.2f}/day)")
    click.echo(f"  outbound: {stats['outbound']['total']} in {stats['outbound']['count']} movements ({stats['outbound']['per_day']:.2f}/day)")
    click.echo(f"  current:  {stats['current_quantity']}")
    click.echo(f"  rotation: {stats['rotation']:.2f}")
    click.echo(f"  trend:    {stats['trend']}")


@click.group('invoices')
def invoices_group():
    """Supplier invoice maintenance commands."""


@invoices_group.command('repair-tax')
@click.option('--dry-run', is_flag=True, help='Report corrections without writing them')
@with_appcontext
def repair_tax_cli(dry_run):
    """Recompute tax and total on invoices whose stored values drifted."""
    report = run_with_retry(lambda: repair_invoice_tax(dry_run=dry_run))

    for c in report.corrections:
        click.echo(
            f"{'WOULD FIX' if dry_run else 'FIXED'} {c.invoice_number}: "
            f"tax {cents_to_amount(c.old_tax_cents)} -> {cents_to_amount(c.new_tax_cents)}, "
            f"total {cents_to_amount(c.old_total_cents)} -> {cents_to_amount(c.new_total_cents)}"
        )
    for s in report.skipped:
        click.echo(f"SKIP invoice {s.invoice_id}: {s.reason}")

    click.echo(
        f"Checked {report.checked}, corrected {report.corrected}, "
        f"net delta {cents_to_amount(report.net_delta_cents)}, skipped {len(report.skipped)}"
    )


@click.group('checks')
def checks_group():
    """Check lifecycle maintenance commands."""


@checks_group.command('expire')
@with_appcontext
def expire_checks_cli():
    """Mark overdue PENDING checks as EXPIRED."""
    count = run_with_retry(check_service.expire_overdue_checks)
    click.echo(f"Expired {count} checks.")


@checks_group.command('due-soon')
@click.option('--days', type=int, default=None, help='Window in days (default CHECK_DUE_SOON_DAYS)')
@with_appcontext
def due_soon_cli(days):
    """List PENDING checks that are about to fall due."""
    checks = check_service.checks_due_soon(days)
    if not checks:
        click.echo("No checks due soon.")
        return

    for c in checks:
        click.echo(
            f"{c.check_number:<16} {cents_to_amount(c.amount_cents):>14} "
            f"{c.due_date.date().isoformat()}  {check_service.days_until_due(c)}d  {c.received_from}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(invoices_group)
    app.cli.add_command(checks_group)

# Overview: Flask CLI command groups for reconciliation, audit backfill and customer inspection.

# backend/ledgerbook/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Ledger maintenance:
# - python -m flask ledger reconcile --dry-run
#   Report customers whose cached balances disagree with the ledger.
# - python -m flask ledger reconcile --apply
#   Write the ledger-derived balances back and normalize debt statuses.
# - python -m flask ledger backfill-audit
#   Add legacy audit records for applied-to-debt payments that have none.
# - python -m flask ledger anomalies
#   List audit invariant violations and debt status mismatches.
#
# Customer inspection:
# - python -m flask customers list [--limit 50]
#   List customers with cached balances.
# - python -m flask customers balances <customer_id>
#   Show cached and ledger-derived balances side by side.

import click
from flask.cli import with_appcontext

from .services import ledger_service, reconciliation_service
from .services.errors import LedgerError


@click.group('ledger')
def ledger_group():
    """Ledger reconciliation and audit commands."""


@ledger_group.command('reconcile')
@click.option('--dry-run', is_flag=True, help='Report discrepancies only (default)')
@click.option('--apply', 'apply_changes', is_flag=True, help='Write computed balances back')
@with_appcontext
def reconcile_cli(dry_run, apply_changes):
    """
    Compare cached customer balances with the ledger.

    Without --apply nothing is written.
    """
    if dry_run and apply_changes:
        click.echo("FAIL Use only one mode: --dry-run or --apply")
        return

    mode_label = "APPLY" if apply_changes else "DRY-RUN"
    click.echo(f"\n{mode_label} Reconciling customer balances...\n")

    try:
        results = reconciliation_service.reconcile(dry_run=not apply_changes)
    except LedgerError as e:
        click.echo(f"FAIL {e.message}")
        return

    if not results:
        click.echo("PASS All customer balances match the ledger")
        return

    if not apply_changes:
        click.echo(f"{'Customer':<34} {'Outstanding (stored -> computed)':<34} {'Credit (stored -> computed)'}")
        click.echo("-" * 100)
        for d in results:
            click.echo(
                f"{d.customer_id:<34} "
                f"{f'{d.stored_outstanding} -> {d.computed_outstanding}':<34} "
                f"{d.stored_credit} -> {d.computed_credit}"
            )
        click.echo(f"\nWARN {len(results)} customer(s) drifted. No changes applied (dry run).")
        return

    for c in results:
        click.echo(
            f"  - {c.customer_id}: outstanding {c.previous_outstanding} -> {c.outstanding}, "
            f"credit {c.previous_credit} -> {c.credit}, statuses fixed {c.statuses_fixed}"
        )
    click.echo(f"\nPASS Corrected {len(results)} customer(s)")


@ledger_group.command('backfill-audit')
@with_appcontext
def backfill_audit_cli():
    """Give legacy applied-to-debt payments an audit record."""
    missing = len(reconciliation_service.payments_missing_audit())
    click.echo(f"Found {missing} payment(s) without audit records")

    try:
        created = reconciliation_service.backfill_audit()
    except LedgerError as e:
        click.echo(f"FAIL {e.message}")
        return

    click.echo(f"PASS Created {created} legacy audit record(s)")


@ledger_group.command('anomalies')
@with_appcontext
def anomalies_cli():
    """List audit anomalies and debt status mismatches (read-only)."""
    anomalies = reconciliation_service.find_anomalies()
    mismatches = reconciliation_service.find_status_mismatches()

    if not anomalies and not mismatches:
        click.echo("PASS No anomalies found")
        return

    if anomalies:
        click.echo(f"\nAudit anomalies ({len(anomalies)}):")
        for a in anomalies:
            click.echo(f"  - [{a.kind}] customer={a.customer_id} txn={a.transaction_id}: {a.message}")

    if mismatches:
        click.echo(f"\nStatus mismatches ({len(mismatches)}):")
        for m in mismatches:
            click.echo(
                f"  - customer={m.customer_id} txn={m.transaction_id}: "
                f"{m.stored_status} (expected {m.expected_status})"
            )

    click.echo("\nWARN Run 'python -m flask ledger reconcile --apply' to normalize statuses")


@click.group('customers')
def customers_group():
    """Customer inspection commands."""


@customers_group.command('list')
@click.option('--limit', type=int, default=None, help='Maximum customers to show')
@with_appcontext
def list_customers(limit):
    """List customers with their cached balances."""
    customers = ledger_service.list_customers(limit=limit)

    if not customers:
        click.echo("No customers found.")
        return

    click.echo("\n" + "=" * 90)
    click.echo(f"{'ID':<34} {'Name':<30} {'Outstanding':>12} {'Credit':>10}")
    click.echo("=" * 90)
    for c in customers:
        click.echo(f"{c.id:<34} {c.name[:30]:<30} {c.outstanding_balance:>12} {c.credit_balance:>10}")
    click.echo(f"\nTotal: {len(customers)} customer(s)")


@customers_group.command('balances')
@click.argument('customer_id')
@with_appcontext
def customer_balances(customer_id):
    """Show cached vs ledger-derived balances for one customer."""
    try:
        stored = ledger_service.get_customer_balances(customer_id)
        computed = ledger_service.get_customer_balances(customer_id, computed=True)
    except LedgerError as e:
        click.echo(f"FAIL {e.message}")
        return

    click.echo(f"Customer {customer_id}")
    click.echo(f"  Outstanding: stored={stored.outstanding} computed={computed.outstanding}")
    click.echo(f"  Credit:      stored={stored.credit} computed={computed.credit}")
    if stored == computed:
        click.echo("PASS Balances match the ledger")
    else:
        click.echo("WARN Balances drifted; run 'python -m flask ledger reconcile --apply'")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
    app.cli.add_command(customers_group)

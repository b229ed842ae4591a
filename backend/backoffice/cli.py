# Overview: Flask CLI command groups for period batches and maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system set-commission --rate-bps 1000 [--fixed-cents 0]
#   Activate a new global commission rule (previous rules are deactivated).
#
# Settlements:
# - python -m flask settlements generate-monthly --year 2024 --month 1
#   Generate draft settlements for every active store (existing periods are skipped).
# - python -m flask settlements list [--store-id 1] [--all]
#   List current settlements (use --all to include superseded versions).
# - python -m flask settlements finalize 12
#   Lock a settlement against further changes.
#
# Commission invoices:
# - python -m flask invoices generate-monthly --year 2024 --month 1
#   Generate draft commission invoices for every active store.
# - python -m flask invoices issue 7
#   Move a draft invoice to ISSUED.
#
# Escrow:
# - python -m flask escrow release-eligible
#   Release escrow whose payout hold has elapsed.

import click
from flask.cli import with_appcontext

from .extensions import db
from .money import bps_to_percentage
from .services import commission_service, escrow_service, invoice_service, settlement_service
from .validation import ConflictError, NotFoundError, ValidationError


def _echo_failures(failed: dict) -> None:
    for store_id, message in failed.items():
        click.echo(f"FAIL  store {store_id}: {message}")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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


@system_group.command('set-commission')
@click.option('--rate-bps', type=int, required=True, help='Commission rate in basis points (1000 = 10%)')
@click.option('--fixed-cents', type=int, default=0, help='Fixed fee per sub-order in cents')
@with_appcontext
def set_commission(rate_bps, fixed_cents):
    """Activate a new global commission rule."""
    try:
        config = commission_service.set_global_commission(rate_bps, fixed_cents)
    except ValidationError as e:
        raise click.ClickException(str(e))
    click.echo(
        f"PASS Global commission set to {bps_to_percentage(config.commission_rate_bps)}% "
        f"+ {config.fixed_commission_cents} cents"
    )


@click.group('settlements')
def settlements_group():
    """Seller settlement statements."""


@settlements_group.command('generate-monthly')
@click.option('--year', type=int, required=True, help='Calendar year')
@click.option('--month', type=int, required=True, help='Calendar month (1-12)')
@with_appcontext
def generate_monthly_settlements_cli(year, month):
    try:
        result = settlement_service.generate_monthly_settlements(year, month)
    except ValidationError as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Generated {result.generated_count} settlements for {year:04d}-{month:02d}")
    for store_id, reason in result.skipped.items():
        click.echo(f"SKIP  store {store_id}: {reason}")
    _echo_failures(result.failed)


@settlements_group.command('list')
@click.option('--store-id', type=int, help='Filter by store ID')
@click.option('--all', 'include_superseded', is_flag=True, help='Include superseded versions')
@with_appcontext
def list_settlements_cli(store_id, include_superseded):
    settlements = settlement_service.list_settlements(store_id, include_superseded)
    if not settlements:
        click.echo("No settlements found.")
        return

    click.echo(f"{'Number':<22} {'Ver':<4} {'Status':<11} {'Period':<24} {'Net (cents)':>12}")
    click.echo("-" * 77)
    for s in settlements:
        period = f"[{s.period_start:%Y-%m-%d}, {s.period_end:%Y-%m-%d})"
        click.echo(f"{s.settlement_number:<22} {s.version:<4} {s.status:<11} {period:<24} {s.net_amount_cents:>12}")


@settlements_group.command('finalize')
@click.argument('settlement_id', type=int)
@with_appcontext
def finalize_settlement_cli(settlement_id):
    try:
        settlement = settlement_service.finalize_settlement(settlement_id)
    except (NotFoundError, ConflictError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Settlement {settlement.settlement_number} finalized")


@click.group('invoices')
def invoices_group():
    """Commission invoices billed to sellers."""


@invoices_group.command('generate-monthly')
@click.option('--year', type=int, required=True, help='Calendar year')
@click.option('--month', type=int, required=True, help='Calendar month (1-12)')
@with_appcontext
def generate_monthly_invoices_cli(year, month):
    try:
        result = invoice_service.generate_monthly_invoices(year, month)
    except ValidationError as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Generated {result.generated_count} invoices for {year:04d}-{month:02d}")
    if result.empty:
        click.echo(f"INFO  {len(result.empty)} stores had no commission in the period")
    _echo_failures(result.failed)


@invoices_group.command('issue')
@click.argument('invoice_id', type=int)
@with_appcontext
def issue_invoice_cli(invoice_id):
    try:
        invoice = invoice_service.issue_invoice(invoice_id)
    except (NotFoundError, ConflictError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Invoice {invoice.invoice_number} issued, due {invoice.due_date}")


@click.group('escrow')
def escrow_group():
    """Escrow payout maintenance."""


@escrow_group.command('release-eligible')
@with_appcontext
def release_eligible_cli():
    released = escrow_service.process_eligible_payouts()
    click.echo(f"PASS Released {released} escrow transactions")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(settlements_group)
    app.cli.add_command(invoices_group)
    app.cli.add_command(escrow_group)

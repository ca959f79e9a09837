# Overview: Flask CLI command groups for edition numbering and provenance inspection.

# backend/edition_ledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Schema:
# - python -m flask system init-db
#   Create all tables (dev/test; use `flask db upgrade` elsewhere).
#
# Edition numbering:
# - python -m flask editions assign PRODUCT_ID
#   Renumber the active line items of a product (idempotent).
# - python -m flask editions audit PRODUCT_ID
#   Report duplicates, gaps and null/non-null mismatches for a product.
# - python -m flask editions deactivate LINE_ITEM_ID ORDER_ID --reason refunded
#   Mark a line item inactive, revoke its number and resequence the product.
# - python -m flask editions issue-token LINE_ITEM_ID [--ttl 3600]
#   Print a signed claim link for an active edition.
#
# Provenance:
# - python -m flask provenance history LINE_ITEM_ID
#   Print the ordered event history of an edition.
# - python -m flask provenance verify LINE_ITEM_ID
#   Run the integrity audit for an edition.

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import claim_service, edition_service, ledger_service, resequence_service
from .services.edition_service import CapacityExceededError
from .validation import VALID_REMOVAL_REASONS, NotFoundError
from .time_utils import to_utc_z


@click.group('system')
def system_group():
    """Schema bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    from . import models  # noqa: F401
    db.create_all()
    click.echo("PASS Tables created")


@click.group('editions')
def editions_group():
    """Edition numbering commands."""


@editions_group.command('assign')
@click.argument('product_id')
@click.option('--actor', default='cli', help='Recorded as created_by on ledger events')
@with_appcontext
def assign(product_id, actor):
    try:
        count = edition_service.assign_product(product_id, actor=actor)
    except CapacityExceededError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Product {product_id}: {count} active editions numbered 1..{count}")


@editions_group.command('audit')
@click.argument('product_id')
@with_appcontext
def audit(product_id):
    report = edition_service.audit_product_numbering(product_id)
    click.echo(json.dumps(report.to_dict(), indent=2))
    if not report.is_contiguous:
        raise click.ClickException(f"Product {product_id} numbering is not contiguous")


@editions_group.command('deactivate')
@click.argument('line_item_id')
@click.argument('order_id')
@click.option('--reason', type=click.Choice(sorted(VALID_REMOVAL_REASONS)), default='manual')
@click.option('--actor', default='cli')
@with_appcontext
def deactivate(line_item_id, order_id, reason, actor):
    try:
        result = resequence_service.change_line_item_status(
            line_item_id, order_id, "inactive", reason=reason, actor=actor,
        )
    except NotFoundError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(result.to_dict(), indent=2))


@editions_group.command('issue-token')
@click.argument('line_item_id')
@click.option('--ttl', type=int, default=None, help='Token lifetime in seconds')
@with_appcontext
def issue_token(line_item_id, ttl):
    try:
        issued = claim_service.issue_claim_token(line_item_id, ttl_seconds=ttl)
    except (NotFoundError, claim_service.ClaimError) as e:
        raise click.ClickException(str(e))
    click.echo(issued["claimUrl"])
    click.echo(f"Expires: {issued['expiresAt']}")


@click.group('provenance')
def provenance_group():
    """Provenance ledger inspection commands."""


@provenance_group.command('history')
@click.argument('line_item_id')
@with_appcontext
def history(line_item_id):
    events = ledger_service.get_history(line_item_id)
    if not events:
        click.echo("No events recorded.")
        return
    for ev in events:
        click.echo(
            f"{ev.id:>6}  {to_utc_z(ev.created_at)}  {ev.event_type.value:<22} "
            f"#{ev.edition_number if ev.edition_number is not None else '-':<5} "
            f"{json.dumps(ev.event_data or {}, sort_keys=True)}"
        )


@provenance_group.command('verify')
@click.argument('line_item_id')
@with_appcontext
def verify(line_item_id):
    report = ledger_service.verify_integrity(line_item_id)
    click.echo(json.dumps(report.to_dict(), indent=2))
    if not report.is_valid:
        raise click.ClickException(f"Edition {line_item_id} failed integrity verification")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(editions_group)
    app.cli.add_command(provenance_group)

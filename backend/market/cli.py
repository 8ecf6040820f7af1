# Overview: Flask CLI command groups for treasury bootstrap, payouts and settlement operations.

# backend/market/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Treasury:
# - python -m flask treasury init
#   Create the treasury row if missing (idempotent).
# - python -m flask treasury show
#   Print balances, counters and pending payout totals.
#
# Payouts:
# - python -m flask payouts list [--status pending] [--store-id 3]
# - python -m flask payouts complete 12 [--actor-id 1]
#   Disburse a pending payout (debits the seller pending balance).
# - python -m flask payouts fail 12 --reason "Bank account rejected"
#
# Settlement:
# - python -m flask settlement verify 42 [--actor-email admin@market.local]
#   Operator-side manual verify, same adapter as the admin route.
# - python -m flask settlement mode
#   Show whether settlement runs atomically on this database.
#
# Users:
# - python -m flask users create --name "Admin" --email admin@market.local --role admin
#   Prints a fresh API token (shown once).
# - python -m flask users rotate-token admin@market.local

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .models.auth import VALID_ROLES
from .services import auth_service, payment_service, payout_service, treasury_service, unit_of_work
from .services.auth_service import UserValidationError
from .services.payout_service import PayoutError
from .services.settlement_service import (
    AlreadySettledError,
    NotFoundError,
    TransactionAbortError,
    FallbackPartialFailureError,
)
from .time_utils import format_rupiah


@click.group('treasury')
def treasury_group():
    """Platform treasury commands."""


@treasury_group.command('init')
@with_appcontext
def init_treasury():
    """Create the treasury singleton if it does not exist."""
    treasury_service.ensure_treasury()
    db.session.commit()
    click.echo("PASS Treasury ready")


@treasury_group.command('show')
@with_appcontext
def show_treasury():
    """Print treasury balances."""
    summary = treasury_service.get_treasury_summary()
    click.echo("Running balances:")
    click.echo(f"  Admin fee balance:       {format_rupiah(summary['admin_fee_balance'])}")
    click.echo(f"  Shipping balance:        {format_rupiah(summary['shipping_balance'])}")
    click.echo(f"  Seller pending balance:  {format_rupiah(summary['seller_pending_balance'])}")
    click.echo("Cumulative:")
    click.echo(f"  Admin fee earned:        {format_rupiah(summary['total_admin_fee_earned'])}")
    click.echo(f"  Shipping collected:      {format_rupiah(summary['total_shipping_collected'])}")
    click.echo(f"  Seller payouts:          {format_rupiah(summary['total_seller_payouts'])}")
    click.echo(f"  Orders processed:        {summary['total_orders_processed']}")
    click.echo(
        f"Pending payouts: {summary['pending_payouts_count']} "
        f"({format_rupiah(summary['pending_payouts_total'])})"
    )


@click.group('payouts')
def payouts_group():
    """Store payout commands."""


@payouts_group.command('list')
@click.option('--status', type=click.Choice(['pending', 'completed', 'failed']), help='Filter by status')
@click.option('--store-id', type=int, help='Filter by store')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def list_payouts_cli(status, store_id, limit):
    """List payouts, newest first."""
    payouts = payout_service.list_payouts(status=status, store_id=store_id, limit=limit)
    if not payouts:
        click.echo("No payouts found")
        return
    for payout in payouts:
        click.echo(
            f"#{payout.id:<6} store={payout.store_id:<5} order={payout.order_id or '-':<6} "
            f"{payout.type:<14} {payout.status:<10} {format_rupiah(payout.amount):>16}  {payout.notes}"
        )


@payouts_group.command('complete')
@click.argument('payout_id', type=int)
@click.option('--actor-id', type=int, help='User ID recorded as processor')
@with_appcontext
def complete_payout_cli(payout_id, actor_id):
    """Disburse a pending payout."""
    try:
        payout = payout_service.complete_payout(payout_id, actor_user_id=actor_id)
        click.echo(f"PASS Payout {payout.id} completed: {format_rupiah(payout.amount)}")
    except PayoutError as e:
        click.echo(f"FAIL {e}")


@payouts_group.command('fail')
@click.argument('payout_id', type=int)
@click.option('--reason', required=True, help='Why the payout failed')
@click.option('--actor-id', type=int, help='User ID recorded as processor')
@with_appcontext
def fail_payout_cli(payout_id, reason, actor_id):
    """Mark a pending payout as failed."""
    try:
        payout = payout_service.fail_payout(payout_id, actor_user_id=actor_id, reason=reason)
        click.echo(f"PASS Payout {payout.id} marked failed")
    except PayoutError as e:
        click.echo(f"FAIL {e}")


@click.group('settlement')
def settlement_group():
    """Settlement operations."""


@settlement_group.command('verify')
@click.argument('order_id', type=int)
@click.option('--actor-email', help='Admin recorded as verifier')
@with_appcontext
def verify_order_cli(order_id, actor_email):
    """Settle an order without gateway confirmation."""
    actor = None
    if actor_email:
        actor = db.session.query(User).filter_by(email=actor_email).first()
        if not actor:
            click.echo(f"FAIL No user with email {actor_email}")
            return

    try:
        result = payment_service.manual_verify_payment(order_id, actor=actor)
    except NotFoundError as e:
        click.echo(f"FAIL {e}")
        return
    except AlreadySettledError:
        click.echo(f"SKIP Order {order_id} already paid")
        return
    except FallbackPartialFailureError as e:
        click.echo(f"FAIL Partially applied ({', '.join(e.committed_steps)}); reconcile manually")
        return
    except TransactionAbortError as e:
        click.echo(f"FAIL Settlement rolled back, safe to retry: {e}")
        return

    breakdown = result.breakdown
    click.echo(f"PASS Order {order_id} settled (mode={result.mode})")
    click.echo(f"     Seller:    {format_rupiah(breakdown.seller_amount)}")
    click.echo(f"     Shipping:  {format_rupiah(breakdown.shipping_cost)}")
    click.echo(f"     Admin fee: {format_rupiah(breakdown.admin_fee)}")
    if result.payout_id:
        click.echo(f"     Payout:    #{result.payout_id}")


@settlement_group.command('mode')
@with_appcontext
def settlement_mode_cli():
    """Show the resolved unit-of-work mode."""
    mode = unit_of_work.resolve_mode()
    click.echo(f"Settlement mode: {mode}")
    if mode != unit_of_work.MODE_ATOMIC:
        click.echo("WARN Settlement is not atomic on this database; partial failures need manual reconciliation")


@click.group('users')
def users_group():
    """Principal bootstrap commands."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Display name')
@click.option('--email', prompt=True, help='Email address')
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), prompt=True, help='Role')
@click.option('--store-name', help='Store name (sellers only)')
@with_appcontext
def create_user_cli(name, email, role, store_name):
    """Create a user and print its API token."""
    try:
        user = auth_service.create_user(name=name, email=email, role=role, store_name=store_name)
    except UserValidationError as e:
        click.echo(f"FAIL {e}")
        return
    token = auth_service.issue_api_token(user)
    click.echo(f"PASS Created {role} {email} (ID: {user.id})")
    click.echo(f"     API token (shown once): {token}")


@users_group.command('rotate-token')
@click.argument('email')
@with_appcontext
def rotate_token_cli(email):
    """Issue a new API token, invalidating the old one."""
    user = db.session.query(User).filter_by(email=email).first()
    if not user:
        click.echo(f"FAIL No user with email {email}")
        return
    token = auth_service.issue_api_token(user)
    click.echo(f"PASS New API token for {email}: {token}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(treasury_group)
    app.cli.add_command(payouts_group)
    app.cli.add_command(settlement_group)
    app.cli.add_command(users_group)

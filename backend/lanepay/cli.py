# Overview: Flask CLI command groups for order inspection, polling, sync and provider setup.

# backend/lanepay/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Order inspection:
# - python -m flask orders list --status PAID --lane LANE-01 --limit 20
#   List recent orders (use --flagged for orders needing reconciliation).
# - python -m flask orders show 42
#   Show one order with payments and its event trail.
# - python -m flask orders reconciled 42 --note "Checked terminal batch"
#   Clear the reconciliation flag after confirming the outcome by hand.
#
# Payments:
# - python -m flask payments poll 42 --max-attempts 30 --interval-ms 2000
#   Poll the order's pending payment in the foreground.
# - python -m flask payments release 42 --reason "Terminal shows no charge"
#   Cancel a stuck PENDING payment so a new attempt can be made.
# - python -m flask payments recover --lookback-minutes 60
#   Record processor charges the lane never heard back about.
#
# Accounting sync:
# - python -m flask sync retry-failed --limit 25
#   Retry unsynced paid orders (run from cron if the scheduler is disabled).
# - python -m flask sync order 42
#   Retry one order.
# - python -m flask sync summary
#   Counts of synced / unsynced / failed sales.
#
# Providers:
# - python -m flask providers discover LAN_TERMINAL
#   Broadcast for terminals on the local network.
# - python -m flask providers test LAN_TERMINAL --ip 192.168.1.50 --port 10009
#   Check that a device answers.
# - python -m flask providers authenticate --force
#   Fetch a fresh cloud gateway token.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models.orders import ORDER_STATUSES
from .providers import get_provider
from .providers.base import CLOUD_TERMINAL, DeviceTarget, ProviderError
from .services import ledger_service as ledger
from .services import payment_flow_service as flow
from .services import recovery_service
from .services import sync_service
from .validation import ConflictError, NotFoundError, ValidationError


# Service errors reported as a one-line failure instead of a traceback
_CLI_ERRORS = (ValidationError, ConflictError, NotFoundError, ProviderError)


@click.group('system')
def system_group():
    """System maintenance commands."""


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


# =============================================================================
# ORDERS
# =============================================================================

@click.group('orders')
def orders_group():
    """Order inspection commands."""


@orders_group.command('list')
@click.option('--status', type=click.Choice(ORDER_STATUSES), help='Filter by order status')
@click.option('--lane', 'lane_id', help='Filter by lane id')
@click.option('--flagged', is_flag=True, help='Only orders needing reconciliation')
@click.option('--unsynced', is_flag=True, help='Only orders not yet in accounting')
@click.option('--limit', type=int, default=20, help='Max rows')
@with_appcontext
def list_orders_cli(status, lane_id, flagged, unsynced, limit):
    """List recent orders."""
    orders = ledger.list_orders(
        status=status,
        lane_id=lane_id,
        needs_reconciliation=True if flagged else None,
        synced=False if unsynced else None,
        limit=limit,
    )

    if not orders:
        click.echo("No orders found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<6} {'Invoice':<26} {'Lane':<10} {'Amount':>10} {'Status':<10} {'Recon':<6} {'Synced'}")
    click.echo("="*100)

    for order in orders:
        recon = "YES" if order.needs_reconciliation else ""
        synced = "Yes" if order.synced_to_zoho else ("ERR" if order.sync_error else "No")
        click.echo(
            f"{order.id:<6} {order.invoice_number:<26} {order.lane_id:<10} {format(order.amount, '.2f'):>10} "
            f"{order.status:<10} {recon:<6} {synced}"
        )

    click.echo("="*100 + "\n")


@orders_group.command('show')
@click.argument('order_id', type=int)
@with_appcontext
def show_order_cli(order_id):
    """Show one order with payments and events."""
    try:
        order = ledger.get_order(order_id)
    except NotFoundError as e:
        raise click.ClickException(str(e))

    click.echo(f"\nOrder {order.id}  {order.invoice_number}  lane={order.lane_id}")
    click.echo(f"  Status:  {order.status}  amount={format(order.amount, '.2f')}")
    if order.needs_reconciliation:
        click.echo(f"  WARN needs reconciliation: {order.reconciliation_note}")
    click.echo(f"  Sync:    synced={order.synced_to_zoho} receipt={order.zoho_sales_receipt_id or '-'} "
               f"attempts={order.sync_attempts}")
    if order.sync_error:
        click.echo(f"           error: {order.sync_error}")

    actions = ledger.payment_actions(order)
    click.echo(f"  Actions: can_void={actions['can_void']} can_refund={actions['can_refund']}")

    click.echo("\n  Payments:")
    for payment in order.payments:
        click.echo(f"    #{payment.id:<5} {payment.provider:<15} {payment.status:<11} "
                   f"{format(payment.amount, '.2f'):>10}  txn={payment.transaction_id}"
                   f"{'  (' + payment.decline_reason + ')' if payment.decline_reason else ''}")

    click.echo("\n  Events:")
    for event in ledger.get_order_events(order.id):
        transition = f"{event.from_status or ''}->{event.to_status}" if event.to_status else ""
        click.echo(f"    {event.occurred_at:%Y-%m-%d %H:%M:%S}  {event.event_type:<20} {transition:<20} "
                   f"{event.note or ''}")
    click.echo("")


@orders_group.command('reconciled')
@click.argument('order_id', type=int)
@click.option('--note', help='What was checked')
@with_appcontext
def reconciled_cli(order_id, note):
    """Clear the reconciliation flag on an order."""
    try:
        order = ledger.clear_reconciliation_flag(order_id, note=note)
    except _CLI_ERRORS as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Order {order.invoice_number} no longer flagged (status {order.status})")


# =============================================================================
# PAYMENTS
# =============================================================================

@click.group('payments')
def payments_group():
    """Payment polling and recovery commands."""


@payments_group.command('poll')
@click.argument('order_id', type=int)
@click.option('--max-attempts', type=int, help='Override PAYMENT_POLL_MAX_ATTEMPTS')
@click.option('--interval-ms', type=int, help='Override PAYMENT_POLL_INTERVAL_MS')
@with_appcontext
def poll_cli(order_id, max_attempts, interval_ms):
    """Poll an order's pending payment until it resolves."""
    try:
        result = flow.poll_payment(order_id, max_attempts=max_attempts, interval_ms=interval_ms)
    except _CLI_ERRORS as e:
        raise click.ClickException(str(e))

    click.echo(f"{result.outcome} after {result.attempts} attempt(s): order {result.order.invoice_number} "
               f"is {result.order.status}")
    if result.message:
        click.echo(f"  {result.message}")


@payments_group.command('release')
@click.argument('order_id', type=int)
@click.option('--reason', help='Why the attempt is abandoned')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def release_cli(order_id, reason, yes):
    """Cancel an order's PENDING payment."""
    if not yes:
        click.confirm("WARN Only release after confirming the terminal did not charge. Continue?", abort=True)
    try:
        flow.cancel_polling(order_id)
        payment = ledger.release_payment(order_id, reason=reason)
    except _CLI_ERRORS as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Payment {payment.id} ({payment.transaction_id}) cancelled")


@payments_group.command('recover')
@click.option('--lookback-minutes', type=int, help='Override RECOVERY_LOOKBACK_MINUTES')
@click.option('--window-minutes', type=int, help='Override RECOVERY_MATCH_WINDOW_MINUTES')
@with_appcontext
def recover_cli(lookback_minutes, window_minutes):
    """Record processor charges that never reached the ledger."""
    try:
        report = recovery_service.reconcile_recent_transactions(
            lookback_minutes=lookback_minutes, match_window_minutes=window_minutes
        )
    except _CLI_ERRORS as e:
        raise click.ClickException(str(e))

    if not report.ran:
        click.echo("WARN Another recovery run is in progress")
        return
    click.echo(f"Checked {report.checked}: {len(report.recovered)} recovered, "
               f"{report.already_recorded} already recorded, {len(report.skipped)} skipped")
    for item in report.recovered:
        click.echo(f"PASS {item['invoice_number']} paid by {item['transaction_id']} ({item['status']})")
    for item in report.skipped:
        click.echo(f"SKIP {item['transaction_id']}: {item['reason']}")


# =============================================================================
# ACCOUNTING SYNC
# =============================================================================

@click.group('sync')
def sync_group():
    """Accounting sync commands."""


@sync_group.command('retry-failed')
@click.option('--limit', type=int, help='Max orders (default SYNC_RETRY_BATCH_SIZE)')
@with_appcontext
def retry_failed_cli(limit):
    """Retry unsynced paid orders."""
    counts = sync_service.retry_failed_syncs(limit=limit)
    click.echo(f"Attempted {counts['attempted']}: {counts['succeeded']} synced, {counts['failed']} failed")


@sync_group.command('order')
@click.argument('order_id', type=int)
@with_appcontext
def sync_order_cli(order_id):
    """Retry the sync of one order."""
    try:
        order = sync_service.retry_sync(order_id)
    except _CLI_ERRORS as e:
        raise click.ClickException(str(e))
    if order.synced_to_zoho:
        click.echo(f"PASS {order.invoice_number} synced as receipt {order.zoho_sales_receipt_id}")
    else:
        click.echo(f"FAIL {order.invoice_number}: {order.sync_error}")


@sync_group.command('summary')
@with_appcontext
def sync_summary_cli():
    """Show sync counts."""
    summary = sync_service.sync_summary()
    click.echo(f"Synced:          {summary['synced']}")
    click.echo(f"Unsynced:        {summary['unsynced']}")
    click.echo(f"  with errors:   {summary['failed']}")
    click.echo(f"  never tried:   {summary['never_attempted']}")
    click.echo(f"Oldest unsynced: {summary['oldest_unsynced_at'] or '-'}")


# =============================================================================
# PROVIDERS
# =============================================================================

@click.group('providers')
def providers_group():
    """Payment channel setup commands."""


@providers_group.command('discover')
@click.argument('provider')
@with_appcontext
def discover_cli(provider):
    """List devices reachable through a channel."""
    try:
        devices = get_provider(provider).discover()
    except _CLI_ERRORS as e:
        raise click.ClickException(str(e))

    if not devices:
        click.echo("No devices found.")
        return
    for device in devices:
        data = device.to_dict()
        click.echo("  " + "  ".join(f"{key}={value}" for key, value in data.items() if value not in (None, "", {})))


@providers_group.command('test')
@click.argument('provider')
@click.option('--ip', help='Terminal IP (LAN_TERMINAL)')
@click.option('--port', type=int, help='Terminal port (LAN_TERMINAL)')
@click.option('--serial', 'serial_number', help='Terminal serial number (CLOUD_TERMINAL)')
@click.option('--epi', help='Terminal EPI (CLOUD_TERMINAL)')
@with_appcontext
def test_cli(provider, ip, port, serial_number, epi):
    """Check that a device or gateway answers."""
    target = None
    if ip or port or serial_number or epi:
        target = DeviceTarget(ip=ip, port=port, serial_number=serial_number, epi=epi)
    try:
        report = get_provider(provider).test_connection(target)
    except _CLI_ERRORS as e:
        raise click.ClickException(str(e))

    latency = f" ({report.latency_ms} ms)" if report.latency_ms is not None else ""
    click.echo(f"{'PASS' if report.reachable else 'FAIL'} {report.detail}{latency}")


@providers_group.command('authenticate')
@click.option('--force', is_flag=True, help='Discard the cached token first')
@with_appcontext
def authenticate_cli(force):
    """Fetch (or reuse) the cloud gateway token."""
    try:
        status = get_provider(CLOUD_TERMINAL).authenticate(force=force)
    except _CLI_ERRORS as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS token {'reused' if status.cached else 'issued'}, expires {status.to_dict()['expires_at']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(payments_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(providers_group)

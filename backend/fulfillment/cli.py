# Overview: Flask CLI command groups for bootstrap, stock and order inspection.

# backend/fulfillment/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to fulfillment (PowerShell: $env:FLASK_APP="fulfillment").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Products / stock:
# - python -m flask products list
#   List products with barcode and stock.
# - python -m flask products add --name "Kalamkari Saree" --price-cents 450000 --quantity 5
#   Create a product (duplicate name/barcode is refused).
# - python -m flask products restock 12 --amount 3
#   Add stock to an existing product through the ledger.
#
# Orders:
# - python -m flask orders stats
#   Dashboard counters per status.
# - python -m flask orders reconcile
#   List orders whose checkout could not deduct all stock.
# - python -m flask orders cancel 42 --reason "Customer request"
#   Cancel an order through the lifecycle.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import order_lifecycle, reporting_service, stock_ledger
from .services.order_lifecycle import LifecycleError
from .services.stock_ledger import DuplicateProductError
from .validation import ValidationError, ConflictError, NotFoundError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables are in place.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop products, orders, stock movements and packing sessions,
    then recreate the schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('products')
def products_group():
    """Product and stock commands."""


@products_group.command('list')
@with_appcontext
def list_products_cli():
    """List products with barcode and stock."""
    result = stock_ledger.list_products()
    if not result["items"]:
        click.echo("No products.")
        return

    click.echo(f"{'ID':<6} {'BARCODE':<20} {'QTY':>5} {'PRICE':>10}  NAME")
    for p in result["items"]:
        click.echo(f"{p['id']:<6} {p['barcode']:<20} {p['quantity']:>5} {p['price_cents']:>10}  {p['name']}")


@products_group.command('add')
@click.option('--name', required=True, help='Product name')
@click.option('--price-cents', type=int, required=True, help='Price in paise')
@click.option('--quantity', type=int, default=0, show_default=True, help='Opening stock')
@click.option('--barcode', default=None, help='Barcode (generated when omitted)')
@with_appcontext
def add_product_cli(name, price_cents, quantity, barcode):
    """Create a product after the duplicate check."""
    try:
        product = stock_ledger.create_product(
            name=name, price_cents=price_cents, quantity=quantity, barcode=barcode
        )
    except DuplicateProductError as e:
        existing = e.match.product
        click.echo(f"FAIL Duplicate {e.match.duplicate_type}: product {existing.id} ({existing.name})")
        click.echo(f"     Use: python -m flask products restock {existing.id} --amount {quantity or 1}")
        raise SystemExit(1)
    except (ValidationError, ConflictError) as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    click.echo(f"PASS Created product {product.id} barcode={product.barcode} quantity={product.quantity}")


@products_group.command('restock')
@click.argument('product_id', type=int)
@click.option('--amount', type=int, required=True, help='Units to add')
@with_appcontext
def restock_cli(product_id, amount):
    """Add stock to a product."""
    try:
        quantity = stock_ledger.merge_stock(product_id, amount)
    except (ValidationError, NotFoundError) as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Product {product_id} now has {quantity} in stock")


@click.group('orders')
def orders_group():
    """Order inspection commands."""


@orders_group.command('stats')
@with_appcontext
def order_stats_cli():
    """Show dashboard counters."""
    stats = reporting_service.get_order_statistics()
    click.echo(f"Total orders:       {stats['total']}")
    click.echo(f"Today:              {stats['today_count']} (revenue {stats['today_revenue_cents']} paise)")
    click.echo(f"Need reconciliation: {stats['reconciliation_required']}")
    for status, count in stats["by_status"].items():
        click.echo(f"  {status:<12} {count}")


@orders_group.command('reconcile')
@with_appcontext
def reconcile_cli():
    """List orders whose stock deduction failed at checkout."""
    orders = reporting_service.orders_needing_reconciliation()
    if not orders:
        click.echo("PASS No orders need stock reconciliation.")
        return

    for order in orders:
        click.echo(f"Order #{order.id} [{order.status}] {order.customer_name} ({order.customer_phone})")
        for item in order.items:
            click.echo(f"    product {item.product_id}: {item.name} x {item.quantity}")


@orders_group.command('cancel')
@click.argument('order_id', type=int)
@click.option('--reason', required=True, help='Cancellation reason')
@with_appcontext
def cancel_order_cli(order_id, reason):
    """Cancel an order."""
    try:
        order = order_lifecycle.cancel_order(order_id, reason)
    except (ValidationError, NotFoundError, LifecycleError) as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Order #{order.id} cancelled")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(products_group)
    app.cli.add_command(orders_group)

# Overview: Flask CLI command groups for bootstrap, stock maintenance, and ledger audits.

# backend/stockflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog:
# - python -m flask catalog seed
#   Create a small demo catalog (skips SKUs that already exist).
# - python -m flask catalog list [--category Apparel] [--status "Low Stock"]
# - python -m flask catalog restock 3 10 [--variant "Large"]
# - python -m flask catalog adjust 3 42 [--variant "Large"] [--reason "Cycle count"]
# - python -m flask catalog set-min 3 8 [--variant "Large"]
#   Change the low-stock threshold; status is re-derived immediately.
#
# Ledger audits:
# - python -m flask ledger verify [--product-id 3]
#   Replay history from zero and report any product whose stock disagrees.
# - python -m flask ledger history [--product-id 3] [--limit 20]
#
# Sales:
# - python -m flask sales reconcile
#   Recompute stored totals on every sale and report the ones repaired.
# - python -m flask sales cancel 12 [--reason "Customer changed mind"]

import click
from flask.cli import with_appcontext

from .errors import StockflowError
from .extensions import db
from .services import catalog_service, sales_service, stock_ledger

DEMO_CATALOG = [
    {
        "name": "Canvas Tote",
        "sku": "TOTE-001",
        "category": "Accessories",
        "price_cents": 2400,
        "cost_cents": 900,
        "stock": 40,
        "min_stock_level": 5,
    },
    {
        "name": "Enamel Mug",
        "sku": "MUG-001",
        "category": "Kitchen",
        "price_cents": 1600,
        "cost_cents": 550,
        "stock": 8,
        "min_stock_level": 10,
    },
    {
        "name": "Crew T-Shirt",
        "sku": "TEE-001",
        "category": "Apparel",
        "price_cents": 2200,
        "cost_cents": 800,
        "variants": [
            {"name": "Small", "sku": "TEE-001-S", "price_cents": 2200, "cost_cents": 800, "stock": 12},
            {"name": "Medium", "sku": "TEE-001-M", "price_cents": 2200, "cost_cents": 800, "stock": 20},
            {"name": "Large", "sku": "TEE-001-L", "price_cents": 2400, "cost_cents": 850, "stock": 6},
        ],
    },
]


def _fail(exc: StockflowError):
    click.echo(f"FAIL {exc.message}")
    for key, value in exc.details.items():
        click.echo(f"     {key}: {value}")
    raise SystemExit(1)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema is up to date.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask catalog seed' for demo data.")


# =============================================================================
# CATALOG COMMANDS
# =============================================================================

@click.group('catalog')
def catalog_group():
    """Product catalog and stock maintenance commands."""


@catalog_group.command('seed')
@with_appcontext
def seed_catalog():
    """Create the demo catalog. Stock is seeded through the ledger."""
    from .models import Product

    for entry in DEMO_CATALOG:
        if db.session.query(Product).filter_by(sku=entry["sku"]).first():
            click.echo(f"WARN  {entry['sku']} already exists, skipping...")
            continue
        try:
            product = catalog_service.create_product(**entry)
        except StockflowError as e:
            click.echo(f"FAIL Could not create {entry['sku']}: {e.message}")
            continue
        click.echo(f"PASS Created {product.sku} (ID: {product.id}) stock={product.stock} [{product.status}]")


@catalog_group.command('list')
@click.option('--category', help='Only this category')
@click.option('--status', help='Only this stock status')
@with_appcontext
def list_catalog(category, status):
    """List products with their stock and status."""
    try:
        products = catalog_service.list_products(category=category, status=status)
    except StockflowError as e:
        _fail(e)

    if not products:
        click.echo("No products found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'SKU':<12} {'Name':<28} {'Stock':>6} {'Min':>5}  {'Status'}")
    click.echo("="*80)
    for p in products:
        click.echo(f"{p.id:<5} {p.sku:<12} {p.name[:28]:<28} {p.stock:>6} {p.min_stock_level:>5}  {p.status}")
        for v in p.variants:
            click.echo(f"{'':<5} {v.sku:<12} {'  - ' + v.name[:24]:<28} {v.stock:>6} {v.min_stock_level:>5}  {v.status}")
    click.echo("="*80 + "\n")


@catalog_group.command('restock')
@click.argument('product_id', type=int)
@click.argument('quantity', type=int)
@click.option('--variant', 'variant_name', help='Variant name (required for products with variants)')
@click.option('--notes', help='Ledger note')
@with_appcontext
def restock_cli(product_id, quantity, variant_name, notes):
    """Add received units to a product or variant."""
    try:
        product = stock_ledger.restock_product(product_id, variant_name, quantity, notes)
    except StockflowError as e:
        _fail(e)
    click.echo(f"PASS {product.sku} stock is now {product.stock} [{product.status}]")


@catalog_group.command('adjust')
@click.argument('product_id', type=int)
@click.argument('stock', type=int)
@click.option('--variant', 'variant_name', help='Variant name (required for products with variants)')
@click.option('--reason', help='Why the count changed')
@with_appcontext
def adjust_cli(product_id, stock, variant_name, reason):
    """Set stock to a counted absolute value."""
    try:
        product = stock_ledger.adjust_stock(product_id, variant_name, stock, reason)
    except StockflowError as e:
        _fail(e)
    click.echo(f"PASS {product.sku} stock is now {product.stock} [{product.status}]")


@catalog_group.command('set-min')
@click.argument('product_id', type=int)
@click.argument('level', type=int)
@click.option('--variant', 'variant_name', help='Variant name')
@with_appcontext
def set_min_cli(product_id, level, variant_name):
    """Change the low-stock threshold of a product or variant."""
    try:
        product = catalog_service.update_product(product_id, {"min_stock_level": level}, variant_name)
    except StockflowError as e:
        _fail(e)
    click.echo(f"PASS {product.sku} min stock level updated [{product.status}]")


# =============================================================================
# LEDGER COMMANDS
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Stock history inspection and audit commands."""


@ledger_group.command('verify')
@click.option('--product-id', type=int, help='Only this product')
@with_appcontext
def verify_cli(product_id):
    """Replay stock history from zero and compare with stored stock."""
    try:
        problems = stock_ledger.verify_ledger(product_id)
    except StockflowError as e:
        _fail(e)

    if not problems:
        click.echo("PASS Stock history reproduces stored stock for every product.")
        return

    for report in problems:
        click.echo(
            f"FAIL Product {report['product_id']}: stored={report['stored']} "
            f"replayed={report['replayed']} breaks={len(report['breaks'])}"
        )
        for name, v in report["variants"].items():
            if v["stored"] != v["replayed"]:
                click.echo(f"     variant {name}: stored={v['stored']} replayed={v['replayed']}")
    raise SystemExit(1)


@ledger_group.command('history')
@click.option('--product-id', type=int, help='Only this product')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def history_cli(product_id, limit):
    """Show the most recent stock history entries."""
    entries = stock_ledger.list_stock_history(product_id=product_id, limit=limit)
    if not entries:
        click.echo("No stock history found.")
        return

    for e in entries:
        target = f"{e.product_id}/{e.variant_name}" if e.variant_name else str(e.product_id)
        click.echo(
            f"{e.id:<6} {target:<20} {e.type:<11} {e.previous_stock:>5} -> {e.new_stock:<5} "
            f"({e.change:+d}) {e.notes or ''}"
        )


# =============================================================================
# SALES COMMANDS
# =============================================================================

@click.group('sales')
def sales_group():
    """Sale maintenance commands."""


@sales_group.command('reconcile')
@with_appcontext
def reconcile_cli():
    """Recompute denormalized totals on every sale."""
    repaired = sales_service.reconcile_sales()
    if repaired:
        click.echo(f"WARN  Repaired totals on {len(repaired)} sale(s): {', '.join(str(i) for i in repaired)}")
    else:
        click.echo("PASS All sale totals match their items.")


@sales_group.command('cancel')
@click.argument('sale_id', type=int)
@click.option('--reason', help='Cancellation reason')
@with_appcontext
def cancel_cli(sale_id, reason):
    """Cancel a sale and return its stock."""
    try:
        sale = sales_service.cancel_sale(sale_id, reason)
    except StockflowError as e:
        _fail(e)
    click.echo(f"PASS Sale {sale.id} ({sale.reference}) is {sale.status}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(sales_group)

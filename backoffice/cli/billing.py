"""CLI commands for document numbering and billing operations."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import click
from tabulate import tabulate

from backoffice.errors import BackofficeError
from backoffice.observability.logging import init_logging
from backoffice.observability.tracing import init_tracing
from backoffice.services.billing import UNSET, get_billing_resolver
from backoffice.services.numbering import (
    SERIES,
    allocate as allocate_identifier,
    get_country_code
)
from backoffice.services.proforma_generator import get_proforma_generator
from backoffice.settings import settings
from backoffice.storage.db import close_database
from backoffice.storage.seed import seed_plans as seed_plan_catalog


def _run(operation: Callable[[], Awaitable[Any]]) -> Any:
    """Run an async command body, reporting domain errors as a failed exit."""
    async def run():
        try:
            return await operation()
        finally:
            await close_database()

    try:
        return asyncio.run(run())
    except BackofficeError as e:
        click.echo(f"❌ {type(e).__name__}: {e.message}")
        raise click.exceptions.Exit(1)


def _period_options(func):
    func = click.option('--year', type=int, help='Period year (default: current)')(func)
    func = click.option('--month', type=click.IntRange(1, 12), help='Period month (default: current)')(func)
    return func


def _charge_table(record) -> str:
    rows = [
        ["Client", record.client_id],
        ["Period", f"{record.month:02d}/{record.year}"],
        ["Over-space (EUR)", record.over_space_amount_eur],
        ["Additional services (EUR)", record.additional_services_amount_eur],
        ["Total (EUR)", record.total_amount_eur],
        ["Paid over-space (m³)", record.over_space_paid_cbm],
        ["Version", record.version],
        ["Closed", record.closed_at.isoformat() if record.closed_at else "-"],
        ["Persisted", "✅" if record.persisted else "❌"],
    ]
    return tabulate(rows, tablefmt="grid")


@click.group()
def cli():
    """Document numbering and billing commands."""
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR, settings.LOG_TO_FILES)
    init_tracing(settings.SERVICE_NAME)


# ==== NUMBERING ==== #


@cli.command()
@click.argument('series', type=click.Choice(sorted(SERIES)))
@click.option('--period', help='Period key (default: current year, or month for packing orders)')
@click.option('--country', help='Shipment country for packing order numbers')
def allocate(series: str, period: Optional[str], country: Optional[str]):
    """Allocate the next identifier of a series."""
    definition = SERIES[series]
    series_tag = definition.tag
    if series == "packing-order":
        series_tag = f"{definition.tag}-{get_country_code(country)}"
    period_key = period or definition.period_key(datetime.now(timezone.utc))

    identifier = _run(lambda: allocate_identifier(series_tag, period_key))
    if identifier is None:
        click.echo(f"⚠️  No identifier available: {definition.table}.{definition.column} is not provisioned")
        raise click.exceptions.Exit(2)
    click.echo(identifier)


# ==== PLANS AND FEES ==== #


@cli.command('seed-plans')
def seed_plans():
    """Create the catalog plans that do not exist yet."""
    result = _run(seed_plan_catalog)
    click.echo(f"✅ Created {len(result['created'])} plans, skipped {len(result['skipped'])}")
    table_data = [[name, "created"] for name in result["created"]]
    table_data += [[name, "skipped"] for name in result["skipped"]]
    if table_data:
        click.echo(tabulate(table_data, headers=["Plan", "Action"], tablefmt="grid"))


@cli.command('update-plan')
@click.argument('plan_id')
@click.option('--rate', required=True, help='Monthly operations rate (EUR)')
@click.option('--promo', help='Promotional price (EUR)')
@click.option('--clear-promo', is_flag=True, help='Remove the promotional price')
def update_plan(plan_id: str, rate: str, promo: Optional[str], clear_promo: bool):
    """Update a plan's monthly price and promotion."""
    promotional = UNSET
    if clear_promo:
        promotional = None
    elif promo is not None:
        promotional = promo

    plan = _run(lambda: get_billing_resolver().update_plan_rate(plan_id, rate, promotional))
    click.echo(f"✅ Updated plan {plan.name}")
    click.echo(tabulate([[
        plan.name,
        plan.operations_rate_eur,
        plan.promotional_price_eur if plan.promotional_price_eur is not None else "-",
        plan.updated_at.isoformat() if plan.updated_at else "-"
    ]], headers=["Plan", "Rate (EUR)", "Promo (EUR)", "Updated"], tablefmt="grid"))


@cli.command('setup-fee')
@click.option('--at', 'at', type=click.DateTime(), help='Evaluate at this UTC instant (default: now)')
def setup_fee(at: Optional[datetime]):
    """Show the effective setup fee."""
    fee = _run(lambda: get_billing_resolver().quote_setup_fee(at))
    click.echo(tabulate([
        ["Amount (EUR)", fee.amount_eur],
        ["Suggested (EUR)", fee.suggested_amount_eur],
        ["Promotional", "✅" if fee.is_promotional else "❌"],
        ["Valid until", fee.valid_until.isoformat() if fee.valid_until else "-"],
        ["State", fee.state.value],
    ], tablefmt="grid"))


@cli.command('set-setup-fee')
@click.option('--amount', help='Promotional setup fee (EUR)')
@click.option('--valid-until', type=click.DateTime(), help='Promotion expiry, UTC (default: open-ended)')
@click.option('--clear', is_flag=True, help='Remove the promotion')
def set_setup_fee(amount: Optional[str], valid_until: Optional[datetime], clear: bool):
    """Set or clear the promotional setup fee."""
    if clear == (amount is not None):
        raise click.UsageError("Pass either --amount or --clear")

    fee = _run(lambda: get_billing_resolver().set_setup_fee_promotion(None if clear else amount, valid_until))
    if fee.current_amount_eur is None:
        click.echo(f"✅ Setup fee promotion cleared, {fee.suggested_amount_eur} EUR applies")
        return
    until = fee.valid_until.isoformat() if fee.valid_until else "open-ended"
    click.echo(f"✅ Setup fee promotion {fee.current_amount_eur} EUR (suggested {fee.suggested_amount_eur}), {until}")


@cli.command('create-voucher')
@click.argument('code')
@click.option('--amount', required=True, help='Setup fee discount (EUR)')
@click.option('--expires-at', type=click.DateTime(), help='Last valid instant, UTC (default: never)')
@click.option('--reusable', is_flag=True, help='Allow more than one client to redeem')
def create_voucher(code: str, amount: str, expires_at: Optional[datetime], reusable: bool):
    """Create a setup fee voucher."""
    voucher = _run(lambda: get_billing_resolver().create_voucher(
        code, amount, expires_at, is_one_time=not reusable
    ))
    click.echo(f"✅ Voucher {voucher.code} created: {voucher.amount_eur} EUR off the setup fee")


@cli.command()
def vouchers():
    """List setup fee vouchers."""
    records = _run(lambda: get_billing_resolver().list_vouchers())
    if not records:
        click.echo("No vouchers")
        return
    click.echo(tabulate(
        [
            [
                v.code,
                v.amount_eur,
                "one-time" if v.is_one_time else "reusable",
                v.used_by_client_id or "-",
                v.expires_at.isoformat() if v.expires_at else "-"
            ]
            for v in records
        ],
        headers=["Code", "Amount (EUR)", "Kind", "Used by", "Expires"],
        tablefmt="grid"
    ))


@cli.command('check-voucher')
@click.argument('code')
@click.argument('client_id')
def check_voucher(code: str, client_id: str):
    """Quote the setup fee a client pays with a voucher."""
    quote = _run(lambda: get_billing_resolver().quote_setup_fee_with_voucher(code, client_id))
    click.echo(f"✅ {quote.code}: {quote.fee.amount_eur} - {quote.voucher_amount_eur} = {quote.amount_due_eur} EUR")


@cli.command()
def pricing():
    """Show the public price list."""
    catalog = _run(lambda: get_billing_resolver().get_pricing_catalog())
    table_data = [
        [
            plan.name,
            plan.deliveries_per_month,
            plan.space_limit_cbm,
            plan.over_space_rate_eur,
            plan.effective_monthly_rate_eur,
            "✅" if plan.is_promotional else ""
        ]
        for plan in catalog.plans
    ]
    click.echo(tabulate(
        table_data,
        headers=["Plan", "Deliveries", "Space (m³)", "Over-space (EUR/m³)", "Monthly (EUR)", "Promo"],
        tablefmt="grid"
    ))
    marker = " (promotional)" if catalog.setup_fee.is_promotional else ""
    click.echo(f"\nSetup fee: {catalog.setup_fee.amount_eur} EUR{marker}")


# ==== MONTHLY CHARGES ==== #


@cli.command()
@click.argument('client_id')
@_period_options
def charges(client_id: str, month: Optional[int], year: Optional[int]):
    """Show a client's additional charges for a month."""
    record = _run(lambda: get_billing_resolver().get_monthly_charges(client_id, month, year))
    click.echo(_charge_table(record))


@cli.command()
@click.argument('client_id')
@_period_options
def recalculate(client_id: str, month: Optional[int], year: Optional[int]):
    """Recompute a client's over-space charge from current occupancy."""
    record = _run(lambda: get_billing_resolver().recalculate_over_space(client_id, month, year))
    click.echo("✅ Over-space recalculated")
    click.echo(_charge_table(record))


@cli.command('add-charge')
@click.argument('client_id')
@click.option('--amount', required=True, help='Service charge (EUR)')
@click.option('--reference', help='Idempotency reference of the service (e.g. quote id)')
@_period_options
def add_charge(client_id: str, amount: str, reference: Optional[str], month: Optional[int], year: Optional[int]):
    """Add an additional service charge to a client's month."""
    record = _run(lambda: get_billing_resolver().add_additional_service_charge(
        client_id, amount, month, year, reference=reference
    ))
    click.echo("✅ Service charge recorded")
    click.echo(_charge_table(record))


@cli.command('close-period')
@click.argument('client_id')
@click.option('--month', type=click.IntRange(1, 12), required=True, help='Period month')
@click.option('--year', type=int, required=True, help='Period year')
def close_period(client_id: str, month: int, year: int):
    """Close a client's charge period against further changes."""
    record = _run(lambda: get_billing_resolver().close_period(client_id, month, year))
    click.echo(f"✅ Closed {record.month:02d}/{record.year} for {client_id} at {record.total_amount_eur} EUR")


@cli.command('generate-proformas')
@click.option('--month', type=click.IntRange(1, 12), help='Period month (default: previous month)')
@click.option('--year', type=int, help='Period year (default: previous month)')
@click.option('--keep-open', is_flag=True, help='Do not close invoiced periods')
def generate_proformas(month: Optional[int], year: Optional[int], keep_open: bool):
    """Issue proforma invoices for a period."""
    result = _run(lambda: get_proforma_generator().generate_proformas(
        month, year, close_periods=False if keep_open else None
    ))

    click.echo(
        f"✅ {result.month:02d}/{result.year}: {result.created} created, "
        f"{result.updated} updated, {result.skipped} skipped"
    )
    if result.proformas:
        click.echo(tabulate(
            [[p.invoice_number or "-", p.client_id, p.amount_eur, p.status.value, p.due_date.date()]
             for p in result.proformas],
            headers=["Number", "Client", "Amount (EUR)", "Status", "Due"],
            tablefmt="grid"
        ))
    for failure in result.errors:
        click.echo(f"❌ {failure.client_id}: {failure.error}")


if __name__ == '__main__':
    cli()

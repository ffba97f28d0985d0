# ==== PREFECT MONTH-END BILLING FLOW ==== #

"""
Prefect flow for month-end billing.

Recomputes each client's over-space charge for the period, issues the
period's proforma invoices and closes the invoiced charge periods. Every
step is safe to re-run: recomputation is absolute, proformas are upserted
and closing an already closed period is a no-op.
"""

import argparse
import asyncio
from typing import Any, Dict, List, Optional

from prefect import flow, task, get_run_logger

from backoffice.errors import BackofficeError
from backoffice.services.billing import get_billing_resolver
from backoffice.services.proforma_generator import get_proforma_generator, previous_period
from backoffice.storage.record_store import get_record_store


# ==== TASK DEFINITIONS ==== #


@task()
async def fetch_client_ids() -> List[str]:
    """
    Fetch every client that can accrue charges.

    Returns:
        List[str]: Client identifiers
    """
    logger = get_run_logger()
    rows = await get_record_store().select_where("clients", {}, order_by="id")
    logger.info(f"Found {len(rows)} clients")
    return [row["id"] for row in rows]


@task()
async def recalculate_client_over_space(client_id: str, month: int, year: int) -> Dict[str, Any]:
    """
    Recompute one client's over-space charge for the period.

    Args:
        client_id (str): Client identifier
        month (int): Period month
        year (int): Period year

    Returns:
        Dict[str, Any]: Client id with the resulting total, or the error
    """
    logger = get_run_logger()
    try:
        record = await get_billing_resolver().recalculate_over_space(client_id, month, year)
        return {"client_id": client_id, "total_amount_eur": str(record.total_amount_eur)}
    except BackofficeError as e:
        # Closed periods and missing clients must not stop the batch
        logger.warning(f"Over-space recalculation skipped for {client_id}: {e.message}")
        return {"client_id": client_id, "error": e.message}


@task()
async def issue_proformas(month: int, year: int, close_periods: bool) -> Dict[str, Any]:
    """
    Issue proformas for the period.

    Returns:
        Dict[str, Any]: Serialized ProformaBatchResult
    """
    logger = get_run_logger()
    result = await get_proforma_generator().generate_proformas(
        month=month, year=year, close_periods=close_periods
    )
    logger.info(
        f"Proformas for {month:02d}/{year}: {result.created} created, "
        f"{result.updated} updated, {len(result.errors)} errors"
    )
    return result.model_dump(mode="json")


# ==== MAIN FLOW ==== #


@flow(name="monthly-billing", log_prints=True)
async def monthly_billing_flow(
    month: Optional[int] = None,
    year: Optional[int] = None,
    recalculate: bool = True,
    close_periods: bool = True
) -> Dict[str, Any]:
    """
    Run month-end billing for a period.

    Args:
        month (Optional[int]): Period month, defaults to the previous month
        year (Optional[int]): Period year, defaults to the previous month's year
        recalculate (bool): Recompute over-space charges before invoicing
        close_periods (bool): Close invoiced charge periods

    Returns:
        Dict[str, Any]: Flow execution summary
    """
    logger = get_run_logger()
    if month is None or year is None:
        month, year = previous_period()

    logger.info(f"Starting month-end billing for {month:02d}/{year}")

    recalculated: List[Dict[str, Any]] = []
    if recalculate:
        client_ids = await fetch_client_ids()
        recalculated = await asyncio.gather(*[
            recalculate_client_over_space(client_id, month, year)
            for client_id in client_ids
        ])

    proformas = await issue_proformas(month, year, close_periods)

    failed = [item for item in recalculated if "error" in item]
    return {
        "status": "success" if not failed and not proformas["errors"] else "partial",
        "month": month,
        "year": year,
        "clients_recalculated": len(recalculated) - len(failed),
        "recalculation_errors": failed,
        "proformas": proformas,
        "summary": (
            f"Recalculated {len(recalculated) - len(failed)} clients, "
            f"issued {proformas['created'] + proformas['updated']} proformas"
        ),
    }


# ==== COMMAND LINE INTERFACE ==== #


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Month-end billing flow")
    parser.add_argument("--run", action="store_true", help="Run flow locally")
    parser.add_argument("--serve", action="store_true", help="Serve flow with a monthly schedule")
    parser.add_argument("--month", type=int, help="Period month (default: previous month)")
    parser.add_argument("--year", type=int, help="Period year (default: previous month's year)")
    parser.add_argument("--no-recalculate", action="store_true", help="Skip over-space recalculation")
    parser.add_argument("--keep-open", action="store_true", help="Do not close invoiced periods")

    args = parser.parse_args()

    if args.serve:
        print("Serving month-end billing flow locally...")
        monthly_billing_flow.serve(
            name="monthly-billing",
            tags=["billing", "proforma"],
            cron="0 2 1 * *"  # 02:00 UTC on the first of each month
        )

    elif args.run:
        print("Running month-end billing flow locally...")
        result = asyncio.run(monthly_billing_flow(
            month=args.month,
            year=args.year,
            recalculate=not args.no_recalculate,
            close_periods=not args.keep_open
        ))
        print(f"Flow completed: {result['summary']}")

    else:
        print("Usage: python flows/monthly_billing_flow.py [--run|--serve] [options]")
        print("  --run: Execute flow once locally")
        print("  --serve: Start flow server for scheduled execution")
        print("  --month N --year N: Period to bill (default: previous month)")
        print("  --no-recalculate: Skip over-space recalculation")
        print("  --keep-open: Do not close invoiced periods")

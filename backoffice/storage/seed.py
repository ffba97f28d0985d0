"""Database seeder for the subscription plan catalog."""

import datetime as dt
from typing import Dict, List

from backoffice.observability.logging import ContextualLogger
from backoffice.services.policy_loader import get_plan_catalog, validate_plan_catalog
from backoffice.services.warehouse_calculations import quantize_money, quantize_volume
from backoffice.storage.record_store import DuplicateRow, RecordStore, get_record_store


logger = ContextualLogger(__name__)


async def seed_plans(store: RecordStore | None = None) -> Dict[str, List[str]]:
    """Seed the plans table from the catalog, skipping plans that already exist.

    Existing plans are never overwritten, so prices changed by operators
    survive a re-seed.

    Returns:
        Dict[str, List[str]]: Plan names under ``created`` and ``skipped``
    """
    store = store or get_record_store()
    catalog = get_plan_catalog()
    if not validate_plan_catalog(catalog):
        raise ValueError("Plan catalog is invalid")

    logger.info("Seeding plans", plans=len(catalog["plans"]))
    result: Dict[str, List[str]] = {"created": [], "skipped": []}
    now = dt.datetime.now(dt.timezone.utc)

    for plan in catalog["plans"]:
        existing = await store.select_where("plans", {"name": plan["name"]}, limit=1)
        if existing:
            result["skipped"].append(plan["name"])
            continue

        try:
            await store.insert("plans", {
                "name": plan["name"],
                "deliveries_per_month": int(plan["deliveries_per_month"]),
                "space_limit_cbm": quantize_volume(plan["space_limit_cbm"]),
                "over_space_rate_eur": quantize_money(plan["over_space_rate_eur"]),
                "operations_rate_eur": quantize_money(plan["operations_rate_eur"]),
                "promotional_price_eur": None,
                "created_at": now,
                "updated_at": now,
            })
        except DuplicateRow:
            # Seeded concurrently by another process
            result["skipped"].append(plan["name"])
            continue

        result["created"].append(plan["name"])

    logger.info(
        "Plan seeding completed",
        created=len(result["created"]),
        skipped=len(result["skipped"])
    )
    return result

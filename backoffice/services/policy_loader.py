# ==== POLICY LOADER SERVICE ==== #

"""
Policy loader for the plan catalog and country code table.

Both files live under ``backoffice/business/policies`` and are cached after
the first read; hardcoded defaults keep the core usable when a file is
missing from a deployment.
"""

import functools
import os
from typing import Any, Dict, List

import yaml

from backoffice.observability.tracing import get_tracer


tracer = get_tracer(__name__)

_POLICIES_DIR = os.path.join(os.path.dirname(__file__), "..", "business", "policies")


def _load_yaml(filename: str) -> Dict[str, Any] | None:
    path = os.path.join(_POLICIES_DIR, filename)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return None


# ==== PLAN CATALOG ==== #


@functools.lru_cache(maxsize=1)
def get_plan_catalog() -> Dict[str, Any]:
    """
    Get the subscription plan catalog.

    Returns:
        Dict[str, Any]: ``plans`` (list of plan definitions) and
        ``hidden_plans`` (names excluded from the public price list)
    """
    with tracer.start_as_current_span("load_plan_catalog") as span:
        config = _load_yaml("plans.yaml")

        if config is not None:
            span.set_attribute("config_loaded", True)
            config.setdefault("hidden_plans", ["Individual"])
            return config

        span.set_attribute("config_loaded", False)
        span.set_attribute("fallback_used", True)

        return {
            "plans": [
                {"name": "Basic", "deliveries_per_month": 4, "space_limit_cbm": 2.5,
                 "over_space_rate_eur": 20, "operations_rate_eur": 59},
                {"name": "Standard", "deliveries_per_month": 8, "space_limit_cbm": 5.0,
                 "over_space_rate_eur": 20, "operations_rate_eur": 99},
                {"name": "Professional", "deliveries_per_month": 12, "space_limit_cbm": 20.0,
                 "over_space_rate_eur": 20, "operations_rate_eur": 229},
                {"name": "Enterprise", "deliveries_per_month": 999, "space_limit_cbm": 50.0,
                 "over_space_rate_eur": 20, "operations_rate_eur": 0},
            ],
            "hidden_plans": ["Individual"],
        }


def get_hidden_plan_names() -> List[str]:
    """Plan names that never appear in the public price list."""
    return list(get_plan_catalog().get("hidden_plans") or [])


# ==== COUNTRY CODES ==== #


@functools.lru_cache(maxsize=1)
def get_country_aliases() -> Dict[str, str]:
    """
    Get the country alias table used by packing order numbering.

    Returns:
        Dict[str, str]: Upper-cased country name or code -> ISO code, plus
        the ``"*"`` key holding the default code
    """
    with tracer.start_as_current_span("load_country_aliases") as span:
        config = _load_yaml("countries.yaml")
        span.set_attribute("config_loaded", config is not None)

        if config is None:
            config = {
                "default_code": "PL",
                "aliases": {
                    "PL": ["Poland", "Polska", "PL"],
                    "DE": ["Germany", "Deutschland", "DE"],
                    "FR": ["France", "FR"],
                    "IT": ["Italy", "Italia", "IT"],
                    "GB": ["United Kingdom", "UK", "GB"],
                    "IE": ["Ireland", "IE"],
                    "ES": ["Spain", "España", "ES"],
                    "NL": ["Netherlands", "Nederland", "NL"],
                    "BE": ["Belgium", "België", "BE"],
                },
            }

        table = {"*": config.get("default_code", "PL")}
        for code, names in (config.get("aliases") or {}).items():
            for name in names:
                table[str(name).strip().upper()] = code
        return table


# ==== CONFIGURATION VALIDATION ==== #


def validate_plan_catalog(config: Dict[str, Any]) -> bool:
    """
    Validate plan catalog configuration.

    Args:
        config (Dict[str, Any]): Plan catalog dictionary to validate

    Returns:
        bool: True if valid, False otherwise
    """
    required_fields = [
        "name",
        "deliveries_per_month",
        "space_limit_cbm",
        "over_space_rate_eur",
        "operations_rate_eur",
    ]

    plans = config.get("plans")
    if not isinstance(plans, list) or not plans:
        return False

    names = set()
    for plan in plans:
        for field in required_fields:
            if field not in plan:
                return False

        if plan["name"] in names:
            return False
        names.add(plan["name"])

        for field in required_fields[1:]:
            if not isinstance(plan[field], (int, float)) or plan[field] < 0:
                return False

    return True

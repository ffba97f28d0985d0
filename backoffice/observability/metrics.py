# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for the numbering and billing core.

Counters are module-level singletons registered in the default registry;
``start_metrics_server`` exposes them for scraping from long-running
workers such as the month-end flow.
"""

from prometheus_client import Counter, Gauge, start_http_server


# ==== DOCUMENT NUMBERING METRICS ==== #

identifiers_allocated_total = Counter(
    "backoffice_identifiers_allocated_total",
    "Identifiers handed out by series, strategy and outcome",
    ["series", "strategy", "outcome"]  # outcome: sequential, fallback, unavailable
)

sequence_conflicts_total = Counter(
    "backoffice_sequence_conflicts_total",
    "Compare-and-swap conflicts on sequence counters",
    ["series"]
)

sequence_parse_failures_total = Counter(
    "backoffice_sequence_parse_failures_total",
    "Existing identifiers whose numeric suffix could not be parsed",
    ["series"]
)


# ==== BILLING METRICS ==== #

charge_write_conflicts_total = Counter(
    "backoffice_charge_write_conflicts_total",
    "Optimistic version conflicts on monthly charge rows",
    ["operation"]
)

charge_mutations_total = Counter(
    "backoffice_charge_mutations_total",
    "Successful monthly charge mutations",
    ["operation"]
)

plan_rate_updates_total = Counter(
    "backoffice_plan_rate_updates_total",
    "Plan price updates applied",
    ["promotion"]  # promotion: set, cleared, unchanged
)

proformas_generated_total = Counter(
    "backoffice_proformas_generated_total",
    "Proforma invoices created or refreshed",
    ["action"]  # action: created, updated
)

proforma_failures_total = Counter(
    "backoffice_proforma_failures_total",
    "Proforma generation failures by error type",
    ["error_type"]
)

last_proforma_batch_size = Gauge(
    "backoffice_last_proforma_batch_size",
    "Number of proformas produced by the most recent batch"
)


# ==== PERSISTENCE METRICS ==== #

db_sessions_active = Gauge(
    "backoffice_db_sessions_active",
    "Database sessions currently open"
)

store_errors_total = Counter(
    "backoffice_store_errors_total",
    "Record store failures by table, operation and error kind",
    ["table", "operation", "kind"]  # kind: unavailable, schema_absent, duplicate
)


# ==== EXPOSITION ==== #


def start_metrics_server(port: int = 9108) -> None:
    """Expose the default registry on ``port`` for Prometheus scraping."""
    start_http_server(port)

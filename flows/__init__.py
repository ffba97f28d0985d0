# ==== PREFECT FLOWS PACKAGE ==== #

"""
Prefect flows for back office billing operations.

- monthly_billing_flow: Month-end over-space recalculation, proforma
  issuance and period closing
"""

from .monthly_billing_flow import monthly_billing_flow

__all__ = [
    "monthly_billing_flow"
]

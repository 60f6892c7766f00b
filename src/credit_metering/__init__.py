"""Credit metering: plan-based credit ledger, request gate and billing reconciliation."""

__version__ = "0.1.0"

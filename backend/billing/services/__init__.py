"""Billing domain services: metering, ledger, reconciliation, invoicing and scheduling."""

"""Credit ledger and subscription reconciliation service."""

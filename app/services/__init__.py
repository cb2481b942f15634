"""Service layer for billing reconciliation and gateway clients."""

"""Background workers for async processing."""
from .reconciliation_worker import run_reconciliation_cycle, start_reconciliation_worker

__all__ = ["run_reconciliation_cycle", "start_reconciliation_worker"]

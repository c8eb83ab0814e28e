"""Plan reconciliation and recovery."""

from .aggregate import RecoveryItem, RecoveryReport, aggregate_recovery
from .extract import extract_tasks, normalize_task_id
from .reconcile import ReconciliationResult, reconcile_plan
from .runtime import RecoveryRuntime

__all__ = [
    "RecoveryRuntime",
    "RecoveryItem",
    "RecoveryReport",
    "ReconciliationResult",
    "aggregate_recovery",
    "extract_tasks",
    "normalize_task_id",
    "reconcile_plan",
]

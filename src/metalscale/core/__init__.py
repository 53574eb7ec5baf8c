"""Reconciliation engine and the scheduler that drives it."""

from metalscale.core.reconciler import (
    ConfigurationError,
    PowerActionError,
    ReconcileError,
    Reconciler,
)
from metalscale.core.scheduler import ReconcileScheduler


__all__ = [
    "Reconciler",
    "ReconcileError",
    "ConfigurationError",
    "PowerActionError",
    "ReconcileScheduler",
]

"""metalscale - Power lifecycle controller for bare-metal autoscaling pools."""

__version__ = "0.1.0"

from metalscale.core import Reconciler, ReconcileScheduler
from metalscale.persistence import RecordStore
from metalscale.provider import FleetProvider


__all__ = [
    "FleetProvider",
    "ReconcileScheduler",
    "Reconciler",
    "RecordStore",
    "__version__",
]

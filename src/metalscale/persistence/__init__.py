"""Machine records and their persistent storage."""

from metalscale.persistence.models import Machine
from metalscale.persistence.records import (
    ControlType,
    IPMIControl,
    MachineRecord,
    MachineSpec,
    MachineStatus,
    Phase,
    PowerState,
    WOLControl,
)
from metalscale.persistence.store import (
    ChangeType,
    ConflictError,
    RecordExistsError,
    RecordNotFoundError,
    RecordStore,
    StoreError,
)


__all__ = [
    # Models
    "Machine",
    # Records
    "ControlType",
    "IPMIControl",
    "MachineRecord",
    "MachineSpec",
    "MachineStatus",
    "Phase",
    "PowerState",
    "WOLControl",
    # Store
    "RecordStore",
    "ChangeType",
    "StoreError",
    "RecordNotFoundError",
    "RecordExistsError",
    "ConflictError",
]

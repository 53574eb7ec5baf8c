#!/usr/bin/env python3
"""Machine records exchanged between the store, the reconciler and the provider.

Records are plain dataclasses detached from the database session. The store
converts ORM rows to records on read and back on write.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class PowerState(Enum):
    """Desired power state of a machine."""

    ON = "on"
    OFF = "off"


class ControlType(Enum):
    """Power control method of a machine."""

    WOL = "wol"
    IPMI = "ipmi"


class Phase(Enum):
    """Observed lifecycle phase of a machine."""

    PENDING = "pending"
    ACTIVE = "active"
    OFFLINE = "offline"
    DRAINING = "draining"
    FAILED = "failed"


@dataclass
class WOLControl:
    """Wake-on-LAN control parameters.

    Power on is a magic packet; power off is an SSH shutdown.

    Attributes:
        address: Network address of the machine (probe and SSH target)
        mac_address: MAC address the magic packet is built for
        port: UDP port for the magic packet (backend default when unset)
        broadcast_address: Broadcast address (backend default when unset)
        user: SSH user for shutdown (backend default when unset)
    """

    address: Optional[str] = None
    mac_address: Optional[str] = None
    port: Optional[int] = None
    broadcast_address: Optional[str] = None
    user: Optional[str] = None


@dataclass
class IPMIControl:
    """IPMI control parameters.

    Attributes:
        address: BMC hostname or IP address
        username: BMC username
        password: BMC password
    """

    address: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class MachineSpec:
    """Desired state of a machine. Written by operators and the provider."""

    power_state: Optional[PowerState] = None
    control_type: ControlType = ControlType.WOL
    wol: Optional[WOLControl] = None
    ipmi: Optional[IPMIControl] = None


@dataclass
class MachineStatus:
    """Observed state of a machine. Written only by the reconciler."""

    phase: Optional[Phase] = None
    message: str = ""
    failing_since: Optional[datetime] = None
    failure_count: int = 0


@dataclass
class MachineRecord:
    """One physical machine.

    Attributes:
        name: Unique machine name
        spec: Desired state
        status: Observed state
        labels: Free-form labels (e.g. gpu-type)
        version: Optimistic concurrency token, bumped on every write
    """

    name: str
    spec: MachineSpec = field(default_factory=MachineSpec)
    status: MachineStatus = field(default_factory=MachineStatus)
    labels: Dict[str, str] = field(default_factory=dict)
    version: int = 0

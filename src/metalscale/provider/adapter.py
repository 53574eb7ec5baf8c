#!/usr/bin/env python3
"""Fleet Provider - Maps pool-scale operations onto machine desired state.

All machines form one node group. Scaling the group flips the desired power
state of individual machines; the reconciler does the actual powering. The
provider never probes machines, never calls power backends and never writes
status. It holds no cache and reads the store on every call.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional

from metalscale.persistence.records import MachineRecord, PowerState
from metalscale.persistence.store import RecordStore


logger = logging.getLogger(__name__)

# Constants
DEFAULT_NODE_GROUP_ID = "bare-metal-pool"
GPU_LABEL = "nvidia.com/gpu"
GPU_TYPE_LABEL = "gpu-type"


class ProviderError(Exception):
    """Base exception for provider errors."""


class UnknownNodeGroupError(ProviderError):
    """Raised for a node group id other than the single pool."""


class NodeNotFoundError(ProviderError):
    """Raised when a named node has no machine record."""


class InvalidRequestError(ProviderError):
    """Raised when a request is missing a required field."""


class InsufficientCapacityError(ProviderError):
    """Raised when fewer machines could be powered on than requested.

    Machines already switched on are left on.

    Attributes:
        requested: Number of machines asked for
        provisioned: Number of machines switched on
    """

    def __init__(self, requested: int, provisioned: int) -> None:
        super().__init__(
            f"Could not provision enough servers: requested {requested}, provisioned {provisioned}"
        )
        self.requested = requested
        self.provisioned = provisioned


class InstanceState(Enum):
    """Instance state reported to the scaling client."""

    UNSPECIFIED = "unspecified"
    RUNNING = "running"
    DELETING = "deleting"


@dataclass
class NodeGroup:
    """A group of interchangeable machines."""

    id: str
    min_size: int
    max_size: int


@dataclass
class Instance:
    """One machine as seen by the scaling client."""

    id: str
    state: InstanceState


def instance_state(power_state: Optional[PowerState]) -> InstanceState:
    """Map a desired power state to an instance state."""
    if power_state is PowerState.ON:
        return InstanceState.RUNNING
    if power_state is PowerState.OFF:
        return InstanceState.DELETING
    return InstanceState.UNSPECIFIED


def desired_state(record: MachineRecord) -> PowerState:
    return record.spec.power_state or PowerState.OFF


class FleetProvider:
    """Pool-scale operations over the record store.

    Attributes:
        store: Record store; only the desired power state is ever written
        node_group_id: Id of the single node group
    """

    def __init__(self, store: RecordStore, node_group_id: str = DEFAULT_NODE_GROUP_ID) -> None:
        self.store = store
        self.node_group_id = node_group_id

    def _check_group(self, group_id: str) -> None:
        if group_id != self.node_group_id:
            raise UnknownNodeGroupError(f"Unknown node group: {group_id}")

    def _node_group(self, size: int) -> NodeGroup:
        return NodeGroup(id=self.node_group_id, min_size=0, max_size=size)

    def _set_power_state(self, record: MachineRecord, power_state: PowerState) -> None:
        spec = replace(record.spec, power_state=power_state)
        self.store.update_spec(replace(record, spec=spec))
        logger.info(f"Machine {record.name} desired power state set to {power_state.value}")

    def node_groups(self) -> List[NodeGroup]:
        """Return the single node group sized by the number of machines."""
        return [self._node_group(len(self.store.list()))]

    def node_group_nodes(self, group_id: str) -> List[Instance]:
        """Return every machine in the group with its mapped state."""
        self._check_group(group_id)
        return [
            Instance(id=record.name, state=instance_state(record.spec.power_state))
            for record in self.store.list()
        ]

    def node_group_for_node(self, node_name: str) -> Optional[NodeGroup]:
        """Return the node group owning a node, or None if the node is not ours."""
        if not node_name:
            raise InvalidRequestError("Node is required")
        if self.store.get(node_name) is None:
            return None
        return self._node_group(len(self.store.list()))

    def node_group_target_size(self, group_id: str) -> int:
        """Number of machines whose desired state is on."""
        self._check_group(group_id)
        return sum(1 for record in self.store.list() if record.spec.power_state is PowerState.ON)

    def node_group_increase_size(self, group_id: str, delta: int) -> None:
        """Switch up to delta machines from off to on.

        Raises:
            UnknownNodeGroupError: For a foreign group id
            InsufficientCapacityError: If fewer than delta machines were off;
                the ones switched on stay on
            ConflictError: If a machine changed concurrently
        """
        self._check_group(group_id)
        if delta <= 0:
            return

        provisioned = 0
        for record in self.store.list():
            if provisioned >= delta:
                break
            if desired_state(record) is PowerState.OFF:
                self._set_power_state(record, PowerState.ON)
                provisioned += 1

        if provisioned < delta:
            logger.warning(f"Increase by {delta} fell short, provisioned {provisioned}")
            raise InsufficientCapacityError(delta, provisioned)

    def node_group_decrease_target_size(self, group_id: str, delta: int) -> None:
        """Switch up to delta machines from on to off.

        Succeeds even when fewer than delta machines are on.

        Raises:
            UnknownNodeGroupError: For a foreign group id
            ConflictError: If a machine changed concurrently
        """
        self._check_group(group_id)
        if delta <= 0:
            return

        powered_off = 0
        for record in self.store.list():
            if powered_off >= delta:
                break
            if record.spec.power_state is PowerState.ON:
                self._set_power_state(record, PowerState.OFF)
                powered_off += 1

        if powered_off < delta:
            logger.info(f"Decrease by {delta} switched off only {powered_off} machines")

    def node_group_delete_nodes(self, group_id: str, node_names: Iterable[str]) -> None:
        """Switch the named machines off.

        Every name is checked before any machine is touched. Repeated names
        are switched off once.

        Raises:
            UnknownNodeGroupError: For a foreign group id
            NodeNotFoundError: If any named machine does not exist
            ConflictError: If a machine changed concurrently
        """
        self._check_group(group_id)

        records = []
        for name in dict.fromkeys(node_names):
            record = self.store.get(name)
            if record is None:
                raise NodeNotFoundError(f"Failed to get server {name}: not found")
            records.append(record)

        for record in records:
            self._set_power_state(record, PowerState.OFF)

    def refresh(self) -> None:
        """No-op; nothing is cached."""

    def cleanup(self) -> None:
        """No-op; machines stay in their current state."""

    def gpu_label(self) -> str:
        return GPU_LABEL

    def available_gpu_types(self) -> Dict[str, int]:
        """Count machines per gpu-type label value."""
        counts: Dict[str, int] = {}
        for record in self.store.list():
            gpu_type = record.labels.get(GPU_TYPE_LABEL)
            if gpu_type:
                counts[gpu_type] = counts.get(gpu_type, 0) + 1
        return counts

"""Fleet provider: pool-scale operations and the RPC server exposing them."""

from metalscale.provider.adapter import (
    DEFAULT_NODE_GROUP_ID,
    FleetProvider,
    InsufficientCapacityError,
    Instance,
    InstanceState,
    InvalidRequestError,
    NodeGroup,
    NodeNotFoundError,
    ProviderError,
    UnknownNodeGroupError,
)
from metalscale.provider.server import create_app, create_server


__all__ = [
    "DEFAULT_NODE_GROUP_ID",
    "FleetProvider",
    "Instance",
    "InstanceState",
    "NodeGroup",
    "ProviderError",
    "UnknownNodeGroupError",
    "NodeNotFoundError",
    "InvalidRequestError",
    "InsufficientCapacityError",
    "create_app",
    "create_server",
]

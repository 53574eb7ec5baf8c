"""
Pydantic models for the fleet provider RPC surface
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class NodeGroupModel(BaseModel):
    """A node group."""
    id: str
    min_size: int = 0
    max_size: int = 0


class NodeRef(BaseModel):
    """Reference to a node by name."""
    name: str


class NodeGroupRequest(BaseModel):
    """Request addressing a node group."""
    id: str = Field(..., description="Node group id")


class NodeGroupResizeRequest(BaseModel):
    """Request to grow or shrink a node group."""
    id: str = Field(..., description="Node group id")
    delta: int = Field(..., description="Number of machines to add or remove")


class NodeGroupDeleteNodesRequest(BaseModel):
    """Request to remove specific nodes from a node group."""
    id: str = Field(..., description="Node group id")
    nodes: List[NodeRef] = Field(default_factory=list)


class NodeGroupForNodeRequest(BaseModel):
    """Request for the node group owning a node."""
    node: Optional[NodeRef] = None


class NodeGroupsResponse(BaseModel):
    node_groups: List[NodeGroupModel]


class InstanceStatusModel(BaseModel):
    instance_state: str


class InstanceModel(BaseModel):
    id: str
    status: InstanceStatusModel


class NodeGroupNodesResponse(BaseModel):
    instances: List[InstanceModel]


class NodeGroupForNodeResponse(BaseModel):
    """Empty node_group means the node is not managed here."""
    node_group: Optional[NodeGroupModel] = None


class NodeGroupTargetSizeResponse(BaseModel):
    target_size: int


class EmptyResponse(BaseModel):
    pass


class GPULabelResponse(BaseModel):
    label: str


class AvailableGPUTypesResponse(BaseModel):
    gpu_types: Dict[str, int] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Error body; retryable errors may be reissued unchanged."""
    detail: str
    retryable: bool = False

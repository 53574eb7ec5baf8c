#!/usr/bin/env python3
"""Fleet provider RPC server.

Serves the pool-scale operations over HTTP/JSON with FastAPI. Every method is
a POST under /cloudprovider/v1 named after the scaling client's operation.

Endpoints:
    POST /cloudprovider/v1/NodeGroups
    POST /cloudprovider/v1/NodeGroupNodes
    POST /cloudprovider/v1/NodeGroupForNode
    POST /cloudprovider/v1/NodeGroupTargetSize
    POST /cloudprovider/v1/NodeGroupIncreaseSize
    POST /cloudprovider/v1/NodeGroupDecreaseTargetSize
    POST /cloudprovider/v1/NodeGroupDeleteNodes
    POST /cloudprovider/v1/Refresh
    POST /cloudprovider/v1/Cleanup
    POST /cloudprovider/v1/GPULabel
    POST /cloudprovider/v1/GetAvailableGPUTypes
"""

import logging
import ssl
from typing import Any, Dict

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from metalscale.config.config import ServerConfig
from metalscale.persistence.store import ConflictError, RecordNotFoundError, StoreError
from metalscale.provider.adapter import (
    FleetProvider,
    InsufficientCapacityError,
    InvalidRequestError,
    NodeGroup,
    NodeNotFoundError,
    UnknownNodeGroupError,
)
from metalscale.provider.schemas import (
    AvailableGPUTypesResponse,
    EmptyResponse,
    ErrorResponse,
    GPULabelResponse,
    InstanceModel,
    InstanceStatusModel,
    NodeGroupDeleteNodesRequest,
    NodeGroupForNodeRequest,
    NodeGroupForNodeResponse,
    NodeGroupModel,
    NodeGroupNodesResponse,
    NodeGroupRequest,
    NodeGroupResizeRequest,
    NodeGroupsResponse,
    NodeGroupTargetSizeResponse,
)


logger = logging.getLogger(__name__)

API_PREFIX = "/cloudprovider/v1"

# Status code and retryability per error class; lookup follows the class MRO
ERROR_STATUS = {
    UnknownNodeGroupError: (404, False),
    NodeNotFoundError: (404, False),
    InvalidRequestError: (400, False),
    InsufficientCapacityError: (409, False),
    ConflictError: (409, True),
    RecordNotFoundError: (404, False),
    StoreError: (500, False),
}


def _group_model(group: NodeGroup) -> NodeGroupModel:
    return NodeGroupModel(id=group.id, min_size=group.min_size, max_size=group.max_size)


def _error_handler(status_code: int, retryable: bool):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.warning(f"{request.url.path} failed ({status_code}): {exc}")
        body = ErrorResponse(detail=str(exc), retryable=retryable)
        return JSONResponse(status_code=status_code, content=body.model_dump())

    return handler


def create_router(provider: FleetProvider) -> APIRouter:
    """Build the RPC routes bound to a provider."""
    router = APIRouter(prefix=API_PREFIX, tags=["Fleet Provider"])

    @router.post("/NodeGroups", response_model=NodeGroupsResponse)
    def node_groups() -> NodeGroupsResponse:
        return NodeGroupsResponse(node_groups=[_group_model(g) for g in provider.node_groups()])

    @router.post("/NodeGroupNodes", response_model=NodeGroupNodesResponse)
    def node_group_nodes(req: NodeGroupRequest) -> NodeGroupNodesResponse:
        instances = provider.node_group_nodes(req.id)
        return NodeGroupNodesResponse(
            instances=[
                InstanceModel(
                    id=instance.id,
                    status=InstanceStatusModel(instance_state=instance.state.value),
                )
                for instance in instances
            ]
        )

    @router.post("/NodeGroupForNode", response_model=NodeGroupForNodeResponse)
    def node_group_for_node(req: NodeGroupForNodeRequest) -> NodeGroupForNodeResponse:
        group = provider.node_group_for_node(req.node.name if req.node else "")
        if group is None:
            return NodeGroupForNodeResponse()
        return NodeGroupForNodeResponse(node_group=_group_model(group))

    @router.post("/NodeGroupTargetSize", response_model=NodeGroupTargetSizeResponse)
    def node_group_target_size(req: NodeGroupRequest) -> NodeGroupTargetSizeResponse:
        return NodeGroupTargetSizeResponse(target_size=provider.node_group_target_size(req.id))

    @router.post("/NodeGroupIncreaseSize", response_model=EmptyResponse)
    def node_group_increase_size(req: NodeGroupResizeRequest) -> EmptyResponse:
        provider.node_group_increase_size(req.id, req.delta)
        return EmptyResponse()

    @router.post("/NodeGroupDecreaseTargetSize", response_model=EmptyResponse)
    def node_group_decrease_target_size(req: NodeGroupResizeRequest) -> EmptyResponse:
        provider.node_group_decrease_target_size(req.id, req.delta)
        return EmptyResponse()

    @router.post("/NodeGroupDeleteNodes", response_model=EmptyResponse)
    def node_group_delete_nodes(req: NodeGroupDeleteNodesRequest) -> EmptyResponse:
        provider.node_group_delete_nodes(req.id, [node.name for node in req.nodes])
        return EmptyResponse()

    @router.post("/Refresh", response_model=EmptyResponse)
    def refresh() -> EmptyResponse:
        provider.refresh()
        return EmptyResponse()

    @router.post("/Cleanup", response_model=EmptyResponse)
    def cleanup() -> EmptyResponse:
        provider.cleanup()
        return EmptyResponse()

    @router.post("/GPULabel", response_model=GPULabelResponse)
    def gpu_label() -> GPULabelResponse:
        return GPULabelResponse(label=provider.gpu_label())

    @router.post("/GetAvailableGPUTypes", response_model=AvailableGPUTypesResponse)
    def available_gpu_types() -> AvailableGPUTypesResponse:
        return AvailableGPUTypesResponse(gpu_types=provider.available_gpu_types())

    return router


def create_app(provider: FleetProvider) -> FastAPI:
    """Create the FastAPI application serving a provider."""
    app = FastAPI(title="metalscale fleet provider")
    app.include_router(create_router(provider))
    for exc_class, (status_code, retryable) in ERROR_STATUS.items():
        app.add_exception_handler(exc_class, _error_handler(status_code, retryable))
    return app


def uvicorn_options(server_config: ServerConfig) -> Dict[str, Any]:
    """Translate server configuration into uvicorn.Config keyword arguments.

    With TLS enabled, clients must present a certificate signed by the CA.
    """
    options: Dict[str, Any] = {
        "host": server_config.host,
        "port": server_config.port,
        "timeout_graceful_shutdown": server_config.graceful_shutdown_timeout,
        "log_config": None,
    }
    if server_config.tls.enabled:
        options.update(
            ssl_certfile=server_config.tls.cert_file,
            ssl_keyfile=server_config.tls.key_file,
            ssl_ca_certs=server_config.tls.ca_file,
            ssl_cert_reqs=ssl.CERT_REQUIRED,
        )
    return options


def create_server(app: FastAPI, server_config: ServerConfig) -> uvicorn.Server:
    """Create the uvicorn server.

    uvicorn handles SIGINT/SIGTERM by refusing new connections, waiting for
    in-flight requests up to the graceful shutdown timeout, then closing.
    """
    config = uvicorn.Config(app, **uvicorn_options(server_config))
    return uvicorn.Server(config)

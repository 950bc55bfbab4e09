"""
Dependency Injection

Request-scoped accessors for the pipeline state built in the application
lifespan. Handlers receive the state through FastAPI's Depends, so tests can
build an app around their own settings and HTTP transport.
"""
import logging
from typing import Annotated

from fastapi import Depends, Request

from iptv_gateway.services.pipeline import PipelineState
from iptv_gateway.utils.network import get_client_ip


logger = logging.getLogger(__name__)


def get_pipeline(request: Request) -> PipelineState:
    """
    Get the pipeline state of the running application.

    Raises:
        RuntimeError: If called before the lifespan has built the state
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise RuntimeError("Pipeline state not initialized")
    return pipeline


def get_request_client_ip(request: Request) -> str | None:
    """Viewer IP from proxy headers, falling back to the socket peer."""
    peer = request.client.host if request.client else None
    client_ip = get_client_ip(request.headers, peer)
    logger.debug("Client IP for %s: %s", request.url.path, client_ip or "(unknown)")
    return client_ip


PipelineDep = Annotated[PipelineState, Depends(get_pipeline)]
ClientIpDep = Annotated[str | None, Depends(get_request_client_ip)]

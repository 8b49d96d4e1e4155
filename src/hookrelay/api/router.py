"""FastAPI router for the hookrelay management API."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.security import HTTPAuthorizationCredentials

from hookrelay import __version__
from hookrelay.exceptions import NotFoundError
from hookrelay.logging import get_logger
from hookrelay.models import DeliveryState
from hookrelay.service import RelayService

from .auth import check_token, security
from .schemas import (
    BroadcastRequest,
    BroadcastResponse,
    DeliveryListResponse,
    DeliveryResponse,
    EndpointCreatedResponse,
    EndpointCreateRequest,
    EndpointListResponse,
    EndpointResponse,
    EndpointUpdateRequest,
    HealthResponse,
    RedeliverResponse,
    SecretResponse,
)

logger = get_logger(__name__)

router = APIRouter()

# Service instance (set by app lifespan)
_service: RelayService | None = None


def set_service(service: RelayService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> RelayService:
    """Dependency to get the RelayService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[RelayService, Depends(get_service)]


async def require_token(
    service: ServiceDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> None:
    """Dependency enforcing the configured API token."""
    check_token(service.settings.api_token, credentials)


# Everything except /health requires the token
protected = APIRouter(dependencies=[Depends(require_token)])


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health."""
    if _service is None:
        return HealthResponse(status="unhealthy", version=__version__, storage_connected=False)
    return HealthResponse(
        status="healthy",
        version=__version__,
        storage_connected=True,
        worker_running=_service.worker.running,
    )


@protected.post(
    "/endpoints",
    response_model=EndpointCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["endpoints"],
)
async def create_endpoint(
    request: EndpointCreateRequest,
    service: ServiceDep,
) -> EndpointCreatedResponse:
    """Register an endpoint.

    The response carries the endpoint secret; it is not returned again
    except by secret rotation.
    """
    endpoint = await service.registry.register(
        owner_id=request.owner_id,
        url=request.url,
        event_filter=request.event_filter,
        description=request.description,
    )
    return EndpointCreatedResponse.from_endpoint(endpoint)


@protected.get("/endpoints", response_model=EndpointListResponse, tags=["endpoints"])
async def list_endpoints(
    service: ServiceDep,
    owner_id: Annotated[str, Query(min_length=1)],
) -> EndpointListResponse:
    """List an owner's endpoints."""
    endpoints = await service.registry.list(owner_id)
    return EndpointListResponse(
        endpoints=[EndpointResponse.from_endpoint(e) for e in endpoints],
        count=len(endpoints),
    )


@protected.get("/endpoints/{endpoint_id}", response_model=EndpointResponse, tags=["endpoints"])
async def get_endpoint(endpoint_id: str, service: ServiceDep) -> EndpointResponse:
    """Get an endpoint by ID."""
    return EndpointResponse.from_endpoint(await service.registry.get(endpoint_id))


@protected.patch("/endpoints/{endpoint_id}", response_model=EndpointResponse, tags=["endpoints"])
async def update_endpoint(
    endpoint_id: str,
    request: EndpointUpdateRequest,
    service: ServiceDep,
) -> EndpointResponse:
    """Update an endpoint's URL, event filter, active flag or description."""
    endpoint = await service.registry.update(
        endpoint_id,
        url=request.url,
        event_filter=request.event_filter,
        active=request.active,
        description=request.description,
    )
    return EndpointResponse.from_endpoint(endpoint)


@protected.delete(
    "/endpoints/{endpoint_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["endpoints"],
)
async def delete_endpoint(endpoint_id: str, service: ServiceDep) -> Response:
    """Delete an endpoint and its delivery history."""
    await service.registry.delete(endpoint_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@protected.post(
    "/endpoints/{endpoint_id}/rotate-secret",
    response_model=SecretResponse,
    tags=["endpoints"],
)
async def rotate_secret(endpoint_id: str, service: ServiceDep) -> SecretResponse:
    """Rotate an endpoint's secret. In-flight deliveries keep their old secret."""
    secret = await service.registry.rotate_secret(endpoint_id)
    return SecretResponse(endpoint_id=endpoint_id, secret=secret)


@protected.post(
    "/endpoints/{endpoint_id}/deactivate",
    response_model=EndpointResponse,
    tags=["endpoints"],
)
async def deactivate_endpoint(endpoint_id: str, service: ServiceDep) -> EndpointResponse:
    """Stop deliveries to an endpoint. Pending deliveries fail on their next claim."""
    return EndpointResponse.from_endpoint(await service.registry.deactivate(endpoint_id))


@protected.get(
    "/endpoints/{endpoint_id}/deliveries",
    response_model=DeliveryListResponse,
    tags=["deliveries"],
)
async def list_endpoint_deliveries(
    endpoint_id: str,
    service: ServiceDep,
    state: DeliveryState | None = None,
    since: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> DeliveryListResponse:
    """Delivery history of an endpoint, newest first."""
    await service.registry.get(endpoint_id)
    deliveries = await service.storage.list_deliveries(
        endpoint_id, state=state, since=since, limit=limit
    )
    return DeliveryListResponse(
        deliveries=[DeliveryResponse.from_delivery(d) for d in deliveries],
        count=len(deliveries),
    )


@protected.get("/deliveries/{delivery_id}", response_model=DeliveryResponse, tags=["deliveries"])
async def get_delivery(delivery_id: str, service: ServiceDep) -> DeliveryResponse:
    """Get a delivery by ID."""
    delivery = await service.storage.get_delivery(delivery_id)
    if delivery is None:
        raise NotFoundError("delivery", delivery_id)
    return DeliveryResponse.from_delivery(delivery)


@protected.post(
    "/deliveries/{delivery_id}/redeliver",
    response_model=RedeliverResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["deliveries"],
)
async def redeliver(delivery_id: str, service: ServiceDep) -> RedeliverResponse:
    """Replay a delivered or failed delivery as a new delivery."""
    new_id = await service.redeliver(delivery_id)
    return RedeliverResponse(delivery_id=new_id, redelivery_of=delivery_id)


@protected.post(
    "/events",
    response_model=BroadcastResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["events"],
)
async def broadcast_event(request: BroadcastRequest, service: ServiceDep) -> BroadcastResponse:
    """Broadcast an event to every subscribed active endpoint."""
    delivery_ids = await service.broadcast(
        request.event_type,
        request.payload,
        owner_id=request.owner_id,
    )
    return BroadcastResponse(
        event_type=request.event_type,
        delivery_ids=delivery_ids,
        count=len(delivery_ids),
    )


router.include_router(protected)

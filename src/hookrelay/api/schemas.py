"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, JsonValue

from hookrelay.models import Delivery, DeliveryState, Endpoint


class EndpointCreateRequest(BaseModel):
    """Request body for registering an endpoint.

    Attributes:
        owner_id: Owning account/tenant.
        url: http(s) URL receiving events.
        event_filter: Subscribed event types (empty = all).
        description: Optional description.
    """

    model_config = ConfigDict(extra="forbid")

    owner_id: str = Field(min_length=1, description="Owner of the endpoint")
    url: str = Field(min_length=1, description="http(s) URL receiving events")
    event_filter: list[str] = Field(default_factory=list, description="Subscribed event types")
    description: str | None = Field(default=None, max_length=500)


class EndpointUpdateRequest(BaseModel):
    """Request body for updating an endpoint. Omitted fields are unchanged."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = Field(default=None, min_length=1)
    event_filter: list[str] | None = Field(default=None)
    active: bool | None = Field(default=None)
    description: str | None = Field(default=None, max_length=500)


class EndpointResponse(BaseModel):
    """An endpoint without its secret."""

    model_config = ConfigDict(extra="forbid")

    id: str
    owner_id: str
    url: str
    event_filter: list[str]
    active: bool
    description: str | None
    created_at: datetime
    updated_at: datetime
    secret_rotated_at: datetime | None
    consecutive_failures: int

    @classmethod
    def from_endpoint(cls, endpoint: Endpoint) -> EndpointResponse:
        return cls.model_validate(endpoint.model_dump(exclude={"secret"}))


class EndpointCreatedResponse(EndpointResponse):
    """Registration response: the only place the secret is returned besides rotation."""

    secret: str

    @classmethod
    def from_endpoint(cls, endpoint: Endpoint) -> EndpointCreatedResponse:
        return cls.model_validate(endpoint.model_dump())


class EndpointListResponse(BaseModel):
    """Endpoints of one owner."""

    model_config = ConfigDict(extra="forbid")

    endpoints: list[EndpointResponse]
    count: int


class SecretResponse(BaseModel):
    """Response for secret rotation."""

    model_config = ConfigDict(extra="forbid")

    endpoint_id: str
    secret: str


class DeliveryResponse(BaseModel):
    """A delivery record. The signing secret is never exposed."""

    model_config = ConfigDict(extra="forbid")

    id: str
    endpoint_id: str
    owner_id: str
    event_id: str
    event_type: str
    payload: JsonValue = None
    attempts: int
    max_attempts: int
    state: DeliveryState
    response_code: int | None
    response_body: str | None
    error: str | None
    created_at: datetime
    last_attempt_at: datetime | None
    delivered_at: datetime | None
    next_retry_at: datetime
    redelivery_of: str | None

    @classmethod
    def from_delivery(cls, delivery: Delivery) -> DeliveryResponse:
        return cls.model_validate(
            delivery.model_dump(exclude={"secret_used", "claim_token", "claimed_until"})
        )


class DeliveryListResponse(BaseModel):
    """Deliveries of one endpoint, newest first."""

    model_config = ConfigDict(extra="forbid")

    deliveries: list[DeliveryResponse]
    count: int


class RedeliverResponse(BaseModel):
    """Response for a manual redelivery."""

    model_config = ConfigDict(extra="forbid")

    delivery_id: str
    redelivery_of: str


class BroadcastRequest(BaseModel):
    """Request body for broadcasting an event.

    Attributes:
        event_type: Event type, e.g. "order.created".
        payload: Event data (any JSON value).
        owner_id: Restrict delivery to one owner's endpoints.
    """

    model_config = ConfigDict(extra="forbid")

    event_type: str = Field(min_length=1, description="Event type")
    payload: JsonValue = Field(default=None, description="Event data")
    owner_id: str | None = Field(default=None, description="Restrict to one owner")


class BroadcastResponse(BaseModel):
    """Response for a broadcast."""

    model_config = ConfigDict(extra="forbid")

    event_type: str
    delivery_ids: list[str]
    count: int


class HealthResponse(BaseModel):
    """Response for health check endpoint.

    Attributes:
        status: Service status (healthy, unhealthy).
        version: API version.
        storage_connected: Whether storage is connected.
        worker_running: Whether background delivery is running.
    """

    model_config = ConfigDict(extra="forbid")

    status: Literal["healthy", "unhealthy"]
    version: str
    storage_connected: bool
    worker_running: bool = False

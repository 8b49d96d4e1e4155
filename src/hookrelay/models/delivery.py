"""Delivery models: one event sent to one endpoint, with its retry history.

Deliveries are created in ``pending`` state by the broadcaster and mutated
only by the dispatcher, through the store's claim / record operations.
"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, JsonValue, model_validator

from .base import generate_id

# Delivery state machine: pending -> delivered | failed (both terminal)
DeliveryState = Literal["pending", "delivered", "failed"]

TERMINAL_STATES: frozenset[str] = frozenset({"delivered", "failed"})


class Delivery(BaseModel):
    """Record of an event's delivery to a single endpoint.

    The delivery ID doubles as the idempotency key receivers use to
    de-duplicate at-least-once deliveries.

    Attributes:
        id: Unique identifier for this delivery.
        endpoint_id: Endpoint this delivery targets.
        owner_id: Owner of the endpoint.
        event_id: Broadcast this delivery belongs to.
        event_type: Event type, e.g. "order.created".
        payload: Event data (any JSON value).
        secret_used: Endpoint secret snapshotted at creation.
        attempts: HTTP attempts made so far.
        max_attempts: Attempt cap snapshotted from the retry policy.
        state: pending, delivered or failed.
        response_code: Last HTTP status received.
        response_body: Last response body (truncated).
        error: Last failure reason.
        created_at: When the delivery was created.
        last_attempt_at: When the last HTTP attempt finished.
        delivered_at: When a 2xx was received.
        next_retry_at: Earliest time the delivery may be claimed.
        claim_token: Token of the worker currently holding the claim.
        claimed_until: Claim lease expiry.
        redelivery_of: Original delivery ID when manually replayed.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    endpoint_id: str = Field(description="Target endpoint")
    owner_id: str = Field(description="Owner of the endpoint")
    event_id: str = Field(default_factory=lambda: generate_id("evt"))
    event_type: str = Field(min_length=1, description="Event type")
    payload: JsonValue = Field(default=None, description="Event data")
    secret_used: str = Field(repr=False, description="Secret snapshot used for signing")
    attempts: int = Field(default=0, ge=0, description="HTTP attempts made")
    max_attempts: int = Field(default=5, ge=1, description="Attempt cap")
    state: DeliveryState = Field(default="pending", description="Delivery state")
    response_code: int | None = Field(default=None, description="Last HTTP status")
    response_body: str | None = Field(default=None, description="Last response body snippet")
    error: str | None = Field(default=None, description="Last failure reason")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the delivery was created",
    )
    last_attempt_at: datetime | None = Field(default=None)
    delivered_at: datetime | None = Field(default=None)
    next_retry_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Earliest time the delivery may be claimed",
    )
    claim_token: str | None = Field(default=None, repr=False)
    claimed_until: datetime | None = Field(default=None)
    redelivery_of: str | None = Field(default=None)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Delivery":
        if self.attempts > self.max_attempts:
            raise ValueError(
                f"attempts ({self.attempts}) cannot exceed max_attempts ({self.max_attempts})"
            )
        if self.state == "delivered" and self.delivered_at is None:
            raise ValueError("delivered deliveries must have delivered_at set")
        return self

    @property
    def is_terminal(self) -> bool:
        """Whether no further attempts will be made."""
        return self.state in TERMINAL_STATES

    @property
    def attempts_remaining(self) -> int:
        """HTTP attempts left before the delivery is exhausted."""
        return self.max_attempts - self.attempts


class DeliveryEnvelope(BaseModel):
    """JSON body POSTed to endpoints.

    Attributes:
        id: Delivery ID (idempotency key).
        event: Event type.
        event_id: Broadcast ID shared by all deliveries of one event.
        created_at: When the event was broadcast.
        data: Event payload.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    event: str
    event_id: str
    created_at: datetime
    data: JsonValue = None

    @classmethod
    def from_delivery(cls, delivery: Delivery) -> "DeliveryEnvelope":
        """Build the envelope for a delivery."""
        return cls(
            id=delivery.id,
            event=delivery.event_type,
            event_id=delivery.event_id,
            created_at=delivery.created_at,
            data=delivery.payload,
        )


__all__ = [
    "TERMINAL_STATES",
    "Delivery",
    "DeliveryEnvelope",
    "DeliveryState",
]

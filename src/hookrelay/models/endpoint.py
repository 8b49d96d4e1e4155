"""Endpoint model: an externally registered webhook destination."""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import generate_id


class Endpoint(BaseModel):
    """A subscriber endpoint registered by an owner.

    Attributes:
        id: Unique identifier for this endpoint.
        owner_id: Owning account/tenant (opaque to hookrelay).
        url: http(s) URL receiving POSTed events.
        secret: Shared secret for HMAC-SHA256 signatures.
        event_filter: Subscribed event types; empty means all events.
        active: Whether new deliveries are created and retries continue.
        description: Optional human-readable description.
        created_at: When the endpoint was registered.
        updated_at: When the endpoint was last modified.
        secret_rotated_at: When the secret was last rotated.
        consecutive_failures: Terminal delivery failures since the last success.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    owner_id: str = Field(min_length=1, description="Owner of this endpoint")
    url: str = Field(description="http(s) endpoint receiving events")
    secret: str = Field(repr=False, description="Shared secret for HMAC-SHA256 signatures")
    event_filter: list[str] = Field(
        default_factory=list,
        description="Subscribed event types (empty = all)",
    )
    active: bool = Field(default=True, description="Whether endpoint receives deliveries")
    description: str | None = Field(default=None, description="Human-readable description")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the endpoint was registered",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the endpoint was last modified",
    )
    secret_rotated_at: datetime | None = Field(
        default=None,
        description="When the secret was last rotated",
    )
    consecutive_failures: int = Field(
        default=0,
        ge=0,
        description="Terminal delivery failures since the last success",
    )

    @field_validator("event_filter")
    @classmethod
    def _dedupe_filter(cls, value: list[str]) -> list[str]:
        return sorted(set(value))

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this endpoint should receive the given event type."""
        if not self.active:
            return False
        return not self.event_filter or event_type in self.event_filter


__all__ = ["Endpoint"]

"""Endpoint registry: registration and lifecycle of subscriber endpoints."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from hookrelay.exceptions import NotFoundError, ValidationError
from hookrelay.logging import get_logger
from hookrelay.models import Endpoint

from .signing import generate_secret
from .urls import URLValidator

if TYPE_CHECKING:
    from hookrelay.storage import RelayStorage

logger = get_logger(__name__)

EVENT_TYPE_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.:\-]{0,254}$")
MAX_FILTER_SIZE = 100


def validate_event_type(event_type: str, field: str = "event_type") -> str:
    """Validate a single event type name.

    Raises:
        ValidationError: If the name is empty or contains unsupported characters.
    """
    if not isinstance(event_type, str) or not EVENT_TYPE_PATTERN.match(event_type):
        raise ValidationError(
            field,
            f"invalid event type {event_type!r} "
            "(letters, digits, '_', '.', ':', '-'; at most 255 chars)",
        )
    return event_type


def validate_event_filter(event_filter: Iterable[str] | None) -> list[str]:
    """Validate and normalise an event filter (sorted, de-duplicated)."""
    if event_filter is None:
        return []
    if isinstance(event_filter, str):
        raise ValidationError("event_filter", "must be a list of event types, not a string")
    types = sorted({validate_event_type(e, "event_filter") for e in event_filter})
    if len(types) > MAX_FILTER_SIZE:
        raise ValidationError("event_filter", f"at most {MAX_FILTER_SIZE} event types")
    return types


class EndpointRegistry:
    """Persists subscriber endpoints and resolves them for events.

    Example:
        ```python
        registry = EndpointRegistry(storage, URLValidator())
        endpoint = await registry.register(
            owner_id="acct_42",
            url="https://hooks.example.com/orders",
            event_filter=["order.created"],
        )
        ```
    """

    def __init__(self, storage: RelayStorage, url_validator: URLValidator | None = None) -> None:
        self._storage = storage
        self._urls = url_validator or URLValidator()

    async def register(
        self,
        owner_id: str,
        url: str,
        event_filter: Iterable[str] | None = None,
        description: str | None = None,
    ) -> Endpoint:
        """Register a new endpoint with a freshly generated secret.

        Args:
            owner_id: Owner of the endpoint.
            url: http(s) URL receiving events.
            event_filter: Subscribed event types; empty or None means all.
            description: Optional description.

        Returns:
            The stored Endpoint (including its secret).

        Raises:
            ValidationError: On an invalid owner, URL or event filter.
        """
        if not owner_id:
            raise ValidationError("owner_id", "must not be empty")

        endpoint = Endpoint(
            owner_id=owner_id,
            url=await self._urls.validate(url),
            secret=generate_secret(),
            event_filter=validate_event_filter(event_filter),
            description=description,
        )
        await self._storage.store_endpoint(endpoint)

        logger.info(
            "Endpoint registered",
            endpoint_id=endpoint.id,
            owner_id=owner_id,
            events=endpoint.event_filter or "*",
        )
        return endpoint

    async def get(self, endpoint_id: str) -> Endpoint:
        """Get an endpoint by ID.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """
        endpoint = await self._storage.get_endpoint(endpoint_id)
        if endpoint is None:
            raise NotFoundError("endpoint", endpoint_id)
        return endpoint

    async def update(
        self,
        endpoint_id: str,
        url: str | None = None,
        event_filter: Iterable[str] | None = None,
        active: bool | None = None,
        description: str | None = None,
    ) -> Endpoint:
        """Update an endpoint's URL, filter, active flag or description.

        Arguments left as None are unchanged. Pass an empty list as
        ``event_filter`` to subscribe to all events.

        Raises:
            NotFoundError: If the endpoint does not exist.
            ValidationError: On an invalid URL or event filter.
        """
        updates: dict[str, Any] = {}
        if url is not None:
            updates["url"] = await self._urls.validate(url)
        if event_filter is not None:
            updates["event_filter"] = validate_event_filter(event_filter)
        if active is not None:
            updates["active"] = active
        if description is not None:
            updates["description"] = description

        if not updates:
            return await self.get(endpoint_id)

        endpoint = await self._storage.update_endpoint(endpoint_id, **updates)
        if endpoint is None:
            raise NotFoundError("endpoint", endpoint_id)

        logger.info("Endpoint updated", endpoint_id=endpoint_id, fields=sorted(updates))
        return endpoint

    async def rotate_secret(self, endpoint_id: str) -> str:
        """Replace an endpoint's secret.

        Deliveries created before rotation keep signing with the secret
        recorded on them; only new deliveries use the new one.

        Returns:
            The new secret.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """
        secret = generate_secret()
        endpoint = await self._storage.update_endpoint(
            endpoint_id,
            secret=secret,
            secret_rotated_at=datetime.now(UTC),
        )
        if endpoint is None:
            raise NotFoundError("endpoint", endpoint_id)

        logger.info("Endpoint secret rotated", endpoint_id=endpoint_id)
        return secret

    async def deactivate(self, endpoint_id: str) -> Endpoint:
        """Stop deliveries to an endpoint.

        No new deliveries are created; pending ones fail on their next claim.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """
        return await self.update(endpoint_id, active=False)

    async def delete(self, endpoint_id: str) -> None:
        """Delete an endpoint together with its delivery history.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """
        if not await self._storage.delete_endpoint(endpoint_id):
            raise NotFoundError("endpoint", endpoint_id)
        logger.info("Endpoint deleted", endpoint_id=endpoint_id)

    async def list(self, owner_id: str) -> list[Endpoint]:
        """List an owner's endpoints (active and inactive)."""
        return await self._storage.list_endpoints(owner_id=owner_id)

    async def find_active_for(self, event_type: str, owner_id: str | None = None) -> list[Endpoint]:
        """Endpoints that should receive an event.

        Matches ``active and (not event_filter or event_type in event_filter)``.

        Args:
            event_type: Event being broadcast.
            owner_id: Restrict to one owner's endpoints.
        """
        candidates = await self._storage.list_endpoints(owner_id=owner_id, active_only=True)
        return [endpoint for endpoint in candidates if endpoint.subscribes_to(event_type)]

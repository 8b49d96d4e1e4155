"""Event fan-out: one pending delivery per subscribed endpoint."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pydantic import JsonValue, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from hookrelay.config import RetryPolicy
from hookrelay.exceptions import NotFoundError, ValidationError
from hookrelay.logging import get_logger
from hookrelay.models import Delivery, generate_id

from .registry import validate_event_type

if TYPE_CHECKING:
    from hookrelay.storage import RelayStorage

    from .registry import EndpointRegistry

logger = get_logger(__name__)

_json_value = TypeAdapter(JsonValue)

# Called with the IDs of newly created deliveries
EnqueueCallback = Callable[[list[str]], None]


class EventBroadcaster:
    """Creates delivery records for an event and wakes the dispatch queue.

    Broadcasting is fan-out only: each endpoint's delivery record is created
    independently, so one failed insert does not block the others. Failed
    inserts are logged, not retried here; retries happen per delivery in
    the dispatcher.

    Example:
        ```python
        broadcaster = EventBroadcaster(storage, registry, on_enqueue=worker.notify)
        delivery_ids = await broadcaster.broadcast(
            "order.created",
            {"order_id": "ord_1", "total": 4200},
            owner_id="acct_42",
        )
        ```
    """

    def __init__(
        self,
        storage: RelayStorage,
        registry: EndpointRegistry,
        retry_policy: RetryPolicy | None = None,
        on_enqueue: EnqueueCallback | None = None,
    ) -> None:
        self._storage = storage
        self._registry = registry
        self._policy = retry_policy or RetryPolicy()
        self._on_enqueue = on_enqueue

    def set_enqueue_callback(self, callback: EnqueueCallback | None) -> None:
        """Set the hook notified after deliveries are created."""
        self._on_enqueue = callback

    async def broadcast(
        self,
        event_type: str,
        payload: Any,
        owner_id: str | None = None,
    ) -> list[str]:
        """Create one pending delivery per matching active endpoint.

        Args:
            event_type: Event type, e.g. "order.created".
            payload: JSON-serialisable event data.
            owner_id: Restrict fan-out to one owner's endpoints.

        Returns:
            IDs of the deliveries created.

        Raises:
            ValidationError: If the event type or payload is invalid.
        """
        validate_event_type(event_type)
        try:
            data = _json_value.validate_python(payload)
        except PydanticValidationError as e:
            raise ValidationError("payload", f"must be JSON-serialisable: {e}") from e

        endpoints = await self._registry.find_active_for(event_type, owner_id=owner_id)
        if not endpoints:
            logger.debug("No endpoints subscribed", event_type=event_type, owner_id=owner_id)
            return []

        event_id = generate_id("evt")
        delivery_ids: list[str] = []
        for endpoint in endpoints:
            delivery = Delivery(
                endpoint_id=endpoint.id,
                owner_id=endpoint.owner_id,
                event_id=event_id,
                event_type=event_type,
                payload=data,
                secret_used=endpoint.secret,
                max_attempts=self._policy.max_attempts,
            )
            try:
                await self._storage.create_delivery(delivery)
            except Exception:
                logger.exception(
                    "Failed to create delivery",
                    event_id=event_id,
                    event_type=event_type,
                    endpoint_id=endpoint.id,
                )
                continue
            delivery_ids.append(delivery.id)

        skipped = len(endpoints) - len(delivery_ids)
        logger.info(
            "Event broadcast",
            event_id=event_id,
            event_type=event_type,
            deliveries=len(delivery_ids),
            failed=skipped,
        )

        self._notify(delivery_ids)
        return delivery_ids

    async def redeliver(self, delivery_id: str) -> str:
        """Replay a finished delivery as a new pending delivery.

        The new record keeps the original event and payload, snapshots the
        endpoint's current secret, and links back through ``redelivery_of``.
        Terminal deliveries are never resurrected in place.

        Returns:
            ID of the new delivery.

        Raises:
            NotFoundError: If the delivery or its endpoint no longer exists.
            ValidationError: If the delivery is still pending or the endpoint is inactive.
        """
        original = await self._storage.get_delivery(delivery_id)
        if original is None:
            raise NotFoundError("delivery", delivery_id)
        if not original.is_terminal:
            raise ValidationError("delivery_id", "delivery is still pending")

        endpoint = await self._registry.get(original.endpoint_id)
        if not endpoint.active:
            raise ValidationError("delivery_id", "endpoint is deactivated")

        replay = Delivery(
            endpoint_id=original.endpoint_id,
            owner_id=original.owner_id,
            event_id=original.event_id,
            event_type=original.event_type,
            payload=original.payload,
            secret_used=endpoint.secret,
            max_attempts=self._policy.max_attempts,
            redelivery_of=original.id,
        )
        await self._storage.create_delivery(replay)

        logger.info("Delivery replayed", delivery_id=replay.id, redelivery_of=original.id)
        self._notify([replay.id])
        return replay.id

    def _notify(self, delivery_ids: list[str]) -> None:
        if not delivery_ids or self._on_enqueue is None:
            return
        try:
            self._on_enqueue(delivery_ids)
        except Exception:
            # Polling picks the deliveries up regardless
            logger.exception("Enqueue notification failed", deliveries=len(delivery_ids))

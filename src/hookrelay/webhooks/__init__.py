"""Webhook registration, fan-out and delivery.

Example:
    ```python
    registry = EndpointRegistry(storage)
    endpoint = await registry.register("acct_42", "https://hooks.example.com/in")

    broadcaster = EventBroadcaster(storage, registry)
    await broadcaster.broadcast("order.created", {"order_id": "ord_1"})

    async with create_http_client(settings) as client:
        dispatcher = DeliveryDispatcher.from_settings(storage, client, settings)
        await dispatcher.dispatch_due()
    ```
"""

from .backoff import base_delay, compute_backoff, next_retry_time
from .broadcaster import EventBroadcaster
from .dispatcher import DeliveryDispatcher, create_http_client, parse_retry_after
from .registry import EndpointRegistry, validate_event_filter, validate_event_type
from .signing import (
    ATTEMPT_HEADER,
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    generate_secret,
    sign,
    signature_headers,
    verify,
    verify_request,
)
from .urls import URLValidator, is_public_address, resolve_host
from .worker import DeliveryWorker

__all__ = [
    # Registry
    "EndpointRegistry",
    "validate_event_filter",
    "validate_event_type",
    # URLs
    "URLValidator",
    "is_public_address",
    "resolve_host",
    # Signing
    "ATTEMPT_HEADER",
    "DELIVERY_ID_HEADER",
    "EVENT_HEADER",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "generate_secret",
    "sign",
    "signature_headers",
    "verify",
    "verify_request",
    # Delivery
    "EventBroadcaster",
    "DeliveryDispatcher",
    "DeliveryWorker",
    "create_http_client",
    "parse_retry_after",
    # Backoff
    "base_delay",
    "compute_backoff",
    "next_retry_time",
]

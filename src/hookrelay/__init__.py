"""hookrelay: reliable outbound webhooks.

Registers subscriber endpoints, fans application events out to them as
signed HTTP POSTs, and retries failed deliveries with exponential backoff
until they succeed or exhaust their attempts.

Quick Start:
    from hookrelay.service import RelayService

    async with RelayService.create() as relay:
        # Register a subscriber
        endpoint = await relay.registry.register(
            owner_id="acct_42",
            url="https://hooks.example.com/orders",
            event_filter=["order.created"],
        )

        # Deliver in the background
        relay.start_worker()
        await relay.broadcast("order.created", {"order_id": "ord_1"})

Receivers verify each request with ``hookrelay.webhooks.verify_request``
and de-duplicate on the ``X-Hookrelay-Delivery-Id`` header.
"""

__version__ = "0.1.0"

# Configuration
from .config import RetryPolicy, Settings, settings

# Exceptions
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    DeliveryError,
    ExhaustedRetriesError,
    InvalidURLError,
    NotFoundError,
    PermanentDeliveryError,
    RelayError,
    StorageError,
    TransientDeliveryError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    logger,
    unbind_context,
)

# Models
from .models import Delivery, DeliveryEnvelope, DeliveryState, Endpoint

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "RetryPolicy",
    "settings",
    # Exceptions
    "RelayError",
    "ValidationError",
    "InvalidURLError",
    "NotFoundError",
    "StorageError",
    "ConfigurationError",
    "AuthenticationError",
    "DeliveryError",
    "TransientDeliveryError",
    "PermanentDeliveryError",
    "ExhaustedRetriesError",
    # Logging
    "configure_logging",
    "get_logger",
    "logger",
    "bind_context",
    "clear_context",
    "unbind_context",
    # Models
    "Endpoint",
    "Delivery",
    "DeliveryEnvelope",
    "DeliveryState",
]

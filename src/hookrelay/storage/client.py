"""Relational storage client for hookrelay.

This module provides the main RelayStorage class that combines
all storage operations through mixins.

Example:
    ```python
    from hookrelay.storage import RelayStorage

    async with RelayStorage("sqlite+aiosqlite:///./relay.db") as storage:
        await storage.store_endpoint(endpoint)
        batch = await storage.claim_pending(limit=50, lease_seconds=120)
    ```
"""

from __future__ import annotations

from typing import Any

from .base import StorageBase
from .deliveries import DeliveryMixin
from .endpoints import EndpointMixin


class RelayStorage(EndpointMixin, DeliveryMixin, StorageBase):
    """Async SQLAlchemy storage for endpoints and deliveries.

    This class combines functionality from multiple mixins:
    - EndpointMixin: store_endpoint, get_endpoint, list_endpoints, update_endpoint,
      delete_endpoint, record_endpoint_outcome
    - DeliveryMixin: create_delivery, get_delivery, list_deliveries, claim_pending,
      record_attempt, fail_delivery, release_claim, purge_deliveries

    Works against PostgreSQL (asyncpg) in production and SQLite (aiosqlite)
    for development and tests.
    """

    async def __aenter__(self) -> RelayStorage:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

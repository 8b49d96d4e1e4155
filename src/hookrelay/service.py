"""High-level hookrelay service wiring all components together."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import Settings
from .logging import get_logger
from .storage import RelayStorage
from .webhooks import (
    DeliveryDispatcher,
    DeliveryWorker,
    EndpointRegistry,
    EventBroadcaster,
    URLValidator,
    create_http_client,
)

logger = get_logger(__name__)


@dataclass
class RelayService:
    """Reliable webhook delivery for one application.

    This service provides a simple interface for:
    - registry: register, update, rotate and deactivate endpoints
    - broadcast(): fan an event out to subscribed endpoints
    - start_worker() / stop_worker(): run background delivery

    Uses dependency injection for storage and the HTTP client, making it
    easy to test against SQLite and ``httpx.MockTransport``.

    Attributes:
        storage: Endpoint and delivery store.
        http_client: Client used for outbound deliveries.
        registry: Endpoint registry.
        broadcaster: Event fan-out.
        dispatcher: Delivery attempts.
        worker: Background delivery loops.
        settings: Configuration settings.

    Example:
        ```python
        async with RelayService.create() as relay:
            endpoint = await relay.registry.register(
                owner_id="acct_42",
                url="https://hooks.example.com/orders",
                event_filter=["order.created"],
            )
            relay.start_worker()
            await relay.broadcast("order.created", {"order_id": "ord_1"})
        ```
    """

    storage: RelayStorage
    http_client: httpx.AsyncClient
    registry: EndpointRegistry
    broadcaster: EventBroadcaster
    dispatcher: DeliveryDispatcher
    worker: DeliveryWorker
    settings: Settings = field(default_factory=Settings)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        url_validator: URLValidator | None = None,
    ) -> RelayService:
        """Create a RelayService with default dependencies.

        Args:
            settings: Optional settings. Uses environment if None.
            http_client: Outbound client; built from settings if None.
            url_validator: Endpoint URL validator; built from settings if None.

        Returns:
            Configured RelayService instance.
        """
        if settings is None:
            settings = Settings()

        storage = RelayStorage(
            url=settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
        )
        client = http_client or create_http_client(settings)
        validator = url_validator or URLValidator(
            allow_private_networks=settings.allow_private_networks,
            allowed_hosts=settings.allowed_hosts,
        )
        registry = EndpointRegistry(storage, validator)
        dispatcher = DeliveryDispatcher.from_settings(storage, client, settings)
        worker = DeliveryWorker(
            dispatcher,
            storage,
            worker_count=settings.worker_count,
            poll_interval=settings.poll_interval_seconds,
            retention_days=settings.delivery_retention_days,
            purge_interval=settings.purge_interval_seconds,
        )
        broadcaster = EventBroadcaster(
            storage,
            registry,
            retry_policy=settings.retry_policy,
            on_enqueue=worker.notify,
        )

        return cls(
            storage=storage,
            http_client=client,
            registry=registry,
            broadcaster=broadcaster,
            dispatcher=dispatcher,
            worker=worker,
            settings=settings,
        )

    async def initialize(self) -> None:
        """Initialize the service (database engine and tables)."""
        await self.storage.initialize()

    async def close(self) -> None:
        """Stop the worker and release the HTTP client and database."""
        await self.stop_worker()
        await self.http_client.aclose()
        await self.storage.close()

    async def __aenter__(self) -> RelayService:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def broadcast(
        self,
        event_type: str,
        payload: Any,
        owner_id: str | None = None,
    ) -> list[str]:
        """Broadcast an event to every subscribed active endpoint.

        Returns:
            IDs of the deliveries created.
        """
        return await self.broadcaster.broadcast(event_type, payload, owner_id=owner_id)

    async def redeliver(self, delivery_id: str) -> str:
        """Replay a finished delivery. Returns the new delivery ID."""
        return await self.broadcaster.redeliver(delivery_id)

    def start_worker(self) -> None:
        """Start background delivery loops."""
        self.worker.start()

    async def stop_worker(self) -> None:
        """Stop background delivery loops."""
        await self.worker.stop()

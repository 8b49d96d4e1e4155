"""Endpoint storage operations for hookrelay.

Provides methods to store, retrieve, and manage registered endpoints.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, insert, select, update

from .retry import db_retry
from .tables import deliveries, endpoints

if TYPE_CHECKING:
    from hookrelay.models import Endpoint

# Columns callers may change through update_endpoint
UPDATABLE_FIELDS = frozenset(
    {"url", "event_filter", "active", "description", "secret", "secret_rotated_at"}
)


class EndpointMixin:
    """Mixin providing endpoint operations for RelayStorage.

    This mixin expects the following attributes/methods from the base class:
    - engine: AsyncEngine
    - _model_to_row(model) -> dict
    - _row_to_model(row, model_class) -> model
    """

    engine: Any
    _model_to_row: Any
    _row_to_model: Any

    @db_retry
    async def store_endpoint(self, endpoint: Endpoint) -> str:
        """Insert a new endpoint.

        Args:
            endpoint: Endpoint to store.

        Returns:
            The endpoint ID.
        """
        async with self.engine.begin() as conn:
            await conn.execute(insert(endpoints).values(**self._model_to_row(endpoint)))
        return endpoint.id

    @db_retry
    async def get_endpoint(self, endpoint_id: str) -> Endpoint | None:
        """Get an endpoint by ID.

        Returns:
            Endpoint or None if not found.
        """
        from hookrelay.models import Endpoint

        async with self.engine.connect() as conn:
            result = await conn.execute(select(endpoints).where(endpoints.c.id == endpoint_id))
            row = result.first()

        if row is None:
            return None
        endpoint: Endpoint = self._row_to_model(row, Endpoint)
        return endpoint

    @db_retry
    async def get_endpoints(self, endpoint_ids: Iterable[str]) -> dict[str, Endpoint]:
        """Get several endpoints at once, keyed by ID. Unknown IDs are omitted."""
        from hookrelay.models import Endpoint

        ids = list(set(endpoint_ids))
        if not ids:
            return {}

        async with self.engine.connect() as conn:
            result = await conn.execute(select(endpoints).where(endpoints.c.id.in_(ids)))
            rows = result.all()

        return {row.id: self._row_to_model(row, Endpoint) for row in rows}

    @db_retry
    async def list_endpoints(
        self,
        owner_id: str | None = None,
        active_only: bool = False,
        limit: int | None = None,
    ) -> list[Endpoint]:
        """List endpoints, optionally scoped to an owner.

        Args:
            owner_id: Only return this owner's endpoints.
            active_only: If True, only return active endpoints.
            limit: Maximum endpoints to return.

        Returns:
            Endpoints ordered by creation time (oldest first).
        """
        from hookrelay.models import Endpoint

        stmt = select(endpoints).order_by(endpoints.c.created_at, endpoints.c.id)
        if owner_id is not None:
            stmt = stmt.where(endpoints.c.owner_id == owner_id)
        if active_only:
            stmt = stmt.where(endpoints.c.active.is_(True))
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()

        return [self._row_to_model(row, Endpoint) for row in rows]

    @db_retry
    async def update_endpoint(self, endpoint_id: str, **updates: Any) -> Endpoint | None:
        """Update endpoint fields.

        Args:
            endpoint_id: ID of the endpoint to update.
            **updates: Fields to update (see UPDATABLE_FIELDS).

        Returns:
            Updated Endpoint or None if not found.

        Raises:
            ValueError: If a field is not updatable.
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update endpoint fields: {sorted(unknown)}")

        values = dict(updates)
        values["updated_at"] = datetime.now(UTC)

        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(endpoints).where(endpoints.c.id == endpoint_id).values(**values)
            )
            if result.rowcount == 0:
                return None

        return await self.get_endpoint(endpoint_id)

    @db_retry
    async def delete_endpoint(self, endpoint_id: str) -> bool:
        """Delete an endpoint and its delivery history.

        Returns:
            True if deleted, False if not found.
        """
        async with self.engine.begin() as conn:
            await conn.execute(delete(deliveries).where(deliveries.c.endpoint_id == endpoint_id))
            result = await conn.execute(delete(endpoints).where(endpoints.c.id == endpoint_id))
        return bool(result.rowcount)

    @db_retry
    async def record_endpoint_outcome(self, endpoint_id: str, succeeded: bool) -> int:
        """Update an endpoint's health counter after a terminal delivery outcome.

        Success resets the counter; a terminal failure increments it.

        Returns:
            The new consecutive failure count.
        """
        counter = endpoints.c.consecutive_failures
        new_value = 0 if succeeded else counter + 1

        async with self.engine.begin() as conn:
            await conn.execute(
                update(endpoints)
                .where(endpoints.c.id == endpoint_id)
                .values(consecutive_failures=new_value)
            )
            result = await conn.execute(
                select(counter).where(endpoints.c.id == endpoint_id)
            )
            value = result.scalar_one_or_none()

        return int(value or 0)

"""Delivery storage operations for hookrelay.

The delivery table is the source of truth for retry scheduling. Workers
take ownership of due deliveries through claim_pending(), which guards each
row with a compare-and-swap on the claim lease so that two workers never
dispatch the same delivery concurrently. Outcomes are written back through
record_attempt() / fail_delivery(), which only apply while the caller still
holds the claim.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from hookrelay.models import generate_id, truncate

from .retry import db_retry
from .tables import deliveries

if TYPE_CHECKING:
    from hookrelay.models import Delivery, DeliveryState

logger = logging.getLogger(__name__)

# Candidates fetched per claimed slot, to fill a batch when per-endpoint caps skip rows
_CANDIDATE_FACTOR = 4


def _lease_free(now: datetime) -> Any:
    return or_(deliveries.c.claimed_until.is_(None), deliveries.c.claimed_until < now)


class DeliveryMixin:
    """Mixin providing delivery operations for RelayStorage.

    This mixin expects the following attributes/methods from the base class:
    - engine: AsyncEngine
    - _model_to_row(model) -> dict
    - _row_to_model(row, model_class) -> model
    """

    engine: Any
    _model_to_row: Any
    _row_to_model: Any

    @db_retry
    async def create_delivery(self, delivery: Delivery) -> str:
        """Insert a new delivery record.

        Args:
            delivery: Delivery to store (normally in pending state).

        Returns:
            The delivery ID.
        """
        async with self.engine.begin() as conn:
            await conn.execute(insert(deliveries).values(**self._model_to_row(delivery)))
        return delivery.id

    @db_retry
    async def get_delivery(self, delivery_id: str) -> Delivery | None:
        """Get a delivery by ID."""
        from hookrelay.models import Delivery

        async with self.engine.connect() as conn:
            result = await conn.execute(select(deliveries).where(deliveries.c.id == delivery_id))
            row = result.first()

        if row is None:
            return None
        delivery: Delivery = self._row_to_model(row, Delivery)
        return delivery

    @db_retry
    async def list_deliveries(
        self,
        endpoint_id: str,
        state: DeliveryState | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[Delivery]:
        """Get the delivery history of an endpoint.

        Args:
            endpoint_id: Endpoint whose deliveries to list.
            state: Optional state filter.
            since: Only deliveries created at or after this time.
            limit: Maximum entries to return.

        Returns:
            Deliveries sorted by creation time (newest first).
        """
        from hookrelay.models import Delivery

        stmt = (
            select(deliveries)
            .where(deliveries.c.endpoint_id == endpoint_id)
            .order_by(deliveries.c.created_at.desc(), deliveries.c.id)
            .limit(limit)
        )
        if state is not None:
            stmt = stmt.where(deliveries.c.state == state)
        if since is not None:
            stmt = stmt.where(deliveries.c.created_at >= since)

        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()

        return [self._row_to_model(row, Delivery) for row in rows]

    @db_retry
    async def claim_pending(
        self,
        limit: int,
        lease_seconds: float,
        per_endpoint_limit: int | None = None,
        now: datetime | None = None,
    ) -> list[Delivery]:
        """Atomically claim a batch of due pending deliveries.

        Candidates are selected with FOR UPDATE SKIP LOCKED (a no-op on
        SQLite), then each row is claimed with a conditional UPDATE that
        only succeeds while the lease is free. Rows lost to a concurrent
        claimer are skipped.

        Args:
            limit: Maximum deliveries to claim.
            lease_seconds: How long the claim is held.
            per_endpoint_limit: Maximum deliveries per endpoint in this batch.
            now: Current time (defaults to now, UTC).

        Returns:
            Claimed deliveries, each carrying its claim_token.
        """
        from hookrelay.models import Delivery

        now = now or datetime.now(UTC)
        claim_token = generate_id("clm")
        claimed_until = now + timedelta(seconds=lease_seconds)
        fetch_limit = limit * _CANDIDATE_FACTOR if per_endpoint_limit else limit

        candidates_stmt = (
            select(deliveries.c.id, deliveries.c.endpoint_id)
            .where(
                deliveries.c.state == "pending",
                deliveries.c.next_retry_at <= now,
                _lease_free(now),
            )
            .order_by(deliveries.c.next_retry_at, deliveries.c.created_at)
            .limit(fetch_limit)
            .with_for_update(skip_locked=True)
        )

        claimed: list[Delivery] = []
        async with self.engine.begin() as conn:
            candidates = (await conn.execute(candidates_stmt)).all()

            per_endpoint: Counter[str] = Counter()
            for candidate in candidates:
                if len(claimed) >= limit:
                    break
                if per_endpoint_limit and per_endpoint[candidate.endpoint_id] >= per_endpoint_limit:
                    continue

                won = await self._try_claim(conn, candidate.id, claim_token, claimed_until, now)
                if not won:
                    continue

                per_endpoint[candidate.endpoint_id] += 1
                row = (
                    await conn.execute(select(deliveries).where(deliveries.c.id == candidate.id))
                ).first()
                claimed.append(self._row_to_model(row, Delivery))

        if claimed:
            logger.debug("Claimed %d deliveries (token %s)", len(claimed), claim_token)
        return claimed

    @staticmethod
    async def _try_claim(
        conn: AsyncConnection,
        delivery_id: str,
        claim_token: str,
        claimed_until: datetime,
        now: datetime,
    ) -> bool:
        """Compare-and-swap a single delivery's lease. Returns True if won."""
        result = await conn.execute(
            update(deliveries)
            .where(
                deliveries.c.id == delivery_id,
                deliveries.c.state == "pending",
                _lease_free(now),
            )
            .values(claim_token=claim_token, claimed_until=claimed_until)
        )
        return bool(result.rowcount == 1)

    @db_retry
    async def record_attempt(
        self,
        delivery_id: str,
        response_code: int | None,
        response_body: str | None,
        succeeded: bool,
        next_retry_at: datetime | None = None,
        error: str | None = None,
        claim_token: str | None = None,
        attempted_at: datetime | None = None,
        response_body_max_chars: int = 1000,
    ) -> Delivery | None:
        """Record the outcome of one HTTP attempt and release the claim.

        The resulting state is ``delivered`` on success, ``pending`` when a
        retry time is given, otherwise ``failed``. The attempt counter is
        incremented in SQL, and the update is refused for terminal
        deliveries, deliveries already at max_attempts, and claims that were
        lost to another worker.

        Args:
            delivery_id: Delivery the attempt belongs to.
            response_code: HTTP status, None for network errors.
            response_body: Response text (truncated before storing).
            succeeded: Whether the endpoint accepted the delivery.
            next_retry_at: When to retry; None makes a failure terminal.
            error: Failure reason.
            claim_token: Token returned by claim_pending, if claimed.
            attempted_at: When the attempt happened (defaults to now).
            response_body_max_chars: Snippet length kept.

        Returns:
            The updated Delivery, or None if the update was refused.
        """
        attempted_at = attempted_at or datetime.now(UTC)

        values: dict[str, Any] = {
            "attempts": deliveries.c.attempts + 1,
            "response_code": response_code,
            "response_body": truncate(response_body, response_body_max_chars),
            "last_attempt_at": attempted_at,
            "claim_token": None,
            "claimed_until": None,
        }
        if succeeded:
            values.update(state="delivered", delivered_at=attempted_at, error=None)
        elif next_retry_at is not None:
            values.update(state="pending", next_retry_at=next_retry_at, error=error)
        else:
            values.update(state="failed", error=error)

        conditions = [
            deliveries.c.id == delivery_id,
            deliveries.c.state == "pending",
            deliveries.c.attempts < deliveries.c.max_attempts,
        ]
        if not succeeded and next_retry_at is not None:
            # A retry must leave room for another attempt
            conditions.append(deliveries.c.attempts + 1 < deliveries.c.max_attempts)
        if claim_token is not None:
            conditions.append(deliveries.c.claim_token == claim_token)

        async with self.engine.begin() as conn:
            result = await conn.execute(update(deliveries).where(and_(*conditions)).values(**values))

        if result.rowcount == 0:
            logger.warning(
                "Attempt for delivery %s not recorded: delivery is terminal, exhausted, "
                "or its claim was lost",
                delivery_id,
            )
            return None

        return await self.get_delivery(delivery_id)

    @db_retry
    async def fail_delivery(
        self,
        delivery_id: str,
        error: str,
        claim_token: str | None = None,
    ) -> Delivery | None:
        """Mark a pending delivery failed without counting an HTTP attempt.

        Used when the endpoint was deactivated or deleted before the attempt.

        Returns:
            The updated Delivery, or None if it was not pending or not held.
        """
        conditions = [deliveries.c.id == delivery_id, deliveries.c.state == "pending"]
        if claim_token is not None:
            conditions.append(deliveries.c.claim_token == claim_token)

        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(deliveries)
                .where(and_(*conditions))
                .values(state="failed", error=error, claim_token=None, claimed_until=None)
            )

        if result.rowcount == 0:
            return None
        return await self.get_delivery(delivery_id)

    @db_retry
    async def release_claim(self, delivery_id: str, claim_token: str) -> bool:
        """Give up a claim early so the delivery can be picked up again."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(deliveries)
                .where(deliveries.c.id == delivery_id, deliveries.c.claim_token == claim_token)
                .values(claim_token=None, claimed_until=None)
            )
        return bool(result.rowcount)

    @db_retry
    async def purge_deliveries(self, older_than: datetime) -> int:
        """Delete terminal deliveries created before ``older_than``.

        Pending deliveries are never purged.

        Returns:
            Number of deliveries deleted.
        """
        async with self.engine.begin() as conn:
            result = await conn.execute(
                delete(deliveries).where(
                    deliveries.c.state.in_(("delivered", "failed")),
                    deliveries.c.created_at < older_than,
                )
            )
        purged = int(result.rowcount or 0)
        if purged:
            logger.info("Purged %d deliveries created before %s", purged, older_than.isoformat())
        return purged

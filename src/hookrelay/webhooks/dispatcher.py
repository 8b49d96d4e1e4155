"""Webhook delivery with HMAC signatures and exponential backoff retry.

Per delivery the dispatcher runs this state machine:

    pending --2xx--------------------------------> delivered
    pending --429/5xx/network, attempts left-----> pending (next_retry_at = now + backoff)
    pending --429/5xx/network, no attempts left--> failed  (exhausted)
    pending --other 4xx, 3xx---------------------> failed  (rejected)
    pending --endpoint inactive or deleted-------> failed  (no HTTP call)

Exceptions never escape the per-delivery boundary: one failing endpoint
cannot abort a batch or crash a worker.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING

import httpx

from hookrelay.config import RetryPolicy, Settings
from hookrelay.exceptions import (
    DeliveryError,
    ExhaustedRetriesError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from hookrelay.logging import bind_context, get_logger, unbind_context
from hookrelay.models import DeliveryEnvelope

from .backoff import next_retry_time
from .signing import (
    ATTEMPT_HEADER,
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    signature_headers,
)

if TYPE_CHECKING:
    from hookrelay.models import Delivery, Endpoint
    from hookrelay.storage import RelayStorage

logger = get_logger(__name__)


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """Build the shared HTTP client used for deliveries.

    Redirects are not followed: a redirect could point a registered public
    URL at an internal address.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            settings.request_timeout_seconds,
            connect=settings.connect_timeout_seconds,
        ),
        limits=httpx.Limits(
            max_connections=settings.http_max_connections,
            max_keepalive_connections=min(20, settings.http_max_connections),
        ),
        follow_redirects=False,
        headers={"User-Agent": settings.user_agent},
    )


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    delta = (when - (now or datetime.now(UTC))).total_seconds()
    return max(delta, 0.0)


@dataclass
class _EndpointSlot:
    semaphore: asyncio.Semaphore
    users: int = 0


class DeliveryDispatcher:
    """Claims due deliveries, POSTs them, and records the outcome.

    Handles:
    - Claiming batches of due deliveries from the store
    - Signing payloads with the secret snapshotted on each delivery
    - Classifying responses into delivered / retry / failed
    - Capping in-flight requests globally and per endpoint

    Example:
        ```python
        async with create_http_client(settings) as client:
            dispatcher = DeliveryDispatcher.from_settings(storage, client, settings)
            processed = await dispatcher.dispatch_due()
        ```
    """

    def __init__(
        self,
        storage: RelayStorage,
        http_client: httpx.AsyncClient,
        retry_policy: RetryPolicy | None = None,
        max_concurrent: int = 50,
        per_endpoint_concurrency: int = 4,
        claim_batch_size: int = 100,
        claim_lease_seconds: float = 120.0,
        response_body_max_chars: int = 1000,
        endpoint_failure_threshold: int = 10,
        attempt_timeout: float = 15.0,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            storage: Delivery store.
            http_client: Client used for all deliveries (owns timeouts and pool size).
            retry_policy: Attempts and backoff schedule.
            max_concurrent: Maximum in-flight HTTP attempts.
            per_endpoint_concurrency: Maximum in-flight attempts per endpoint.
            claim_batch_size: Deliveries claimed per dispatch_due() call.
            claim_lease_seconds: Claim lease duration.
            response_body_max_chars: Response snippet length kept.
            endpoint_failure_threshold: Consecutive terminal failures reported as failing.
            attempt_timeout: Wall-clock limit on one HTTP attempt, connect to last
                body byte. A claim with less lease left than this is not sent.
            clock: Returns the current UTC time.
            rng: Random source for backoff jitter.
        """
        self._storage = storage
        self._client = http_client
        self._policy = retry_policy or RetryPolicy()
        self._max_concurrent = max_concurrent
        self._per_endpoint = per_endpoint_concurrency
        self._batch_size = claim_batch_size
        self._lease = claim_lease_seconds
        self._snippet_chars = response_body_max_chars
        self._failure_threshold = endpoint_failure_threshold
        self._attempt_timeout = attempt_timeout
        self._now = clock or (lambda: datetime.now(UTC))
        self._rng = rng
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._endpoint_slots: dict[str, _EndpointSlot] = {}

    @classmethod
    def from_settings(
        cls,
        storage: RelayStorage,
        http_client: httpx.AsyncClient,
        settings: Settings,
    ) -> DeliveryDispatcher:
        """Create a dispatcher configured from Settings."""
        return cls(
            storage,
            http_client,
            retry_policy=settings.retry_policy,
            max_concurrent=settings.max_concurrent_deliveries,
            per_endpoint_concurrency=settings.per_endpoint_concurrency,
            claim_batch_size=settings.claim_batch_size,
            claim_lease_seconds=settings.claim_lease_seconds,
            response_body_max_chars=settings.response_body_max_chars,
            endpoint_failure_threshold=settings.endpoint_failure_threshold,
            attempt_timeout=settings.request_timeout_seconds + settings.connect_timeout_seconds,
        )

    async def dispatch_due(self, limit: int | None = None) -> int:
        """Claim one batch of due deliveries and attempt each of them.

        Args:
            limit: Batch size (defaults to claim_batch_size).

        Returns:
            Number of deliveries claimed and processed.
        """
        batch = await self._storage.claim_pending(
            limit=limit or self._batch_size,
            lease_seconds=self._lease,
            per_endpoint_limit=self._per_endpoint,
            now=self._now(),
        )
        if not batch:
            return 0

        endpoints = await self._storage.get_endpoints(d.endpoint_id for d in batch)
        await asyncio.gather(
            *(self._process(delivery, endpoints.get(delivery.endpoint_id)) for delivery in batch)
        )
        logger.debug("Dispatched batch", deliveries=len(batch))
        return len(batch)

    async def _process(self, delivery: Delivery, endpoint: Endpoint | None) -> None:
        """Per-delivery boundary: log and release on unexpected errors."""
        try:
            await self.attempt(delivery, endpoint)
        except Exception:
            logger.exception(
                "Unexpected error while dispatching",
                delivery_id=delivery.id,
                endpoint_id=delivery.endpoint_id,
            )
            if delivery.claim_token is not None:
                await self._release(delivery)

    async def _release(self, delivery: Delivery) -> None:
        try:
            await self._storage.release_claim(delivery.id, delivery.claim_token or "")
        except Exception:
            logger.exception("Failed to release claim; lease will expire", delivery_id=delivery.id)

    async def attempt(self, delivery: Delivery, endpoint: Endpoint | None) -> Delivery | None:
        """Perform one delivery step for a claimed delivery.

        Args:
            delivery: Delivery to attempt (normally claimed, carrying claim_token).
            endpoint: Its endpoint, or None if it was deleted.

        Returns:
            The updated delivery, or None if nothing was recorded.
        """
        if delivery.is_terminal:
            logger.warning("Skipping terminal delivery", delivery_id=delivery.id, state=delivery.state)
            return None

        if endpoint is None or not endpoint.active:
            reason = "endpoint deleted" if endpoint is None else "endpoint deactivated"
            updated = await self._storage.fail_delivery(
                delivery.id, error=reason, claim_token=delivery.claim_token
            )
            logger.info(
                "Delivery abandoned",
                delivery_id=delivery.id,
                endpoint_id=delivery.endpoint_id,
                reason=reason,
            )
            return updated

        bind_context(delivery_id=delivery.id, endpoint_id=endpoint.id)
        try:
            async with self._endpoint_slot(endpoint.id), self._semaphore:
                if not self._lease_covers_attempt(delivery):
                    # Queued too long behind the concurrency caps
                    logger.info("Lease too short for an attempt; releasing claim")
                    await self._release(delivery)
                    return None
                outcome = await self._perform(endpoint, delivery)
            return await self._record(delivery, endpoint, outcome)
        finally:
            unbind_context("delivery_id", "endpoint_id")

    def _lease_covers_attempt(self, delivery: Delivery) -> bool:
        if delivery.claimed_until is None:
            return True
        remaining = (delivery.claimed_until - self._now()).total_seconds()
        return remaining > self._attempt_timeout

    async def _perform(
        self, endpoint: Endpoint, delivery: Delivery
    ) -> tuple[int, str] | DeliveryError:
        """Send and classify; returns the 2xx status and body or the classified error."""
        try:
            return await self._send(endpoint, delivery)
        except DeliveryError as e:
            return e

    def build_request(self, delivery: Delivery, timestamp: int) -> tuple[bytes, dict[str, str]]:
        """Serialize the envelope and build signed headers.

        Args:
            delivery: Delivery being sent.
            timestamp: Unix seconds at signing time.

        Returns:
            Raw body and headers.
        """
        body = DeliveryEnvelope.from_delivery(delivery).model_dump_json().encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            DELIVERY_ID_HEADER: delivery.id,
            EVENT_HEADER: delivery.event_type,
            ATTEMPT_HEADER: str(delivery.attempts + 1),
            **signature_headers(delivery.secret_used, body, timestamp),
        }
        return body, headers

    async def _send(self, endpoint: Endpoint, delivery: Delivery) -> tuple[int, str]:
        """POST a delivery and classify the response.

        Returns:
            Status code and response snippet for 2xx responses.

        Raises:
            TransientDeliveryError: Timeout, connection failure, 429 or 5xx.
            PermanentDeliveryError: Any other non-2xx response.
        """
        timestamp = int(self._now().timestamp())
        body, headers = self.build_request(delivery, timestamp)

        # httpx timeouts bound each read; a slow trickle needs an overall limit
        try:
            async with asyncio.timeout(self._attempt_timeout):
                async with self._client.stream(
                    "POST", endpoint.url, content=body, headers=headers
                ) as response:
                    snippet = await self._read_snippet(response)
                    status_code = response.status_code
                    retry_after = response.headers.get("Retry-After")
        except TimeoutError as e:
            raise TransientDeliveryError(
                f"Attempt exceeded {self._attempt_timeout:g}s"
            ) from e
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Request timeout ({type(e).__name__})") from e
        except httpx.RequestError as e:
            raise TransientDeliveryError(f"Request error: {type(e).__name__}: {e}") from e
        except httpx.InvalidURL as e:
            raise PermanentDeliveryError(f"Invalid endpoint URL: {e}") from e

        if 200 <= status_code < 300:
            return status_code, snippet
        if status_code == 429 or status_code >= 500:
            raise TransientDeliveryError(
                f"HTTP {status_code}",
                response_code=status_code,
                response_body=snippet,
                retry_after=parse_retry_after(retry_after, self._now()),
            )
        raise PermanentDeliveryError(
            f"HTTP {status_code}", response_code=status_code, response_body=snippet
        )

    async def _read_snippet(self, response: httpx.Response) -> str:
        """Read at most the snippet length of a response body."""
        if self._snippet_chars <= 0:
            return ""
        byte_limit = self._snippet_chars * 4
        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) >= byte_limit:
                break
        text = bytes(buffer[:byte_limit]).decode(response.encoding or "utf-8", errors="replace")
        return text[: self._snippet_chars]

    async def _record(
        self,
        delivery: Delivery,
        endpoint: Endpoint,
        outcome: tuple[int, str] | DeliveryError,
    ) -> Delivery | None:
        attempted_at = self._now()
        attempts = delivery.attempts + 1
        common = {
            "claim_token": delivery.claim_token,
            "attempted_at": attempted_at,
            "response_body_max_chars": self._snippet_chars,
        }

        if not isinstance(outcome, DeliveryError):
            status_code, snippet = outcome
            updated = await self._storage.record_attempt(
                delivery.id,
                response_code=status_code,
                response_body=snippet,
                succeeded=True,
                **common,
            )
            logger.info(
                "Webhook delivered",
                event_type=delivery.event_type,
                status=status_code,
                attempts=attempts,
            )
            if updated is not None:
                await self._update_health(endpoint, succeeded=True)
            return updated

        if isinstance(outcome, TransientDeliveryError) and attempts < delivery.max_attempts:
            retry_at = next_retry_time(
                self._policy, attempts, attempted_at, outcome.retry_after, self._rng
            )
            updated = await self._storage.record_attempt(
                delivery.id,
                response_code=outcome.response_code,
                response_body=outcome.response_body,
                succeeded=False,
                next_retry_at=retry_at,
                error=outcome.message,
                **common,
            )
            logger.info(
                "Webhook scheduled for retry",
                event_type=delivery.event_type,
                error=outcome.message,
                attempts=attempts,
                next_retry_at=retry_at.isoformat(),
            )
            return updated

        failure: DeliveryError = outcome
        if isinstance(outcome, TransientDeliveryError):
            failure = ExhaustedRetriesError(
                attempts,
                outcome.message,
                response_code=outcome.response_code,
                response_body=outcome.response_body,
            )

        updated = await self._storage.record_attempt(
            delivery.id,
            response_code=failure.response_code,
            response_body=failure.response_body,
            succeeded=False,
            error=failure.message,
            **common,
        )
        logger.warning(
            "Webhook failed",
            event_type=delivery.event_type,
            url=endpoint.url,
            error=failure.message,
            code=failure.code,
            attempts=attempts,
        )
        if updated is not None:
            await self._update_health(endpoint, succeeded=False)
        return updated

    async def _update_health(self, endpoint: Endpoint, succeeded: bool) -> None:
        """Track consecutive terminal failures and report failing endpoints."""
        if succeeded and endpoint.consecutive_failures == 0:
            return
        try:
            failures = await self._storage.record_endpoint_outcome(endpoint.id, succeeded)
        except Exception:
            logger.exception("Failed to update endpoint health", endpoint_id=endpoint.id)
            return

        if not succeeded and failures == self._failure_threshold:
            logger.warning(
                "Endpoint failing",
                endpoint_id=endpoint.id,
                owner_id=endpoint.owner_id,
                consecutive_failures=failures,
            )

    @asynccontextmanager
    async def _endpoint_slot(self, endpoint_id: str) -> AsyncIterator[None]:
        """Per-endpoint concurrency cap. Idle entries are dropped."""
        slot = self._endpoint_slots.get(endpoint_id)
        if slot is None:
            slot = _EndpointSlot(asyncio.Semaphore(self._per_endpoint))
            self._endpoint_slots[endpoint_id] = slot
        slot.users += 1
        try:
            async with slot.semaphore:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._endpoint_slots[endpoint_id]

    def in_flight_endpoints(self) -> Iterable[str]:
        """Endpoints with attempts currently queued or running."""
        return list(self._endpoint_slots)

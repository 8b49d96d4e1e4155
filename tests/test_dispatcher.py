"""Unit tests for the delivery dispatcher."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from hookrelay.config import RetryPolicy, Settings
from hookrelay.models import Delivery, Endpoint
from hookrelay.webhooks import DeliveryDispatcher, create_http_client, parse_retry_after
from hookrelay.webhooks.signing import (
    ATTEMPT_HEADER,
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    verify,
)

from conftest import FakeClock

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint(
        id="whk_test123",
        owner_id="acct_1",
        url="https://hooks.example.com/in",
        secret="whsec_current",
    )


@pytest.fixture
def delivery(endpoint: Endpoint) -> Delivery:
    return Delivery(
        id="dlv_test456",
        endpoint_id=endpoint.id,
        owner_id=endpoint.owner_id,
        event_type="order.created",
        payload={"order_id": "ord_1"},
        secret_used="whsec_snapshot",
        max_attempts=3,
        claim_token="clm_1",
    )


@pytest.fixture
def mock_storage() -> AsyncMock:
    """Create a mock storage instance."""
    storage = AsyncMock()
    storage.record_attempt = AsyncMock(side_effect=lambda delivery_id, **kw: MagicMock(id=delivery_id))
    storage.fail_delivery = AsyncMock(side_effect=lambda delivery_id, **kw: MagicMock(id=delivery_id))
    storage.record_endpoint_outcome = AsyncMock(return_value=1)
    storage.claim_pending = AsyncMock(return_value=[])
    storage.get_endpoints = AsyncMock(return_value={})
    return storage


def make_dispatcher(storage, handler, **kwargs) -> DeliveryDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay_seconds=10, jitter=0))
    kwargs.setdefault("clock", FakeClock(NOW))
    return DeliveryDispatcher(storage, client, **kwargs)


def respond(status: int, text: str = "", headers: dict | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=text, headers=headers)

    return handler


class TestBuildRequest:
    def test_envelope_and_headers(self, mock_storage, delivery):
        dispatcher = make_dispatcher(mock_storage, respond(200))
        body, headers = dispatcher.build_request(delivery, 1700000000)

        envelope = json.loads(body)
        assert envelope["id"] == "dlv_test456"
        assert envelope["event"] == "order.created"
        assert envelope["data"] == {"order_id": "ord_1"}
        assert headers["Content-Type"] == "application/json"
        assert headers[DELIVERY_ID_HEADER] == "dlv_test456"
        assert headers[EVENT_HEADER] == "order.created"
        assert headers[ATTEMPT_HEADER] == "1"
        assert headers[TIMESTAMP_HEADER] == "1700000000"

    def test_signed_with_snapshot_secret(self, mock_storage, delivery):
        dispatcher = make_dispatcher(mock_storage, respond(200))
        body, headers = dispatcher.build_request(delivery, 1700000000)
        assert verify("whsec_snapshot", "1700000000", body, headers[SIGNATURE_HEADER])
        assert not verify("whsec_current", "1700000000", body, headers[SIGNATURE_HEADER])


class TestAttempt:
    @pytest.mark.asyncio
    async def test_success(self, mock_storage, endpoint, delivery):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        dispatcher = make_dispatcher(mock_storage, handler)
        await dispatcher.attempt(delivery, endpoint)

        [request] = seen
        assert request.method == "POST"
        assert str(request.url) == endpoint.url
        assert request.headers[TIMESTAMP_HEADER] == str(int(NOW.timestamp()))
        assert verify(
            "whsec_snapshot",
            request.headers[TIMESTAMP_HEADER],
            request.content,
            request.headers[SIGNATURE_HEADER],
        )

        kwargs = mock_storage.record_attempt.await_args.kwargs
        assert kwargs["succeeded"] is True
        assert kwargs["response_code"] == 204
        assert kwargs["claim_token"] == "clm_1"
        assert kwargs["attempted_at"] == NOW
        # Healthy endpoint: no counter write
        mock_storage.record_endpoint_outcome.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success_resets_failing_endpoint(self, mock_storage, endpoint, delivery):
        endpoint = endpoint.model_copy(update={"consecutive_failures": 3})
        dispatcher = make_dispatcher(mock_storage, respond(200))
        await dispatcher.attempt(delivery, endpoint)
        mock_storage.record_endpoint_outcome.assert_awaited_once_with(endpoint.id, True)

    @pytest.mark.asyncio
    async def test_server_error_schedules_retry(self, mock_storage, endpoint, delivery):
        dispatcher = make_dispatcher(mock_storage, respond(503, "busy"))
        await dispatcher.attempt(delivery, endpoint)

        kwargs = mock_storage.record_attempt.await_args.kwargs
        assert kwargs["succeeded"] is False
        assert kwargs["response_code"] == 503
        assert kwargs["response_body"] == "busy"
        assert kwargs["error"] == "HTTP 503"
        assert kwargs["next_retry_at"] == NOW + timedelta(seconds=10)
        mock_storage.record_endpoint_outcome.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backoff_grows_with_attempts(self, mock_storage, endpoint, delivery):
        delivery = delivery.model_copy(update={"attempts": 1})
        dispatcher = make_dispatcher(mock_storage, respond(500))
        await dispatcher.attempt(delivery, endpoint)
        kwargs = mock_storage.record_attempt.await_args.kwargs
        assert kwargs["next_retry_at"] == NOW + timedelta(seconds=20)

    @pytest.mark.asyncio
    async def test_rate_limited_honours_retry_after(self, mock_storage, endpoint, delivery):
        dispatcher = make_dispatcher(mock_storage, respond(429, headers={"Retry-After": "120"}))
        await dispatcher.attempt(delivery, endpoint)
        kwargs = mock_storage.record_attempt.await_args.kwargs
        assert kwargs["next_retry_at"] == NOW + timedelta(seconds=120)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404, 410, 422, 301, 302])
    async def test_permanent_failures(self, mock_storage, endpoint, delivery, status):
        dispatcher = make_dispatcher(mock_storage, respond(status, "no"))
        await dispatcher.attempt(delivery, endpoint)

        kwargs = mock_storage.record_attempt.await_args.kwargs
        assert kwargs["succeeded"] is False
        assert kwargs["response_code"] == status
        assert kwargs.get("next_retry_at") is None
        assert kwargs["error"] == f"HTTP {status}"
        mock_storage.record_endpoint_outcome.assert_awaited_once_with(endpoint.id, False)

    @pytest.mark.asyncio
    async def test_last_attempt_exhausts(self, mock_storage, endpoint, delivery):
        delivery = delivery.model_copy(update={"attempts": 2})
        dispatcher = make_dispatcher(mock_storage, respond(503))
        await dispatcher.attempt(delivery, endpoint)

        kwargs = mock_storage.record_attempt.await_args.kwargs
        assert kwargs.get("next_retry_at") is None
        assert kwargs["error"] == "Max attempts exceeded after 3 attempts: HTTP 503"
        assert kwargs["response_code"] == 503

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, mock_storage, endpoint, delivery):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        dispatcher = make_dispatcher(mock_storage, handler)
        await dispatcher.attempt(delivery, endpoint)

        kwargs = mock_storage.record_attempt.await_args.kwargs
        assert kwargs["response_code"] is None
        assert "timeout" in kwargs["error"].lower()
        assert kwargs["next_retry_at"] is not None

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, mock_storage, endpoint, delivery):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        dispatcher = make_dispatcher(mock_storage, handler)
        await dispatcher.attempt(delivery, endpoint)

        kwargs = mock_storage.record_attempt.await_args.kwargs
        assert "ConnectError" in kwargs["error"]
        assert kwargs["next_retry_at"] is not None

    @pytest.mark.asyncio
    async def test_response_snippet_truncated(self, mock_storage, endpoint, delivery):
        dispatcher = make_dispatcher(
            mock_storage, respond(500, "e" * 10_000), response_body_max_chars=50
        )
        await dispatcher.attempt(delivery, endpoint)
        assert mock_storage.record_attempt.await_args.kwargs["response_body"] == "e" * 50

    @pytest.mark.asyncio
    async def test_deactivated_endpoint_fails_without_http(self, mock_storage, endpoint, delivery):
        handler = MagicMock(side_effect=AssertionError("no HTTP expected"))
        dispatcher = make_dispatcher(mock_storage, handler)
        endpoint = endpoint.model_copy(update={"active": False})

        await dispatcher.attempt(delivery, endpoint)

        mock_storage.fail_delivery.assert_awaited_once_with(
            delivery.id, error="endpoint deactivated", claim_token="clm_1"
        )
        mock_storage.record_attempt.assert_not_awaited()
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_deleted_endpoint_fails_without_http(self, mock_storage, delivery):
        dispatcher = make_dispatcher(mock_storage, respond(200))
        await dispatcher.attempt(delivery, None)
        mock_storage.fail_delivery.assert_awaited_once_with(
            delivery.id, error="endpoint deleted", claim_token="clm_1"
        )

    @pytest.mark.asyncio
    async def test_terminal_delivery_skipped(self, mock_storage, endpoint, delivery):
        delivery = delivery.model_copy(update={"state": "failed"})
        dispatcher = make_dispatcher(mock_storage, respond(200))
        assert await dispatcher.attempt(delivery, endpoint) is None
        mock_storage.record_attempt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_threshold_logged_once(self, mock_storage, endpoint, delivery):
        mock_storage.record_endpoint_outcome = AsyncMock(return_value=2)
        dispatcher = make_dispatcher(mock_storage, respond(404), endpoint_failure_threshold=2)
        await dispatcher.attempt(delivery, endpoint)
        mock_storage.record_endpoint_outcome.assert_awaited_once_with(endpoint.id, False)

    @pytest.mark.asyncio
    async def test_short_lease_released_without_http(self, mock_storage, endpoint, delivery):
        handler = MagicMock(side_effect=AssertionError("no HTTP expected"))
        dispatcher = make_dispatcher(mock_storage, handler, attempt_timeout=30)
        delivery = delivery.model_copy(update={"claimed_until": NOW + timedelta(seconds=10)})

        assert await dispatcher.attempt(delivery, endpoint) is None

        mock_storage.release_claim.assert_awaited_once_with(delivery.id, "clm_1")
        mock_storage.record_attempt.assert_not_awaited()
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_lease_covering_attempt_is_sent(self, mock_storage, endpoint, delivery):
        dispatcher = make_dispatcher(mock_storage, respond(200), attempt_timeout=30)
        delivery = delivery.model_copy(update={"claimed_until": NOW + timedelta(seconds=60)})

        await dispatcher.attempt(delivery, endpoint)

        assert mock_storage.record_attempt.await_args.kwargs["succeeded"] is True
        mock_storage.release_claim.assert_not_awaited()


@pytest_asyncio.fixture
async def trickle_url() -> AsyncIterator[str]:
    """Local HTTP server that answers 200 but sends its 40-byte body one byte per 0.1s."""
    handlers: list[asyncio.Task] = []

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        handlers.append(asyncio.current_task())
        try:
            await reader.readuntil(b"\r\n\r\n")
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 40\r\n\r\n")
            for _ in range(40):
                writer.write(b"x")
                await writer.drain()
                await asyncio.sleep(0.1)
        except ConnectionError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}/hook"

    for task in handlers:
        task.cancel()
    await asyncio.gather(*handlers, return_exceptions=True)
    server.close()


class TestAttemptTimeout:
    """Slow receivers cannot hold an attempt open past its time limit."""

    @pytest.mark.asyncio
    async def test_trickling_body_times_out(self, mock_storage, endpoint, delivery, trickle_url):
        endpoint = endpoint.model_copy(update={"url": trickle_url})
        async with httpx.AsyncClient(timeout=httpx.Timeout(0.5)) as client:
            dispatcher = DeliveryDispatcher(
                mock_storage,
                client,
                retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=10, jitter=0),
                attempt_timeout=0.5,
            )
            started = time.monotonic()
            await dispatcher.attempt(delivery, endpoint)
            elapsed = time.monotonic() - started

        assert elapsed < 1.5
        kwargs = mock_storage.record_attempt.await_args.kwargs
        assert kwargs["succeeded"] is False
        assert kwargs["error"] == "Attempt exceeded 0.5s"
        assert kwargs["next_retry_at"] is not None

    @pytest.mark.asyncio
    async def test_dispatch_finishes_within_lease(self, storage, trickle_url):
        endpoint = Endpoint(owner_id="acct_1", url=trickle_url, secret="whsec_x")
        await storage.store_endpoint(endpoint)
        delivery_id = await storage.create_delivery(
            Delivery(
                endpoint_id=endpoint.id,
                owner_id="acct_1",
                event_type="order.created",
                secret_used=endpoint.secret,
                max_attempts=3,
            )
        )
        settings = Settings(
            _env_file=None,
            request_timeout_seconds=0.5,
            connect_timeout_seconds=0.5,
            claim_lease_seconds=1.5,
        )
        async with create_http_client(settings) as client:
            dispatcher = DeliveryDispatcher.from_settings(storage, client, settings)
            started = time.monotonic()
            assert await dispatcher.dispatch_due() == 1
            elapsed = time.monotonic() - started

        assert elapsed < settings.claim_lease_seconds
        stored = await storage.get_delivery(delivery_id)
        assert stored.state == "pending"
        assert stored.attempts == 1
        assert stored.error == "Attempt exceeded 1s"
        assert stored.claim_token is None


class TestDispatchDue:
    @pytest.mark.asyncio
    async def test_nothing_due(self, mock_storage):
        dispatcher = make_dispatcher(mock_storage, respond(200))
        assert await dispatcher.dispatch_due() == 0
        mock_storage.get_endpoints.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_claims_with_configured_batch(self, mock_storage, endpoint, delivery):
        mock_storage.claim_pending.return_value = [delivery]
        mock_storage.get_endpoints.return_value = {endpoint.id: endpoint}
        dispatcher = make_dispatcher(
            mock_storage,
            respond(200),
            claim_batch_size=25,
            claim_lease_seconds=90,
            per_endpoint_concurrency=2,
        )

        assert await dispatcher.dispatch_due() == 1
        mock_storage.claim_pending.assert_awaited_once_with(
            limit=25, lease_seconds=90, per_endpoint_limit=2, now=NOW
        )
        assert mock_storage.record_attempt.await_args.kwargs["succeeded"] is True

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self, mock_storage, endpoint):
        batch = [
            Delivery(
                endpoint_id=endpoint.id,
                owner_id="acct_1",
                event_type="order.created",
                secret_used="s",
                claim_token="clm_1",
            )
            for _ in range(3)
        ]
        mock_storage.claim_pending.return_value = batch
        mock_storage.get_endpoints.return_value = {endpoint.id: endpoint}
        mock_storage.record_attempt = AsyncMock(side_effect=[RuntimeError("db gone"), None, None])

        dispatcher = make_dispatcher(mock_storage, respond(200))
        assert await dispatcher.dispatch_due() == 3
        assert mock_storage.record_attempt.await_count == 3
        # The failed one gives its claim back
        mock_storage.release_claim.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_per_endpoint_concurrency_cap(self, mock_storage, endpoint):
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200)

        batch = [
            Delivery(
                endpoint_id=endpoint.id,
                owner_id="acct_1",
                event_type="order.created",
                secret_used="s",
            )
            for _ in range(6)
        ]
        mock_storage.claim_pending.return_value = batch
        mock_storage.get_endpoints.return_value = {endpoint.id: endpoint}

        dispatcher = make_dispatcher(mock_storage, handler, per_endpoint_concurrency=2)
        await dispatcher.dispatch_due()

        assert peak == 2
        # Idle limiter entries are dropped
        assert list(dispatcher.in_flight_endpoints()) == []


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("30") == 30.0

    def test_http_date(self):
        now = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        assert parse_retry_after("Sun, 01 Jun 2025 12:01:00 GMT", now) == 60.0

    def test_past_date(self):
        now = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        assert parse_retry_after("Sun, 01 Jun 2025 11:00:00 GMT", now) == 0.0

    @pytest.mark.parametrize("value", [None, "", "soon", "-5"])
    def test_unparseable(self, value):
        assert parse_retry_after(value) is None


def test_create_http_client():
    settings = Settings(_env_file=None, request_timeout_seconds=7, connect_timeout_seconds=2)
    client = create_http_client(settings)
    assert client.timeout.read == 7
    assert client.timeout.connect == 2
    assert client.follow_redirects is False
    assert client.headers["User-Agent"] == settings.user_agent

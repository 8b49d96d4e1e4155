"""End-to-end delivery scenarios: SQLite storage, scripted HTTP receiver."""

from __future__ import annotations

import asyncio
import json

import pytest

from hookrelay.webhooks import DeliveryDispatcher
from hookrelay.webhooks.signing import (
    DELIVERY_ID_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    verify,
)

A = "https://hooks.example.com/a"
B = "https://hooks.example.com/b"
C = "https://hooks.example.com/c"


@pytest.fixture
def dispatcher(storage, receiver, retry_policy, clock) -> DeliveryDispatcher:
    return DeliveryDispatcher(
        storage,
        receiver.client(),
        retry_policy=retry_policy,
        claim_lease_seconds=60,
        clock=clock,
    )


async def settle(dispatcher: DeliveryDispatcher, clock, rounds: int = 10) -> None:
    """Run dispatch rounds, jumping past the backoff cap between them."""
    for _ in range(rounds):
        clock.advance(11)
        await dispatcher.dispatch_due()


class TestFanOut:
    @pytest.mark.asyncio
    async def test_filtered_fan_out(
        self, registry, broadcaster, dispatcher, receiver, storage, clock
    ):
        e1 = await registry.register("acct_1", A, event_filter=["order.created"])
        e2 = await registry.register("acct_1", B)
        await registry.register("acct_1", C, event_filter=["user.created"])

        ids = await broadcaster.broadcast("order.created", {"order_id": "ord_1"})
        assert len(ids) == 2

        await settle(dispatcher, clock, rounds=1)

        assert len(receiver.calls_to(A)) == 1
        assert len(receiver.calls_to(B)) == 1
        assert receiver.calls_to(C) == []

        for url, endpoint in ((A, e1), (B, e2)):
            [request] = receiver.calls_to(url)
            assert verify(
                endpoint.secret,
                request.headers[TIMESTAMP_HEADER],
                request.content,
                request.headers[SIGNATURE_HEADER],
            )
            body = json.loads(request.content)
            assert body["data"] == {"order_id": "ord_1"}
            assert body["id"] == request.headers[DELIVERY_ID_HEADER]

        for delivery_id in ids:
            delivery = await storage.get_delivery(delivery_id)
            assert delivery.state == "delivered"
            assert delivery.attempts == 1


class TestRetries:
    @pytest.mark.asyncio
    async def test_server_error_then_success(
        self, registry, broadcaster, dispatcher, receiver, storage, clock
    ):
        await registry.register("acct_1", A)
        receiver.script(A, 500, 200)
        [delivery_id] = await broadcaster.broadcast("order.created", {})

        await settle(dispatcher, clock)

        delivery = await storage.get_delivery(delivery_id)
        assert delivery.state == "delivered"
        assert delivery.attempts == 2
        assert delivery.response_code == 200
        # Same delivery ID on both attempts
        assert {r.headers[DELIVERY_ID_HEADER] for r in receiver.calls_to(A)} == {delivery_id}
        assert [r.headers["X-Hookrelay-Attempt"] for r in receiver.calls_to(A)] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_client_error_fails_immediately(
        self, registry, broadcaster, dispatcher, receiver, storage, clock
    ):
        endpoint = await registry.register("acct_1", A)
        receiver.script(A, 404)
        [delivery_id] = await broadcaster.broadcast("order.created", {})

        await settle(dispatcher, clock)

        delivery = await storage.get_delivery(delivery_id)
        assert delivery.state == "failed"
        assert delivery.attempts == 1
        assert delivery.response_code == 404
        assert len(receiver.calls_to(A)) == 1
        assert (await storage.get_endpoint(endpoint.id)).consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_exhausts_max_attempts(
        self, registry, broadcaster, dispatcher, receiver, storage, clock, retry_policy
    ):
        await registry.register("acct_1", A)
        receiver.script(A, 503)
        [delivery_id] = await broadcaster.broadcast("order.created", {})

        await settle(dispatcher, clock)

        delivery = await storage.get_delivery(delivery_id)
        assert delivery.state == "failed"
        assert delivery.attempts == retry_policy.max_attempts
        assert delivery.error.startswith("Max attempts exceeded")
        assert len(receiver.calls_to(A)) == retry_policy.max_attempts

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(
        self, registry, broadcaster, dispatcher, receiver, storage, clock
    ):
        await registry.register("acct_1", A)
        receiver.script(A, 503, 200)
        [delivery_id] = await broadcaster.broadcast("order.created", {})

        clock.advance(5)
        assert await dispatcher.dispatch_due() == 1
        # Backoff is 1s after the first attempt
        assert await dispatcher.dispatch_due() == 0

        clock.advance(1)
        assert await dispatcher.dispatch_due() == 1
        assert (await storage.get_delivery(delivery_id)).state == "delivered"

    @pytest.mark.asyncio
    async def test_attempts_monotone_and_bounded(
        self, registry, broadcaster, dispatcher, receiver, storage, clock, retry_policy
    ):
        await registry.register("acct_1", A)
        receiver.script(A, 500)
        [delivery_id] = await broadcaster.broadcast("order.created", {})

        seen = []
        for _ in range(6):
            clock.advance(11)
            await dispatcher.dispatch_due()
            seen.append((await storage.get_delivery(delivery_id)).attempts)

        assert seen == sorted(seen)
        assert max(seen) == retry_policy.max_attempts


class TestEndpointChanges:
    @pytest.mark.asyncio
    async def test_deactivated_mid_retry(
        self, registry, broadcaster, dispatcher, receiver, storage, clock
    ):
        endpoint = await registry.register("acct_1", A)
        receiver.script(A, 503, 200)
        [delivery_id] = await broadcaster.broadcast("order.created", {})

        await settle(dispatcher, clock, rounds=1)
        await registry.deactivate(endpoint.id)
        await settle(dispatcher, clock)

        delivery = await storage.get_delivery(delivery_id)
        assert delivery.state == "failed"
        assert delivery.attempts == 1
        assert delivery.error == "endpoint deactivated"
        assert len(receiver.calls_to(A)) == 1

    @pytest.mark.asyncio
    async def test_rotation_keeps_snapshot_secret(
        self, registry, broadcaster, dispatcher, receiver, storage, clock
    ):
        endpoint = await registry.register("acct_1", A)
        await broadcaster.broadcast("order.created", {"n": 1})
        new_secret = await registry.rotate_secret(endpoint.id)
        await broadcaster.broadcast("order.created", {"n": 2})

        await settle(dispatcher, clock, rounds=1)

        by_n = {json.loads(r.content)["data"]["n"]: r for r in receiver.calls_to(A)}
        old, new = by_n[1], by_n[2]
        assert verify(endpoint.secret, old.headers[TIMESTAMP_HEADER], old.content,
                      old.headers[SIGNATURE_HEADER])
        assert verify(new_secret, new.headers[TIMESTAMP_HEADER], new.content,
                      new.headers[SIGNATURE_HEADER])

    @pytest.mark.asyncio
    async def test_url_change_applies_to_retries(
        self, registry, broadcaster, dispatcher, receiver, storage, clock
    ):
        endpoint = await registry.register("acct_1", A)
        receiver.script(A, 503)
        [delivery_id] = await broadcaster.broadcast("order.created", {})

        await settle(dispatcher, clock, rounds=1)
        await registry.update(endpoint.id, url=B)
        await settle(dispatcher, clock)

        assert len(receiver.calls_to(A)) == 1
        assert len(receiver.calls_to(B)) == 1
        assert (await storage.get_delivery(delivery_id)).state == "delivered"


class TestRedeliveryAndWorkers:
    @pytest.mark.asyncio
    async def test_redeliver_failed(
        self, registry, broadcaster, dispatcher, receiver, storage, clock
    ):
        await registry.register("acct_1", A)
        receiver.script(A, 410, 200)
        [original_id] = await broadcaster.broadcast("order.created", {})
        await settle(dispatcher, clock, rounds=1)

        replay_id = await broadcaster.redeliver(original_id)
        await settle(dispatcher, clock, rounds=1)

        assert (await storage.get_delivery(original_id)).state == "failed"
        replay = await storage.get_delivery(replay_id)
        assert replay.state == "delivered"
        assert replay.redelivery_of == original_id

    @pytest.mark.asyncio
    async def test_concurrent_dispatchers_send_once(
        self, registry, broadcaster, storage, receiver, retry_policy, clock
    ):
        for i in range(3):
            await registry.register("acct_1", f"https://hooks.example.com/{i}")
        for _ in range(5):
            await broadcaster.broadcast("order.created", {})

        dispatchers = [
            DeliveryDispatcher(
                storage,
                receiver.client(),
                retry_policy=retry_policy,
                claim_batch_size=4,
                clock=clock,
            )
            for _ in range(3)
        ]
        clock.advance(5)
        for _ in range(5):
            await asyncio.gather(*(d.dispatch_due() for d in dispatchers))

        ids = [r.headers[DELIVERY_ID_HEADER] for r in receiver.requests]
        assert len(ids) == 15
        assert len(set(ids)) == 15

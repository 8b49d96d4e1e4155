"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from hookrelay.config import RetryPolicy
from hookrelay.storage import RelayStorage
from hookrelay.webhooks import EndpointRegistry, EventBroadcaster, URLValidator

PUBLIC_IP = "93.184.216.34"


async def public_resolver(host: str, port: int) -> list[str]:
    """Resolver stub: every hostname maps to one public address."""
    return [PUBLIC_IP]


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class Receiver:
    """Scripted webhook receiver backed by httpx.MockTransport.

    Each URL gets a queue of responses (status codes or httpx.Response
    factories); once a queue is exhausted the last entry repeats.
    """

    scripts: dict[str, list[int | Callable[[httpx.Request], httpx.Response]]] = field(
        default_factory=dict
    )
    requests: list[httpx.Request] = field(default_factory=list)

    def script(self, url: str, *responses: int | Callable[[httpx.Request], httpx.Response]) -> None:
        self.scripts[url] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.scripts.get(str(request.url), [200])
        step = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(step):
            return step(request)
        return httpx.Response(step, text="ok" if step < 300 else f"status {step}")

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def bodies_to(self, url: str) -> list[dict]:
        return [json.loads(r.content) for r in self.calls_to(url)]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Short retry schedule without jitter."""
    return RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=10.0, jitter=0.0)


@pytest.fixture
def url_validator() -> URLValidator:
    return URLValidator(resolver=public_resolver)


@pytest_asyncio.fixture
async def storage(tmp_path: Path) -> AsyncIterator[RelayStorage]:
    """SQLite-backed storage in a temporary directory."""
    db = RelayStorage(url=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def registry(storage: RelayStorage, url_validator: URLValidator) -> EndpointRegistry:
    return EndpointRegistry(storage, url_validator)


@pytest.fixture
def broadcaster(
    storage: RelayStorage, registry: EndpointRegistry, retry_policy: RetryPolicy
) -> EventBroadcaster:
    return EventBroadcaster(storage, registry, retry_policy=retry_policy)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()

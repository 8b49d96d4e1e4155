"""Background workers that drain the delivery queue."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from hookrelay.logging import bind_context, get_logger

if TYPE_CHECKING:
    from hookrelay.storage import RelayStorage

    from .dispatcher import DeliveryDispatcher

logger = get_logger(__name__)


class DeliveryWorker:
    """Runs dispatch loops plus a retention purge as asyncio tasks.

    Each loop keeps calling ``dispatch_due()`` while it finds work and
    otherwise sleeps for ``poll_interval`` seconds or until ``notify()``
    is called. Several workers (in one process or many) may share a store:
    the claim step guarantees each delivery is attempted by one of them.
    """

    def __init__(
        self,
        dispatcher: DeliveryDispatcher,
        storage: RelayStorage,
        worker_count: int = 2,
        poll_interval: float = 5.0,
        retention_days: int | None = 30,
        purge_interval: float = 3600.0,
    ) -> None:
        self._dispatcher = dispatcher
        self._storage = storage
        self._worker_count = worker_count
        self._poll_interval = poll_interval
        self._retention = timedelta(days=retention_days) if retention_days else None
        self._purge_interval = purge_interval
        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Start the dispatch loops and the purge loop."""
        if self._tasks:
            return
        self._stopping.clear()
        for index in range(self._worker_count):
            self._tasks.append(
                asyncio.create_task(self._run(index), name=f"hookrelay-dispatch-{index}")
            )
        if self._retention is not None:
            self._tasks.append(asyncio.create_task(self._purge_loop(), name="hookrelay-purge"))
        logger.info(
            "Delivery worker started",
            workers=self._worker_count,
            poll_interval=self._poll_interval,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop all loops.

        In-flight batches get ``timeout`` seconds to finish; whatever is still
        running is cancelled and its claims expire with the lease.
        """
        if not self._tasks:
            return
        self._stopping.set()
        self._wakeup.set()
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        logger.info("Delivery worker stopped")

    def notify(self, delivery_ids: Iterable[str] | None = None) -> None:
        """Wake idle loops so new deliveries skip the poll wait.

        The IDs are only logged: loops always claim from the store, which
        is what keeps several workers from sending the same delivery.
        Matches the broadcaster's enqueue callback signature.
        """
        if delivery_ids is not None:
            logger.debug("Deliveries enqueued", count=len(list(delivery_ids)))
        self._wakeup.set()

    async def run_once(self) -> int:
        """Dispatch batches until nothing is due.

        Returns:
            Total deliveries processed.
        """
        total = 0
        while not self._stopping.is_set():
            processed = await self._dispatcher.dispatch_due()
            if processed == 0:
                break
            total += processed
        return total

    async def _run(self, index: int) -> None:
        # Task-local: each loop runs in its own copy of the context
        bind_context(worker=f"dispatch-{index}")
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Dispatch loop error", worker=index)
            await self._idle()

    async def _idle(self) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
        self._wakeup.clear()

    async def _purge_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.purge()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Delivery purge failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._purge_interval)

    async def purge(self) -> int:
        """Delete terminal deliveries older than the retention period."""
        if self._retention is None:
            return 0
        cutoff = datetime.now(UTC) - self._retention
        removed = await self._storage.purge_deliveries(older_than=cutoff)
        if removed:
            logger.info("Purged old deliveries", removed=removed, older_than=cutoff.isoformat())
        return removed

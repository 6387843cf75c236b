"""Background scheduling of delivery passes.

Publishing code calls :func:`notify_pending_work` after queuing; running
coordinators wake up and run a pass per partition. Without a notification the
loop still polls so retries become due on time. Passes can also be run on
demand through :meth:`DeliveryCoordinator.run_once`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from herald.core.settings import settings
from herald.db.session import SUPPORTS_CONCURRENT_PASSES, session_scope
from herald.services.delivery import DeliveryWorker, PassReport
from herald.services.http import FederationHttpClient, get_http_client

logger = logging.getLogger(__name__)

_active_coordinators: set[DeliveryCoordinator] = set()


def notify_pending_work() -> None:
    """Wake every running coordinator. Safe to call from any thread."""
    for coordinator in list(_active_coordinators):
        coordinator.notify()


class DeliveryCoordinator:
    """Runs delivery passes across all partitions in the background."""

    def __init__(
        self,
        http: FederationHttpClient | None = None,
        *,
        session_factory: Callable[[], AbstractContextManager[Session]] | None = None,
        partitions: int | None = None,
        parallel: bool | None = None,
        poll_interval: float | None = None,
        worker_options: dict[str, Any] | None = None,
    ) -> None:
        self.http = http or get_http_client()
        self.session_factory = session_factory or session_scope
        self.partitions = max(1, partitions or settings.partition_count)
        self.poll_interval = max(
            0.1, poll_interval or float(settings.worker_poll_interval_seconds)
        )
        self.worker_options = worker_options or {}
        self.parallel = SUPPORTS_CONCURRENT_PASSES if parallel is None else parallel
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._wake = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background delivery loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())
        _active_coordinators.add(self)
        logger.info("Delivery coordinator started with %d partitions", self.partitions)

    async def stop(self) -> None:
        """Stop the background delivery loop and wait for the current pass."""
        _active_coordinators.discard(self)
        if self._task is None:
            return
        self._stopping.set()
        self._wake.set()
        await self._task
        self._task = None
        logger.info("Delivery coordinator stopped")

    def notify(self) -> None:
        """Request a pass as soon as the current one finishes."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._wake.set)

    async def run_partition(self, partition: int | None) -> PassReport:
        """Run one pass over a partition (or every partition) with its own session."""
        with self.session_factory() as db:
            worker = DeliveryWorker(db, self.http, **self.worker_options)
            return await worker.run_pass(partition)

    async def run_once(self, partition: int | None = None) -> PassReport:
        """Run a pass for one partition, or for all partitions when none is given."""
        if partition is not None:
            return await self.run_partition(partition)

        total = PassReport()
        if self.parallel:
            reports = await asyncio.gather(
                *(self.run_partition(index) for index in range(self.partitions))
            )
        else:
            reports = [await self.run_partition(index) for index in range(self.partitions)]
        for report in reports:
            total.merge(report)
        return total

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                logger.warning("DeliveryCoordinator encountered database error: %s", e)
            except (OSError, ConnectionError, TimeoutError) as e:
                logger.warning("DeliveryCoordinator encountered network error: %s", e)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error(
                    "DeliveryCoordinator encountered data processing error: %s", e, exc_info=True
                )

            if self._stopping.is_set():
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass
            self._wake.clear()

"""Delivery worker: drains claimed queue items and follower batches.

A pass releases expired leases, claims due rows (optionally for a single
partition) and processes every claimed unit concurrently. Each unit ends the
pass either ``processed`` or back in ``pending`` with a backoff; nothing is
left in ``processing``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from herald.core.errors import DomainBlockedError, KeyMaterialError
from herald.core.settings import settings
from herald.models import FollowerBatch, LocalIdentity, QueueItem
from herald.services.actors import ActorDirectory
from herald.services.blocklist import Blocklist
from herald.services.health import HealthMonitor
from herald.services.http import (
    DeliveryOutcome,
    FederationHttpClient,
    get_http_client,
    host_of,
)
from herald.services.keys import KeyManager, SigningKey
from herald.services.queue import DeliveryQueue

logger = logging.getLogger(__name__)


def encode_activity(activity: dict[str, Any]) -> bytes:
    """Serialise an activity exactly as it is signed and sent."""
    return json.dumps(activity, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass
class PassReport:
    """Counters for one worker pass."""

    partition: int | None = None
    released: int = 0
    claimed_items: int = 0
    claimed_batches: int = 0
    processed: int = 0
    rescheduled: int = 0
    deliveries: int = 0
    failed_deliveries: int = 0
    skipped_recipients: int = 0

    def merge(self, other: PassReport) -> None:
        for name in (
            "released",
            "claimed_items",
            "claimed_batches",
            "processed",
            "rescheduled",
            "deliveries",
            "failed_deliveries",
            "skipped_recipients",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))


class DeliveryWorker:
    """Executes delivery passes against one database session."""

    def __init__(
        self,
        db: Session,
        http: FederationHttpClient | None = None,
        *,
        directory: ActorDirectory | None = None,
        queue: DeliveryQueue | None = None,
        monitor: HealthMonitor | None = None,
        keys: KeyManager | None = None,
        concurrency: int | None = None,
        chunk_pause_seconds: float | None = None,
        failure_threshold: float | None = None,
        max_resolution_attempts: int | None = None,
    ) -> None:
        self.db = db
        self.http = http or get_http_client()
        self.directory = directory or ActorDirectory(db, self.http)
        self.queue = queue or DeliveryQueue(db)
        self.monitor = monitor or HealthMonitor(db)
        self.keys = keys or KeyManager(db)
        self.concurrency = max(1, concurrency or settings.delivery_concurrency)
        self.chunk_pause = (
            settings.delivery_chunk_pause_seconds
            if chunk_pause_seconds is None
            else chunk_pause_seconds
        )
        self.failure_threshold = (
            settings.batch_failure_threshold if failure_threshold is None else failure_threshold
        )
        self.max_resolution_attempts = (
            max_resolution_attempts or settings.max_resolution_attempts
        )

    @property
    def blocklist(self) -> Blocklist:
        return self.directory.blocklist

    async def run_pass(self, partition: int | None = None, limit: int | None = None) -> PassReport:
        """Claim and process due work, optionally for a single partition."""
        report = PassReport(partition=partition)
        report.released = self.queue.release_expired_leases()
        items = self.queue.claim_due(QueueItem, limit=limit, partition=partition)
        batches = self.queue.claim_due(FollowerBatch, limit=limit, partition=partition)
        report.claimed_items = len(items)
        report.claimed_batches = len(batches)
        if not items and not batches:
            return report

        units: list[QueueItem | FollowerBatch] = [*items, *batches]
        results = await asyncio.gather(
            *(self._process_item(item, report) for item in items),
            *(self._process_batch(batch, report) for batch in batches),
            return_exceptions=True,
        )
        for unit, result in zip(units, results):
            if isinstance(result, Exception):
                logger.error(
                    "Unexpected error delivering %s %s: %s",
                    unit.__tablename__,
                    unit.id,
                    result,
                    exc_info=result,
                )
                self.db.rollback()
                self.queue.reschedule(unit, f"unexpected error: {result!r}")
                report.rescheduled += 1

        logger.info(
            "Delivery pass (partition=%s): %d items, %d batches, %d processed, %d rescheduled",
            partition,
            report.claimed_items,
            report.claimed_batches,
            report.processed,
            report.rescheduled,
        )
        return report

    def _finish(
        self, unit: QueueItem | FollowerBatch, report: PassReport, error: str | None = None
    ) -> None:
        self.queue.mark_processed(unit, error)
        report.processed += 1

    def _retry(
        self, unit: QueueItem | FollowerBatch, report: PassReport, error: str | None
    ) -> None:
        self.queue.reschedule(unit, error)
        report.rescheduled += 1

    def _signing_key(self, unit: QueueItem | FollowerBatch) -> SigningKey | None:
        identity = self.db.get(LocalIdentity, unit.local_identity_id)
        if identity is None:
            return None
        return self.keys.ensure_keys(identity)

    async def _process_item(self, item: QueueItem, report: PassReport) -> None:
        try:
            key = self._signing_key(item)
        except KeyMaterialError as exc:
            logger.error("Dropping queue item %s: %s", item.id, exc)
            self._finish(item, report, f"key material: {exc}")
            return
        if key is None:
            self._finish(item, report, "identity no longer exists")
            return

        if self.blocklist.is_url_blocked(item.target_actor_url):
            logger.info("Skipping queue item %s: %s is blocked", item.id, item.target_actor_url)
            self._finish(item, report, f"domain {host_of(item.target_actor_url)} is blocked")
            return

        endpoint = item.target_inbox
        if not endpoint:
            try:
                resolved = await self.directory.resolve(item.target_actor_url)
            except DomainBlockedError as exc:
                self._finish(item, report, str(exc))
                return
            if resolved is None:
                if item.attempts >= self.max_resolution_attempts:
                    logger.warning(
                        "Giving up on queue item %s: %s unresolvable after %d attempts",
                        item.id,
                        item.target_actor_url,
                        item.attempts,
                    )
                    self._finish(item, report, "recipient unresolvable")
                else:
                    self._retry(item, report, "recipient unresolvable")
                return
            endpoint = resolved.inbox

        if self.blocklist.is_url_blocked(endpoint):
            self._finish(item, report, f"endpoint host {host_of(endpoint)} is blocked")
            return

        try:
            outcome = await self.http.post_signed(endpoint, encode_activity(item.activity), key)
        except KeyMaterialError as exc:
            logger.error("Dropping queue item %s: %s", item.id, exc)
            self._finish(item, report, f"key material: {exc}")
            return

        self.monitor.record_outcome(outcome)
        report.deliveries += 1
        if outcome.success:
            self._finish(item, report)
        else:
            report.failed_deliveries += 1
            self._retry(item, report, outcome.error)

    async def _process_batch(self, batch: FollowerBatch, report: PassReport) -> None:
        try:
            key = self._signing_key(batch)
        except KeyMaterialError as exc:
            logger.error("Dropping follower batch %s: %s", batch.id, exc)
            self._finish(batch, report, f"key material: {exc}")
            return
        if key is None:
            self._finish(batch, report, "identity no longer exists")
            return

        resolution = await self.directory.resolve_many(list(batch.follower_urls))
        endpoints = list(dict.fromkeys(actor.inbox for actor in resolution.resolved.values()))
        blocked_endpoint_hosts = self.blocklist.blocked_hosts({host_of(url) for url in endpoints})
        targets = [url for url in endpoints if host_of(url) not in blocked_endpoint_hosts]
        skipped = len(resolution.blocked) + len(resolution.unresolved) + (
            len(endpoints) - len(targets)
        )
        batch.skipped_count = skipped
        report.skipped_recipients += skipped

        if not targets:
            logger.info("Follower batch %s has no deliverable recipients", batch.id)
            self._finish(batch, report, "no deliverable recipients" if skipped else None)
            return

        try:
            outcomes = await self._deliver_chunked(targets, encode_activity(batch.activity), key)
        except KeyMaterialError as exc:
            logger.error("Dropping follower batch %s: %s", batch.id, exc)
            self._finish(batch, report, f"key material: {exc}")
            return

        for outcome in outcomes:
            self.monitor.record_outcome(outcome)
        failed = sum(1 for outcome in outcomes if not outcome.success)
        report.deliveries += len(outcomes)
        report.failed_deliveries += failed
        batch.delivered_count = len(outcomes) - failed
        batch.failed_count = failed

        failure_rate = failed / len(outcomes)
        summary = f"{failed}/{len(outcomes)} deliveries failed" if failed else None
        if failure_rate > self.failure_threshold:
            self._retry(batch, report, summary)
        else:
            self._finish(batch, report, summary)

    async def _deliver_chunked(
        self, targets: list[str], body: bytes, key: SigningKey
    ) -> list[DeliveryOutcome]:
        outcomes: list[DeliveryOutcome] = []
        for start in range(0, len(targets), self.concurrency):
            if start and self.chunk_pause > 0:
                await asyncio.sleep(self.chunk_pause)
            chunk = targets[start : start + self.concurrency]
            outcomes.extend(
                await asyncio.gather(*(self.http.post_signed(url, body, key) for url in chunk))
            )
        return outcomes

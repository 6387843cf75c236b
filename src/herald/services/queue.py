"""Partitioned delivery queue with atomic claims and capped exponential backoff.

Both single-recipient items and follower batches share one state machine:
``pending -> processing -> processed`` on success and ``processing -> pending``
on retry. A claim flips the status, bumps ``attempts`` and stamps a lease in
one conditional UPDATE, so two concurrent passes never own the same row. A
row whose lease runs out (worker crash) is released back to ``pending``.
"""

from __future__ import annotations

import logging
import zlib
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from herald.core.settings import settings
from herald.db.time import as_utc, utcnow
from herald.models import FollowerBatch, LocalIdentity, QueueItem
from herald.models.delivery import STATUS_PENDING, STATUS_PROCESSED, STATUS_PROCESSING

logger = logging.getLogger(__name__)

MAX_BACKOFF_EXPONENT = 32

DeliveryUnit = TypeVar("DeliveryUnit", QueueItem, FollowerBatch)


def backoff_delay(
    attempts: int,
    *,
    base_seconds: float | None = None,
    cap_seconds: float | None = None,
) -> timedelta:
    """Return ``min(base * 2**attempts, cap)`` as a timedelta."""
    base = settings.retry_base_seconds if base_seconds is None else base_seconds
    cap = settings.retry_cap_seconds if cap_seconds is None else cap_seconds
    exponent = min(max(attempts, 0), MAX_BACKOFF_EXPONENT)
    return timedelta(seconds=min(base * (2**exponent), cap))


def base_partition(identity_id: int, partitions: int | None = None) -> int:
    """Return the stable home partition of an identity."""
    count = max(1, partitions or settings.partition_count)
    return zlib.crc32(str(identity_id).encode("ascii")) % count


class DeliveryQueue:
    """Persistence operations on queue items and follower batches."""

    def __init__(self, db: Session, partitions: int | None = None) -> None:
        self.db = db
        self.partitions = max(1, partitions or settings.partition_count)

    def partition_for(self, identity_id: int, offset: int = 0) -> int:
        return (base_partition(identity_id, self.partitions) + offset) % self.partitions

    def enqueue_item(
        self,
        identity: LocalIdentity,
        activity: dict[str, Any],
        *,
        target_actor_url: str,
        target_inbox: str | None = None,
    ) -> QueueItem:
        """Add a single-recipient item. The caller commits."""
        item = QueueItem(
            partition_key=self.partition_for(identity.id),
            local_identity_id=identity.id,
            activity=activity,
            target_actor_url=target_actor_url,
            target_inbox=target_inbox,
            status=STATUS_PENDING,
            attempts=0,
        )
        self.db.add(item)
        return item

    def enqueue_batch(
        self,
        identity: LocalIdentity,
        activity: dict[str, Any],
        follower_urls: list[str],
        partition_key: int,
    ) -> FollowerBatch:
        """Add a follower batch. The caller commits."""
        batch = FollowerBatch(
            partition_key=partition_key,
            local_identity_id=identity.id,
            activity=activity,
            follower_urls=follower_urls,
            status=STATUS_PENDING,
            attempts=0,
        )
        self.db.add(batch)
        return batch

    def claim_due(
        self,
        model: type[DeliveryUnit],
        *,
        limit: int | None = None,
        partition: int | None = None,
        now: datetime | None = None,
    ) -> list[DeliveryUnit]:
        """Claim up to ``limit`` due rows, optionally restricted to one partition."""
        now = now or utcnow()
        query = self.db.query(model.id).filter(
            model.status == STATUS_PENDING,
            or_(model.next_attempt_at.is_(None), model.next_attempt_at <= now),
        )
        if partition is not None:
            query = query.filter(model.partition_key == partition)
        candidate_ids = [
            row.id
            for row in query.order_by(model.id)
            .limit(limit or settings.claim_limit)
            .with_for_update(skip_locked=True)
            .all()
        ]
        if not candidate_ids:
            return []

        lease_expires_at = now + timedelta(seconds=settings.processing_lease_seconds)
        claimed_ids = []
        for unit_id in candidate_ids:
            result = self.db.execute(
                update(model)
                .where(model.id == unit_id, model.status == STATUS_PENDING)
                .values(
                    status=STATUS_PROCESSING,
                    attempts=model.attempts + 1,
                    last_attempted_at=now,
                    lease_expires_at=lease_expires_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(unit_id)
        self.db.commit()

        if not claimed_ids:
            return []
        logger.debug("Claimed %d %s rows", len(claimed_ids), model.__tablename__)
        return (
            self.db.query(model)
            .filter(model.id.in_(claimed_ids))
            .order_by(model.id)
            .populate_existing()
            .all()
        )

    def mark_processed(self, unit: QueueItem | FollowerBatch, error: str | None = None) -> None:
        """Finish a unit. ``error`` records why it was dropped rather than delivered."""
        unit.status = STATUS_PROCESSED
        unit.lease_expires_at = None
        unit.last_error = error
        self.db.commit()

    def reschedule(
        self,
        unit: QueueItem | FollowerBatch,
        error: str | None,
        now: datetime | None = None,
    ) -> datetime:
        """Return a unit to ``pending`` with the next attempt pushed out by the backoff."""
        attempted_at = as_utc(unit.last_attempted_at) or now or utcnow()
        unit.status = STATUS_PENDING
        unit.lease_expires_at = None
        unit.last_error = error
        unit.next_attempt_at = attempted_at + backoff_delay(unit.attempts)
        self.db.commit()
        logger.info(
            "Rescheduled %s %s after attempt %d for %s",
            unit.__tablename__,
            unit.id,
            unit.attempts,
            unit.next_attempt_at.isoformat(),
        )
        return unit.next_attempt_at

    def release_expired_leases(self, now: datetime | None = None) -> int:
        """Return rows stuck in ``processing`` past their lease to ``pending``."""
        now = now or utcnow()
        released = 0
        for model in (QueueItem, FollowerBatch):
            result = self.db.execute(
                update(model)
                .where(
                    model.status == STATUS_PROCESSING,
                    model.lease_expires_at.is_not(None),
                    model.lease_expires_at <= now,
                )
                .values(status=STATUS_PENDING, lease_expires_at=None, next_attempt_at=now)
                .execution_options(synchronize_session=False)
            )
            released += result.rowcount or 0
        self.db.commit()
        if released:
            logger.warning("Released %d delivery rows with expired leases", released)
        return released

    def depth(self) -> dict[str, dict[str, Any]]:
        """Return row counts per kind, by status and by partition for open work."""
        report: dict[str, dict[str, Any]] = {}
        for name, model in (("items", QueueItem), ("batches", FollowerBatch)):
            by_status = dict(
                self.db.query(model.status, func.count(model.id)).group_by(model.status).all()
            )
            by_partition = dict(
                self.db.query(model.partition_key, func.count(model.id))
                .filter(model.status.in_((STATUS_PENDING, STATUS_PROCESSING)))
                .group_by(model.partition_key)
                .all()
            )
            report[name] = {
                "pending": int(by_status.get(STATUS_PENDING, 0)),
                "processing": int(by_status.get(STATUS_PROCESSING, 0)),
                "processed": int(by_status.get(STATUS_PROCESSED, 0)),
                "by_partition": {int(k): int(v) for k, v in by_partition.items()},
            }
        return report

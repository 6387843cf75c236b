"""Splits an identity's followers into delivery batches."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from herald.core.settings import settings
from herald.models import InboundFollow, LocalIdentity
from herald.models.follow import FOLLOW_ACCEPTED
from herald.services.queue import DeliveryQueue

logger = logging.getLogger(__name__)


class FollowerFanoutPlanner:
    """Persists one FollowerBatch per ``batch_size`` followers.

    Batches of one identity are spread round-robin across partitions starting
    at the identity's home partition, so large fan-outs can be worked by
    several passes at once.
    """

    def __init__(
        self,
        db: Session,
        queue: DeliveryQueue | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.db = db
        self.queue = queue or DeliveryQueue(db)
        self.batch_size = batch_size or settings.fanout_batch_size

    def follower_urls(self, identity: LocalIdentity) -> list[str]:
        """Return accepted follower actor URLs in a stable order."""
        rows = (
            self.db.query(InboundFollow.follower_actor_url)
            .filter(
                InboundFollow.local_identity_id == identity.id,
                InboundFollow.status == FOLLOW_ACCEPTED,
            )
            .order_by(InboundFollow.id)
            .all()
        )
        return [row.follower_actor_url for row in rows]

    def plan_batches(
        self,
        identity: LocalIdentity,
        activity: dict[str, Any],
        batch_size: int | None = None,
    ) -> int:
        """Persist the batches for one activity and return how many were created."""
        size = batch_size or self.batch_size
        if size < 1:
            raise ValueError("batch_size must be positive")

        followers = self.follower_urls(identity)
        if not followers:
            logger.debug("Identity %s has no followers to fan out to", identity.handle)
            return 0

        count = 0
        for start in range(0, len(followers), size):
            self.queue.enqueue_batch(
                identity,
                activity,
                followers[start : start + size],
                self.queue.partition_for(identity.id, count),
            )
            count += 1
        self.db.commit()
        logger.info(
            "Planned %d batches for %d followers of %s (activity %s)",
            count,
            len(followers),
            identity.handle,
            activity.get("id"),
        )
        return count

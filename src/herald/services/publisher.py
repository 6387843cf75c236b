"""Outbox: assigns ids to locally authored activities and routes them to delivery.

Publishing never waits on delivery. The local copy is committed first; the
routing step then either plans follower batches (public or followers-only
addressing) or queues one item per explicit remote recipient. Routing
failures are logged and the caller still gets the assigned ids.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from herald.core.errors import ActivityValidationError
from herald.db.time import utcnow
from herald.models import ActivityRecord, LocalIdentity
from herald.models.identity import IDENTITY_DISABLED
from herald.services.activities import (
    ACTIVITY_CONTEXT,
    PUBLIC_ALIASES,
    addressed_recipients,
    is_public,
    isoformat_z,
    new_activity_id,
    new_object_id,
    reference_id,
    validate_outbound,
)
from herald.services.coordinator import notify_pending_work
from herald.services.fanout import FollowerFanoutPlanner
from herald.services.identities import is_local_url
from herald.services.queue import DeliveryQueue

logger = logging.getLogger(__name__)

ROUTE_FOLLOWERS = "followers"
ROUTE_DIRECT = "direct"
ROUTE_NONE = "none"


@dataclass(frozen=True)
class PublishResult:
    """What the caller learns once an activity is accepted for delivery."""

    activity_id: str
    object_id: str | None
    route: str
    queued: int


class ActivityPublisher:
    """Accepts activities from local identities and queues their delivery."""

    def __init__(
        self,
        db: Session,
        *,
        queue: DeliveryQueue | None = None,
        planner: FollowerFanoutPlanner | None = None,
        notify: Callable[[], None] | None = None,
    ) -> None:
        self.db = db
        self.queue = queue or DeliveryQueue(db)
        self.planner = planner or FollowerFanoutPlanner(db, self.queue)
        self.notify = notify or notify_pending_work

    def prepare(self, activity: Mapping[str, Any], identity: LocalIdentity) -> dict[str, Any]:
        """Return a copy of ``activity`` with ids, attribution and timestamps filled in."""
        payload = copy.deepcopy(dict(activity))
        payload.setdefault("@context", ACTIVITY_CONTEXT)
        payload["actor"] = identity.actor_url
        if not payload.get("id"):
            payload["id"] = new_activity_id()
        if not payload.get("published"):
            payload["published"] = isoformat_z(utcnow())

        obj = payload.get("object")
        if isinstance(obj, dict):
            obj = dict(obj)
            if not obj.get("id"):
                obj["id"] = new_object_id()
            # Wrapped activities (Accept{Follow}, Undo{Follow}) keep their own attribution.
            if "actor" not in obj:
                obj.setdefault("attributedTo", identity.actor_url)
                obj.setdefault("published", payload["published"])
                for field_name in ("to", "cc"):
                    if field_name in payload and field_name not in obj:
                        obj[field_name] = copy.deepcopy(payload[field_name])
            payload["object"] = obj
        return payload

    def direct_recipients(self, payload: Mapping[str, Any], identity: LocalIdentity) -> list[str]:
        """Return remote recipients with public markers, local URLs and duplicates removed."""
        recipients = []
        for recipient in addressed_recipients(payload):
            if recipient in PUBLIC_ALIASES or recipient == identity.followers_url:
                continue
            if is_local_url(recipient):
                continue
            recipients.append(recipient)
        return recipients

    def is_broadcast(self, payload: Mapping[str, Any], identity: LocalIdentity) -> bool:
        return is_public(payload) or identity.followers_url in addressed_recipients(payload)

    def publish(
        self,
        activity: Mapping[str, Any],
        identity: LocalIdentity,
        *,
        broadcast: bool | None = None,
    ) -> PublishResult:
        """Persist an activity and queue its delivery.

        Args:
            activity: The candidate activity.
            identity: The publishing identity.
            broadcast: Force (True) or suppress (False) follower fan-out instead
                of deciding from the addressing.

        Raises:
            ActivityValidationError: If the identity is disabled or the id is already taken.
        """
        if identity.status == IDENTITY_DISABLED:
            raise ActivityValidationError(f"Identity {identity.handle} cannot publish")

        payload = self.prepare(activity, identity)
        record = ActivityRecord(
            activity_id=payload["id"],
            local_identity_id=identity.id,
            type=str(payload.get("type")),
            actor=identity.actor_url,
            object_id=reference_id(payload.get("object")),
            payload=payload,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ActivityValidationError(f"Activity id {payload['id']} already exists") from exc

        result = PublishResult(payload["id"], record.object_id, ROUTE_NONE, 0)
        fan_out = self.is_broadcast(payload, identity) if broadcast is None else broadcast
        try:
            if fan_out:
                queued = self.planner.plan_batches(identity, payload)
                result = PublishResult(payload["id"], record.object_id, ROUTE_FOLLOWERS, queued)
            else:
                recipients = self.direct_recipients(payload, identity)
                for recipient in recipients:
                    self.queue.enqueue_item(identity, payload, target_actor_url=recipient)
                self.db.commit()
                result = PublishResult(
                    payload["id"], record.object_id, ROUTE_DIRECT, len(recipients)
                )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to queue delivery of %s: %s", payload["id"], exc, exc_info=True)
            return result

        logger.info(
            "Published %s %s via %s route (%d queued)",
            payload.get("type"),
            payload["id"],
            result.route,
            result.queued,
        )
        if result.queued:
            self.notify()
        return result


def submit_activity(
    db: Session,
    activity: Mapping[str, Any],
    identity: LocalIdentity,
) -> PublishResult:
    """Entry point for application code that wants an activity delivered.

    Raises:
        ActivityValidationError: If the activity lacks the minimal shape.
    """
    validate_outbound(activity)
    return ActivityPublisher(db).publish(activity, identity)

"""Inbound activity handling.

``InboxProcessor.receive`` checks shape, signature and signer before
``dispatch`` applies the activity. Every handler is idempotent so a remote
server may redeliver the same activity safely.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from herald.core.errors import ActivityValidationError, InboundSignatureError
from herald.db.time import as_utc
from herald.models import InboundFollow, InboxItem, LocalIdentity, OutgoingFollow
from herald.models.follow import FOLLOW_ACCEPTED
from herald.services.activities import (
    Accept,
    Create,
    Follow,
    Move,
    ParsedActivity,
    Undo,
    Unknown,
    parse_activity,
    reference_id,
)
from herald.services.actors import ActorDirectory, key_owner
from herald.services.http import FederationHttpClient
from herald.services.publisher import ActivityPublisher
from herald.services.signatures import SignatureCodec, default_codec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboxOutcome:
    """What dispatch did with an activity."""

    kind: str
    action: str
    duplicate: bool = False


class InboxFeed:
    """Poll and subscribe interface over stored inbox items."""

    def __init__(self) -> None:
        self._subscribers: list[
            tuple[int | None, asyncio.Queue[dict[str, Any]], asyncio.AbstractEventLoop]
        ] = []

    @staticmethod
    def serialize(item: InboxItem) -> dict[str, Any]:
        received_at = as_utc(item.received_at)
        return {
            "id": item.id,
            "recipient_id": item.recipient_id,
            "sender": item.sender_actor_url,
            "activity_id": item.activity_id,
            "kind": item.kind,
            "activity": item.activity,
            "content": item.content,
            "received_at": received_at.isoformat() if received_at else None,
        }

    def poll(
        self,
        db: Session,
        identity: LocalIdentity,
        since_id: int = 0,
        limit: int = 50,
    ) -> list[InboxItem]:
        """Return items stored for ``identity`` after ``since_id``, oldest first."""
        return (
            db.query(InboxItem)
            .filter(InboxItem.recipient_id == identity.id, InboxItem.id > since_id)
            .order_by(InboxItem.id)
            .limit(limit)
            .all()
        )

    def subscribe(self, identity_id: int | None = None) -> asyncio.Queue[dict[str, Any]]:
        """Return a queue that receives newly stored items. Must be called inside a running loop."""
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._subscribers.append((identity_id, queue, asyncio.get_running_loop()))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._subscribers = [entry for entry in self._subscribers if entry[1] is not queue]

    def announce(self, item: InboxItem) -> None:
        """Hand a stored item to every matching subscriber."""
        if not self._subscribers:
            return
        payload = self.serialize(item)
        for identity_id, queue, loop in list(self._subscribers):
            if identity_id is not None and identity_id != item.recipient_id:
                continue
            if loop.is_closed():
                self.unsubscribe(queue)
                continue
            loop.call_soon_threadsafe(queue.put_nowait, payload)


inbox_feed = InboxFeed()


class InboxProcessor:
    """Verifies and applies activities delivered to a local identity."""

    def __init__(
        self,
        db: Session,
        http: FederationHttpClient | None = None,
        *,
        directory: ActorDirectory | None = None,
        codec: SignatureCodec | None = None,
        publisher: ActivityPublisher | None = None,
        feed: InboxFeed | None = None,
    ) -> None:
        self.db = db
        self.directory = directory or ActorDirectory(db, http)
        self.codec = codec or default_codec
        self.publisher = publisher or ActivityPublisher(db)
        self.feed = feed or inbox_feed

    async def receive(
        self,
        identity: LocalIdentity,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> InboxOutcome:
        """Validate, verify and dispatch one inbound request.

        Raises:
            ActivityValidationError: If the body is not a JSON activity with ``type`` and ``actor``.
            InboundSignatureError: If the signature does not verify or was made by another actor.
        """
        try:
            raw = json.loads(body)
        except (UnicodeDecodeError, ValueError) as exc:
            raise ActivityValidationError("Body is not valid JSON") from exc
        activity = parse_activity(raw)

        params = await self.codec.verified_params(
            method, path, headers, body, self.directory.public_key_for
        )
        if params is None:
            raise InboundSignatureError(f"Signature verification failed for {activity.actor}")
        if key_owner(params.key_id) != activity.actor:
            raise InboundSignatureError(
                f"Key {params.key_id} does not belong to actor {activity.actor}"
            )
        return self.dispatch(identity, activity)

    def dispatch(self, identity: LocalIdentity, activity: ParsedActivity) -> InboxOutcome:
        """Apply a verified activity to local state."""
        if isinstance(activity, Follow):
            return self._handle_follow(identity, activity)
        if isinstance(activity, Undo):
            return self._handle_undo(identity, activity)
        if isinstance(activity, Accept):
            return self._handle_accept(identity, activity)
        if isinstance(activity, Create):
            return self._store(
                identity, activity.actor, activity.id, "Create", activity.raw, activity.object
            )
        if isinstance(activity, Move):
            return self._store(identity, activity.actor, activity.id, "Move", activity.raw)
        if isinstance(activity, Unknown):
            return self._store(identity, activity.actor, activity.id, activity.type, activity.raw)
        raise AssertionError(f"Unhandled activity variant {type(activity).__name__}")

    def _handle_follow(self, identity: LocalIdentity, activity: Follow) -> InboxOutcome:
        if activity.object != identity.actor_url:
            logger.info("Ignoring Follow of %s delivered to %s", activity.object, identity.handle)
            return InboxOutcome("Follow", "ignored")

        existing = (
            self.db.query(InboundFollow)
            .filter(
                InboundFollow.local_identity_id == identity.id,
                InboundFollow.follower_actor_url == activity.actor,
            )
            .first()
        )
        duplicate = existing is not None
        if existing is None:
            self.db.add(
                InboundFollow(
                    local_identity_id=identity.id,
                    follower_actor_url=activity.actor,
                    follow_activity_id=activity.id,
                    status=FOLLOW_ACCEPTED,
                )
            )
            try:
                self.db.flush()
            except IntegrityError:
                self.db.rollback()
                duplicate = True
            else:
                self.db.execute(
                    update(LocalIdentity)
                    .where(LocalIdentity.id == identity.id)
                    .values(follower_count=LocalIdentity.follower_count + 1)
                    .execution_options(synchronize_session=False)
                )
                self.db.commit()
                self.db.refresh(identity)
                logger.info("%s now follows %s", activity.actor, identity.handle)

        # A repeated Follow usually means the previous Accept was lost.
        self.publisher.publish(
            {
                "type": "Accept",
                "object": dict(activity.raw),
                "to": [activity.actor],
            },
            identity,
            broadcast=False,
        )
        return InboxOutcome("Follow", "accepted", duplicate)

    def _handle_undo(self, identity: LocalIdentity, activity: Undo) -> InboxOutcome:
        inner = activity.object
        if isinstance(inner, Follow):
            foreign_actor = bool(inner.actor) and inner.actor != activity.actor
            if foreign_actor or inner.object != identity.actor_url:
                logger.info("Ignoring Undo by %s of an unrelated Follow", activity.actor)
                return InboxOutcome("Undo", "ignored")
        elif isinstance(inner, str):
            follow = (
                self.db.query(InboundFollow)
                .filter(
                    InboundFollow.local_identity_id == identity.id,
                    InboundFollow.follow_activity_id == inner,
                )
                .first()
            )
            if follow is None:
                return self._store(identity, activity.actor, activity.id, "Undo", activity.raw)
        else:
            return self._store(identity, activity.actor, activity.id, "Undo", activity.raw)

        deleted = (
            self.db.query(InboundFollow)
            .filter(
                InboundFollow.local_identity_id == identity.id,
                InboundFollow.follower_actor_url == activity.actor,
            )
            .delete(synchronize_session=False)
        )
        if deleted:
            self.db.execute(
                update(LocalIdentity)
                .where(LocalIdentity.id == identity.id, LocalIdentity.follower_count > 0)
                .values(follower_count=LocalIdentity.follower_count - 1)
                .execution_options(synchronize_session=False)
            )
        self.db.commit()
        self.db.refresh(identity)
        if deleted:
            logger.info("%s no longer follows %s", activity.actor, identity.handle)
        return InboxOutcome("Undo", "unfollowed" if deleted else "noop", duplicate=not deleted)

    def _handle_accept(self, identity: LocalIdentity, activity: Accept) -> InboxOutcome:
        inner = activity.object
        if isinstance(inner, Follow) and inner.actor and inner.actor != identity.actor_url:
            return InboxOutcome("Accept", "ignored")
        if not isinstance(inner, (Follow, str)):
            return self._store(identity, activity.actor, activity.id, "Accept", activity.raw)

        follow = (
            self.db.query(OutgoingFollow)
            .filter(
                OutgoingFollow.local_identity_id == identity.id,
                OutgoingFollow.remote_actor_url == activity.actor,
            )
            .first()
        )
        if follow is None:
            logger.info(
                "Accept from %s matches no outgoing follow of %s", activity.actor, identity.handle
            )
            return InboxOutcome("Accept", "ignored")
        duplicate = follow.status == FOLLOW_ACCEPTED
        follow.status = FOLLOW_ACCEPTED
        self.db.commit()
        return InboxOutcome("Accept", "follow_accepted", duplicate)

    def _store(
        self,
        identity: LocalIdentity,
        sender: str,
        activity_id: str | None,
        kind: str,
        raw: Mapping[str, Any],
        content: Mapping[str, Any] | None = None,
    ) -> InboxOutcome:
        if activity_id is None:
            activity_id = reference_id(raw.get("object")) or f"urn:uuid:{uuid.uuid4()}"

        existing = (
            self.db.query(InboxItem.id)
            .filter(InboxItem.recipient_id == identity.id, InboxItem.activity_id == activity_id)
            .first()
        )
        if existing is not None:
            return InboxOutcome(kind, "stored", duplicate=True)

        item = InboxItem(
            recipient_id=identity.id,
            sender_actor_url=sender,
            activity_id=activity_id,
            kind=kind,
            activity=dict(raw),
            content=dict(content) if content is not None else None,
        )
        self.db.add(item)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return InboxOutcome(kind, "stored", duplicate=True)
        logger.debug("Stored %s %s for %s", kind, activity_id, identity.handle)
        self.feed.announce(item)
        return InboxOutcome(kind, "stored")

"""Follow, unfollow and account moves initiated by local identities."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from herald.core.errors import ActivityValidationError, ResolutionError
from herald.models import LocalIdentity, OutgoingFollow
from herald.models.follow import FOLLOW_FAILED, FOLLOW_PENDING
from herald.models.identity import IDENTITY_MOVED
from herald.services.activities import as_id_list
from herald.services.actors import ActorDirectory
from herald.services.http import FederationHttpClient
from herald.services.publisher import ActivityPublisher, PublishResult

logger = logging.getLogger(__name__)


class FollowService:
    """Outbound relationship changes; each one is published as an activity."""

    def __init__(
        self,
        db: Session,
        http: FederationHttpClient | None = None,
        *,
        directory: ActorDirectory | None = None,
        publisher: ActivityPublisher | None = None,
    ) -> None:
        self.db = db
        self.directory = directory or ActorDirectory(db, http)
        self.publisher = publisher or ActivityPublisher(db)

    def _outgoing(self, identity: LocalIdentity, remote_actor_url: str) -> OutgoingFollow | None:
        return (
            self.db.query(OutgoingFollow)
            .filter(
                OutgoingFollow.local_identity_id == identity.id,
                OutgoingFollow.remote_actor_url == remote_actor_url,
            )
            .first()
        )

    async def follow(self, identity: LocalIdentity, remote_actor_url: str) -> OutgoingFollow:
        """Record a pending follow and publish the Follow activity.

        Raises:
            DomainBlockedError: If the remote host is blocked.
            ResolutionError: If the remote actor cannot be resolved.
        """
        follow = self._outgoing(identity, remote_actor_url)
        if follow is None:
            follow = OutgoingFollow(
                local_identity_id=identity.id, remote_actor_url=remote_actor_url
            )
            self.db.add(follow)
        follow.status = FOLLOW_PENDING
        self.db.commit()

        resolved = await self.directory.resolve(remote_actor_url)
        if resolved is None:
            follow.status = FOLLOW_FAILED
            self.db.commit()
            raise ResolutionError(remote_actor_url, "actor could not be resolved")

        result = self.publisher.publish(
            {"type": "Follow", "object": remote_actor_url, "to": [remote_actor_url]},
            identity,
            broadcast=False,
        )
        follow.follow_activity_id = result.activity_id
        self.db.commit()
        logger.info("%s requested to follow %s", identity.handle, remote_actor_url)
        return follow

    def unfollow(self, identity: LocalIdentity, remote_actor_url: str) -> bool:
        """Publish Undo(Follow) and forget the relationship. Returns False if there was none."""
        follow = self._outgoing(identity, remote_actor_url)
        if follow is None:
            return False

        inner = {
            "type": "Follow",
            "actor": identity.actor_url,
            "object": remote_actor_url,
        }
        if follow.follow_activity_id:
            inner["id"] = follow.follow_activity_id
        self.publisher.publish(
            {"type": "Undo", "object": inner, "to": [remote_actor_url]},
            identity,
            broadcast=False,
        )
        self.db.delete(follow)
        self.db.commit()
        logger.info("%s unfollowed %s", identity.handle, remote_actor_url)
        return True

    async def move(self, identity: LocalIdentity, new_actor_url: str) -> PublishResult:
        """Mark the identity as moved and tell its followers.

        The target account must already list this identity in ``alsoKnownAs``.

        Raises:
            ActivityValidationError: If the identity already moved or the alias is missing.
            DomainBlockedError: If the target host is blocked.
            ResolutionError: If the target cannot be fetched.
        """
        if identity.status == IDENTITY_MOVED:
            raise ActivityValidationError(f"Identity {identity.handle} has already moved")

        target = await self.directory.refresh(new_actor_url)
        if target is None or target.stale:
            raise ResolutionError(new_actor_url, "target account could not be fetched")
        if identity.actor_url not in as_id_list(target.document.get("alsoKnownAs")):
            raise ActivityValidationError(
                f"{new_actor_url} does not list {identity.actor_url} in alsoKnownAs"
            )

        identity.status = IDENTITY_MOVED
        identity.moved_to = new_actor_url
        self.db.commit()

        result = self.publisher.publish(
            {
                "type": "Move",
                "object": identity.actor_url,
                "target": new_actor_url,
                "to": [identity.followers_url],
            },
            identity,
            broadcast=True,
        )
        logger.info("%s moved to %s", identity.handle, new_actor_url)
        return result

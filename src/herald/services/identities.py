"""Local identity registration and actor documents."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from herald.core.settings import settings
from herald.models import LocalIdentity
from herald.models.identity import IDENTITY_ACTIVE, IDENTITY_MOVED
from herald.services.activities import ACTIVITY_CONTEXT, isoformat_z
from herald.services.keys import KeyManager

logger = logging.getLogger(__name__)

SECURITY_CONTEXT = "https://w3id.org/security/v1"


def is_local_url(url: str) -> bool:
    """Return True if the URL points at this instance."""
    base = settings.public_base_url
    return url == base or url.startswith(base + "/")


def get_by_handle(db: Session, handle: str) -> LocalIdentity | None:
    return db.query(LocalIdentity).filter(LocalIdentity.handle == handle).first()


def register_identity(
    db: Session,
    handle: str,
    owner_id: str,
    display_name: str | None = None,
) -> LocalIdentity:
    """Create the federated identity for a newly created account.

    Keys are left empty; they are generated the first time the identity signs.
    """
    base = settings.public_base_url
    actor_url = f"{base}/users/{handle}"
    identity = LocalIdentity(
        handle=handle,
        owner_id=owner_id,
        display_name=display_name,
        actor_url=actor_url,
        inbox_url=f"{base}/inbox/{handle}",
        outbox_url=f"{base}/outbox/{handle}",
        followers_url=f"{actor_url}/followers",
        follower_count=0,
        status=IDENTITY_ACTIVE,
    )
    db.add(identity)
    db.commit()
    logger.info("Registered identity %s for owner %s", handle, owner_id)
    return identity


def actor_document(db: Session, identity: LocalIdentity) -> dict[str, Any]:
    """Return the identity document remote servers fetch to resolve this actor."""
    key = KeyManager(db).ensure_keys(identity)
    document: dict[str, Any] = {
        "@context": [ACTIVITY_CONTEXT, SECURITY_CONTEXT],
        "id": identity.actor_url,
        "type": "Person",
        "preferredUsername": identity.handle,
        "name": identity.display_name or identity.handle,
        "inbox": identity.inbox_url,
        "outbox": identity.outbox_url,
        "followers": identity.followers_url,
        "manuallyApprovesFollowers": False,
        "published": isoformat_z(identity.created_at),
        "publicKey": {
            "id": key.key_id,
            "owner": identity.actor_url,
            "publicKeyPem": key.public_key_pem,
        },
    }
    if identity.status == IDENTITY_MOVED and identity.moved_to:
        document["movedTo"] = identity.moved_to
    return document

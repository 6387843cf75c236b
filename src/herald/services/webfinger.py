"""WebFinger discovery for ``user@domain`` account handles.

Remote servers query ``/.well-known/webfinger`` to turn ``@alice@herald`` into
the actor URL they fetch and follow. In the other direction,
:func:`lookup_account` resolves a remote handle before a local owner follows it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from sqlalchemy.orm import Session

from herald.core.errors import ActivityValidationError, DeliveryError, ResolutionError
from herald.core.settings import settings
from herald.models import LocalIdentity
from herald.models.identity import IDENTITY_DISABLED
from herald.services.actors import ActorDirectory, ResolvedActor
from herald.services.http import ACTIVITY_CONTENT_TYPE
from herald.services.identities import actor_document, get_by_handle

logger = logging.getLogger(__name__)

WEBFINGER_PATH = "/.well-known/webfinger"
WEBFINGER_CONTENT_TYPE = "application/jrd+json"
WEBFINGER_ACCEPT = f"{WEBFINGER_CONTENT_TYPE}, application/json"
PROFILE_PAGE_REL = "http://webfinger.net/rel/profile-page"

ACTOR_LINK_TYPES = {
    ACTIVITY_CONTENT_TYPE,
    'application/ld+json; profile="https://www.w3.org/ns/activitystreams"',
}

_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
_DOMAIN_RE = re.compile(rf"^{_LABEL}(?:\.{_LABEL})*(?::\d{{1,5}})?$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass(frozen=True)
class Account:
    username: str
    domain: str

    @property
    def acct(self) -> str:
        return f"acct:{self.username}@{self.domain}"


def local_domain() -> str:
    """Return the host (and port, if any) accounts on this instance live under."""
    return urlsplit(settings.public_base_url).netloc.lower()


def parse_account(resource: str) -> Account:
    """Parse ``acct:user@domain``, ``user@domain`` or ``@user@domain``.

    Raises:
        ActivityValidationError: If the resource is not a well-formed account.
    """
    value = resource.strip().removeprefix("acct:").removeprefix("@")

    username, separator, domain = value.partition("@")
    domain = domain.lower()
    if not separator or "@" in domain or not _USERNAME_RE.match(username):
        raise ActivityValidationError(f"not an account handle: {resource!r}")
    if len(domain) > 253 or not _DOMAIN_RE.match(domain):
        raise ActivityValidationError(f"invalid domain in account handle: {resource!r}")
    return Account(username, domain)


def _local_identity(db: Session, resource: str) -> LocalIdentity | None:
    if resource.startswith(("http://", "https://")):
        identity = (
            db.query(LocalIdentity).filter(LocalIdentity.actor_url == resource).first()
        )
    else:
        account = parse_account(resource)
        if account.domain != local_domain():
            return None
        identity = get_by_handle(db, account.username)
    if identity is None or identity.status == IDENTITY_DISABLED:
        return None
    return identity


def webfinger_document(db: Session, resource: str) -> dict[str, Any] | None:
    """Return the JRD for a local account or actor URL, or None if it is not ours.

    Raises:
        ActivityValidationError: If the resource is neither an account nor a URL.
    """
    identity = _local_identity(db, resource)
    if identity is None:
        return None
    return {
        "subject": f"acct:{identity.handle}@{local_domain()}",
        "aliases": [identity.actor_url],
        "links": [
            {"rel": "self", "type": ACTIVITY_CONTENT_TYPE, "href": identity.actor_url},
            {"rel": PROFILE_PAGE_REL, "type": "text/html", "href": identity.actor_url},
        ],
    }


def actor_link(document: dict[str, Any]) -> str | None:
    """Return the ActivityPub actor URL advertised by a JRD document."""
    links = document.get("links")
    if not isinstance(links, list):
        return None
    for link in links:
        if (
            isinstance(link, dict)
            and link.get("rel") == "self"
            and link.get("type") in ACTOR_LINK_TYPES
            and isinstance(link.get("href"), str)
        ):
            return link["href"]
    return None


async def lookup_account(directory: ActorDirectory, resource: str) -> ResolvedActor:
    """Resolve an account handle to its actor, going through WebFinger for remote hosts.

    Raises:
        ActivityValidationError: If the handle is malformed.
        DomainBlockedError: If the account's host is blocked.
        ResolutionError: If discovery or the actor fetch fails.
    """
    account = parse_account(resource)
    if account.domain == local_domain():
        identity = get_by_handle(directory.db, account.username)
        if identity is None or identity.status == IDENTITY_DISABLED:
            raise ResolutionError(account.acct, "no such local account")
        return ResolvedActor.from_document(
            identity.actor_url, actor_document(directory.db, identity)
        )

    directory.ensure_allowed(f"https://{account.domain}/")
    try:
        document = await directory.http.fetch_json(
            f"https://{account.domain}{WEBFINGER_PATH}",
            accept=WEBFINGER_ACCEPT,
            params={"resource": account.acct},
        )
    except DeliveryError as exc:
        logger.info("WebFinger lookup of %s failed: %s", account.acct, exc)
        raise ResolutionError(account.acct, "webfinger lookup failed") from exc

    actor_url = actor_link(document)
    if actor_url is None:
        raise ResolutionError(account.acct, "webfinger response has no actor link")
    resolved = await directory.resolve(actor_url)
    if resolved is None:
        raise ResolutionError(actor_url, "actor document unavailable")
    return resolved

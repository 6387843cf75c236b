"""Operator-maintained domain blocklist."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from herald.core.settings import settings
from herald.models import BlockedDomain
from herald.models.blocklist import DOMAIN_ALLOWED, DOMAIN_BLOCKED
from herald.services.http import host_of

logger = logging.getLogger(__name__)


def normalize_host(host: str) -> str:
    """Lowercase a host and strip any port and trailing dot."""
    host = host.strip().lower()
    if not (host.startswith("[") or host.count(":") > 1):
        host = host.split(":", 1)[0]
    return host.rstrip(".")


class Blocklist:
    """Answers whether a remote host may be contacted.

    Hosts seeded through configuration are always blocked. Table rows can
    block additional hosts or explicitly allow a host. Lookup failures roll the
    session back and fail open.
    """

    def __init__(self, db: Session, seed: list[str] | None = None) -> None:
        self.db = db
        self.seed = {
            normalize_host(host)
            for host in (settings.blocked_domains if seed is None else seed)
            if host
        }

    def is_blocked(self, host: str) -> bool:
        """Return True if the host must not be contacted."""
        host = normalize_host(host)
        if not host:
            return False
        if host in self.seed:
            return True
        try:
            entry = self.db.get(BlockedDomain, host)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Blocklist lookup for %s failed, treating as allowed: %s", host, exc)
            return False
        return entry is not None and entry.status == DOMAIN_BLOCKED

    def is_url_blocked(self, url: str) -> bool:
        """Return True if the URL's host is blocked."""
        return self.is_blocked(host_of(url))

    def blocked_hosts(self, hosts: set[str]) -> set[str]:
        """Return the subset of ``hosts`` that is blocked, using one table lookup."""
        normalized = {normalize_host(host) for host in hosts if host}
        blocked = normalized & self.seed
        remaining = normalized - blocked
        if not remaining:
            return blocked
        try:
            rows = (
                self.db.query(BlockedDomain.host)
                .filter(
                    BlockedDomain.host.in_(remaining),
                    BlockedDomain.status == DOMAIN_BLOCKED,
                )
                .all()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Bulk blocklist lookup failed, treating as allowed: %s", exc)
            return blocked
        return blocked | {row.host for row in rows}

    def block(self, host: str, reason: str | None = None) -> BlockedDomain:
        """Block a host, updating any existing row."""
        host = normalize_host(host)
        entry = self.db.get(BlockedDomain, host)
        if entry is None:
            entry = BlockedDomain(host=host, status=DOMAIN_BLOCKED, reason=reason)
            self.db.add(entry)
        else:
            entry.status = DOMAIN_BLOCKED
            entry.reason = reason
        self.db.commit()
        logger.info("Blocked domain %s", host)
        return entry

    def allow(self, host: str) -> BlockedDomain | None:
        """Mark a host as allowed. Returns None if there was no row for it."""
        host = normalize_host(host)
        entry = self.db.get(BlockedDomain, host)
        if entry is None:
            return None
        entry.status = DOMAIN_ALLOWED
        self.db.commit()
        logger.info("Allowed domain %s", host)
        return entry

    def entries(self) -> list[BlockedDomain]:
        """Return every table row ordered by host."""
        return self.db.query(BlockedDomain).order_by(BlockedDomain.host).all()

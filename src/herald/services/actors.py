"""Remote identity resolution backed by a persistent cache.

``ActorCache`` owns the cache table: entries carry an expiry and are replaced
wholesale on refresh. ``ActorDirectory`` layers the resolution policy on top:
blocklist first, then a fresh cache hit, then a network fetch, and finally a
stale entry when the fetch fails.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from herald.core.errors import DeliveryError, DomainBlockedError, ResolutionError
from herald.core.settings import settings
from herald.db.time import as_utc, utcnow
from herald.models import RemoteActorCacheEntry
from herald.services.blocklist import Blocklist
from herald.services.http import FederationHttpClient, get_http_client, host_of

logger = logging.getLogger(__name__)


def key_owner(key_id: str) -> str:
    """Return the actor URL a key id belongs to."""
    return key_id.split("#", 1)[0]


def document_fields(actor_url: str, document: dict[str, Any]) -> dict[str, Any]:
    """Extract the cached columns from an identity document.

    Raises:
        ResolutionError: If the document does not expose an inbox.
    """
    inbox = document.get("inbox")
    if not isinstance(inbox, str) or not inbox:
        raise ResolutionError(actor_url, "identity document has no inbox")

    public_key = document.get("publicKey")
    if not isinstance(public_key, dict):
        public_key = {}
    endpoints = document.get("endpoints")
    shared_inbox = endpoints.get("sharedInbox") if isinstance(endpoints, dict) else None
    return {
        "inbox_url": inbox,
        "shared_inbox_url": shared_inbox if isinstance(shared_inbox, str) else None,
        "public_key_pem": public_key.get("publicKeyPem"),
        "key_id": public_key.get("id"),
        "preferred_username": document.get("preferredUsername"),
        "display_name": document.get("name"),
    }


@dataclass(frozen=True)
class ResolvedActor:
    """Delivery endpoint and key material for a remote actor."""

    actor_url: str
    inbox: str
    public_key_pem: str | None
    key_id: str | None
    document: dict[str, Any]
    shared_inbox: str | None = None
    stale: bool = False

    @property
    def endpoint(self) -> str:
        return self.inbox

    @classmethod
    def from_document(cls, actor_url: str, document: dict[str, Any]) -> ResolvedActor:
        fields = document_fields(actor_url, document)
        return cls(
            actor_url=actor_url,
            inbox=fields["inbox_url"],
            public_key_pem=fields["public_key_pem"],
            key_id=fields["key_id"],
            document=document,
            shared_inbox=fields["shared_inbox_url"],
        )

    @classmethod
    def from_entry(cls, entry: RemoteActorCacheEntry, *, stale: bool = False) -> ResolvedActor:
        return cls(
            actor_url=entry.actor_url,
            inbox=entry.inbox_url,
            public_key_pem=entry.public_key_pem,
            key_id=entry.key_id,
            document=entry.document,
            shared_inbox=entry.shared_inbox_url,
            stale=stale,
        )


@dataclass
class ResolutionBatch:
    """Outcome of resolving many actor URLs at once."""

    resolved: dict[str, ResolvedActor] = field(default_factory=dict)
    blocked: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


class ActorCache:
    """Persistent cache of remote identity documents with TTL."""

    def __init__(self, db: Session, ttl_seconds: int | None = None) -> None:
        self.db = db
        self.ttl = timedelta(
            seconds=ttl_seconds if ttl_seconds is not None else settings.actor_cache_ttl_seconds
        )

    @staticmethod
    def is_fresh(entry: RemoteActorCacheEntry, now: datetime | None = None) -> bool:
        expires_at = as_utc(entry.expires_at)
        return expires_at is not None and expires_at > (now or utcnow())

    def lookup(self, actor_url: str) -> RemoteActorCacheEntry | None:
        """Return the cached entry for an actor, fresh or stale."""
        return self.db.get(RemoteActorCacheEntry, actor_url)

    def lookup_many(self, actor_urls: list[str]) -> dict[str, RemoteActorCacheEntry]:
        """Return cached entries for many actors in a single query."""
        if not actor_urls:
            return {}
        rows = (
            self.db.query(RemoteActorCacheEntry)
            .filter(RemoteActorCacheEntry.actor_url.in_(actor_urls))
            .all()
        )
        return {row.actor_url: row for row in rows}

    def record_hit(self, entry: RemoteActorCacheEntry) -> None:
        entry.hit_count = (entry.hit_count or 0) + 1

    def put(self, actor_url: str, document: dict[str, Any]) -> RemoteActorCacheEntry:
        """Store a freshly fetched document, replacing any previous entry.

        A concurrent pass may insert the same actor first; its entry is then
        overwritten, last writer wins.

        Raises:
            ResolutionError: If the document does not expose an inbox.
        """
        now = utcnow()
        values = {
            "document": document,
            **document_fields(actor_url, document),
            "fetched_at": now,
            "expires_at": now + self.ttl,
        }
        entry = self.lookup(actor_url)
        if entry is None:
            entry = RemoteActorCacheEntry(actor_url=actor_url, hit_count=0, **values)
            self.db.add(entry)
            try:
                self.db.commit()
                return entry
            except IntegrityError:
                self.db.rollback()
                entry = self.lookup(actor_url)
                if entry is None:
                    raise
                logger.debug("Actor %s was cached concurrently, overwriting", actor_url)

        for name, value in values.items():
            setattr(entry, name, value)
        self.db.commit()
        return entry

    def invalidate(self, actor_url: str) -> bool:
        """Drop an entry. Returns True if one existed."""
        entry = self.lookup(actor_url)
        if entry is None:
            return False
        self.db.delete(entry)
        self.db.commit()
        return True

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete every expired entry and return how many were removed."""
        deleted = (
            self.db.query(RemoteActorCacheEntry)
            .filter(RemoteActorCacheEntry.expires_at <= (now or utcnow()))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Purged %d expired actor cache entries", deleted)
        return deleted

    def most_requested(self, limit: int) -> list[RemoteActorCacheEntry]:
        return (
            self.db.query(RemoteActorCacheEntry)
            .order_by(RemoteActorCacheEntry.hit_count.desc())
            .limit(limit)
            .all()
        )

    def stats(self, now: datetime | None = None) -> dict[str, int]:
        """Return entry counts and total hits."""
        now = now or utcnow()
        total = self.db.query(func.count(RemoteActorCacheEntry.actor_url)).scalar() or 0
        expired = (
            self.db.query(func.count(RemoteActorCacheEntry.actor_url))
            .filter(RemoteActorCacheEntry.expires_at <= now)
            .scalar()
            or 0
        )
        hits = self.db.query(func.sum(RemoteActorCacheEntry.hit_count)).scalar() or 0
        return {
            "total": int(total),
            "expired": int(expired),
            "active": int(total - expired),
            "hits": int(hits),
        }


class ActorDirectory:
    """Resolves remote actor URLs to delivery endpoints and public keys."""

    def __init__(
        self,
        db: Session,
        http: FederationHttpClient | None = None,
        *,
        blocklist: Blocklist | None = None,
        cache: ActorCache | None = None,
        concurrency: int | None = None,
    ) -> None:
        self.db = db
        self.http = http or get_http_client()
        self.blocklist = blocklist or Blocklist(db)
        self.cache = cache or ActorCache(db)
        self.concurrency = max(1, concurrency or settings.resolve_concurrency)

    def ensure_allowed(self, actor_url: str) -> None:
        if self.blocklist.is_url_blocked(actor_url):
            raise DomainBlockedError(actor_url, host_of(actor_url))

    async def resolve(self, actor_url: str) -> ResolvedActor | None:
        """Resolve an actor, returning None when it cannot be resolved.

        Raises:
            DomainBlockedError: If the actor's host is blocked. No network call
                or cache write happens in that case.
        """
        self.ensure_allowed(actor_url)
        entry = self.cache.lookup(actor_url)
        if entry is not None and self.cache.is_fresh(entry):
            self.cache.record_hit(entry)
            return ResolvedActor.from_entry(entry)
        return await self._refresh(actor_url, entry)

    async def _refresh(
        self, actor_url: str, stale_entry: RemoteActorCacheEntry | None
    ) -> ResolvedActor | None:
        try:
            document = await self.http.fetch_json(actor_url)
            entry = self.cache.put(actor_url, document)
        except (DeliveryError, ResolutionError) as exc:
            if stale_entry is not None:
                logger.info("Serving stale cache entry for %s: %s", actor_url, exc)
                return ResolvedActor.from_entry(stale_entry, stale=True)
            logger.info("Unable to resolve %s: %s", actor_url, exc)
            return None
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Could not cache %s, using the fetched document: %s", actor_url, exc)
            return ResolvedActor.from_document(actor_url, document)
        return ResolvedActor.from_entry(entry)

    async def resolve_many(self, actor_urls: list[str]) -> ResolutionBatch:
        """Resolve many actors: one cache query, then bounded per-URL fetches for the rest."""
        batch = ResolutionBatch()
        unique = list(dict.fromkeys(actor_urls))
        blocked_hosts = self.blocklist.blocked_hosts({host_of(url) for url in unique})

        candidates = []
        for url in unique:
            if host_of(url) in blocked_hosts:
                batch.blocked.append(url)
            else:
                candidates.append(url)

        cached = self.cache.lookup_many(candidates)
        misses = []
        for url in candidates:
            entry = cached.get(url)
            if entry is not None and self.cache.is_fresh(entry):
                self.cache.record_hit(entry)
                batch.resolved[url] = ResolvedActor.from_entry(entry)
            else:
                misses.append(url)

        if misses:
            logger.debug("Resolving %d of %d actors over the network", len(misses), len(unique))
            semaphore = asyncio.Semaphore(self.concurrency)

            async def _fetch(url: str) -> tuple[str, ResolvedActor | None]:
                async with semaphore:
                    return url, await self._refresh(url, cached.get(url))

            for url, resolved in await asyncio.gather(*(_fetch(url) for url in misses)):
                if resolved is None:
                    batch.unresolved.append(url)
                else:
                    batch.resolved[url] = resolved
        return batch

    async def public_key_for(self, key_id: str) -> str | None:
        """Return the PEM public key for a signature key id, or None."""
        actor_url = key_owner(key_id)
        try:
            resolved = await self.resolve(actor_url)
        except DomainBlockedError:
            logger.info("Refusing key lookup for blocked host of %s", key_id)
            return None
        if resolved is None:
            return None
        return resolved.public_key_pem

    async def refresh(self, actor_url: str) -> ResolvedActor | None:
        """Bypass the cache and refetch an actor."""
        self.ensure_allowed(actor_url)
        return await self._refresh(actor_url, self.cache.lookup(actor_url))

    async def prewarm(self, limit: int | None = None) -> int:
        """Refetch the most requested entries. Returns how many were refreshed."""
        refreshed = 0
        for entry in self.cache.most_requested(limit or settings.actor_cache_prewarm_limit):
            if self.blocklist.is_url_blocked(entry.actor_url):
                continue
            try:
                document = await self.http.fetch_json(entry.actor_url)
                self.cache.put(entry.actor_url, document)
            except (DeliveryError, ResolutionError) as exc:
                logger.info("Prewarm of %s failed: %s", entry.actor_url, exc)
                continue
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.warning("Prewarm could not store %s: %s", entry.actor_url, exc)
                continue
            refreshed += 1
        return refreshed

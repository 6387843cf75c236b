"""SQLAlchemy models for the federation engine."""

from .activity import ActivityRecord, InboxItem
from .actor_cache import RemoteActorCacheEntry
from .blocklist import BlockedDomain
from .delivery import FollowerBatch, QueueItem
from .follow import InboundFollow, OutgoingFollow
from .identity import LocalIdentity
from .metrics import RequestMetric

__all__ = [
    "ActivityRecord", "InboxItem",
    "RemoteActorCacheEntry",
    "BlockedDomain",
    "FollowerBatch", "QueueItem",
    "InboundFollow", "OutgoingFollow",
    "LocalIdentity",
    "RequestMetric",
]

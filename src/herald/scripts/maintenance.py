"""
Cron job for periodic federation housekeeping.

This script should be run hourly to:
1. Purge expired remote actor cache entries
2. Refresh the most requested actors before they expire
3. Release delivery rows whose processing lease ran out
4. Drop request metrics older than the retention window
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

from sqlalchemy.orm import Session

from herald.db.session import session_scope
from herald.db.time import utcnow
from herald.models import RequestMetric
from herald.services.actors import ActorCache, ActorDirectory
from herald.services.http import get_http_client
from herald.services.queue import DeliveryQueue

METRIC_RETENTION_DAYS = 7


def purge_old_metrics(db: Session, days: int = METRIC_RETENTION_DAYS) -> int:
    """Delete request metrics older than ``days``."""
    deleted = (
        db.query(RequestMetric)
        .filter(RequestMetric.recorded_at < utcnow() - timedelta(days=days))
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


async def prewarm(db: Session) -> int:
    http = get_http_client()
    try:
        return await ActorDirectory(db, http).prewarm()
    finally:
        await http.close()


def main() -> None:
    with session_scope() as db:
        print(f"Purged {ActorCache(db).purge_expired()} expired actor cache entries")
        print(f"Refreshed {asyncio.run(prewarm(db))} actor cache entries")
        print(f"Released {DeliveryQueue(db).release_expired_leases()} expired leases")
        print(f"Deleted {purge_old_metrics(db)} old request metrics")


if __name__ == "__main__":
    main()

"""Tests for follower fan-out planning and the partitioned delivery queue."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from herald.db.time import as_utc, utcnow
from herald.models import FollowerBatch, InboundFollow, QueueItem
from herald.models.delivery import STATUS_PENDING, STATUS_PROCESSED, STATUS_PROCESSING
from herald.services.fanout import FollowerFanoutPlanner
from herald.services.queue import DeliveryQueue, backoff_delay, base_partition
from tests.conftest import add_followers

ACTIVITY = {"id": "https://herald.test/activities/1", "type": "Create"}


def test_backoff_doubles_and_caps() -> None:
    assert backoff_delay(0, base_seconds=5, cap_seconds=3600) == timedelta(seconds=5)
    assert backoff_delay(1, base_seconds=5, cap_seconds=3600) == timedelta(seconds=10)
    assert backoff_delay(3, base_seconds=5, cap_seconds=3600) == timedelta(seconds=40)
    assert backoff_delay(50, base_seconds=5, cap_seconds=3600) == timedelta(seconds=3600)
    assert backoff_delay(10_000, base_seconds=5, cap_seconds=60) == timedelta(seconds=60)


def test_base_partition_is_stable() -> None:
    assert base_partition(42, 4) == base_partition(42, 4)
    assert 0 <= base_partition(42, 4) < 4
    assert base_partition(42, 1) == 0


def test_plan_batches_splits_followers(db_session: Session, identity) -> None:
    followers = [f"https://f{i}.example/users/u" for i in range(250)]
    add_followers(db_session, identity, followers, cache=False)
    queue = DeliveryQueue(db_session, partitions=4)

    created = FollowerFanoutPlanner(db_session, queue, batch_size=100).plan_batches(
        identity, ACTIVITY
    )

    batches = db_session.query(FollowerBatch).order_by(FollowerBatch.id).all()
    assert created == 3
    assert [len(batch.follower_urls) for batch in batches] == [100, 100, 50]
    assert [url for batch in batches for url in batch.follower_urls] == followers
    assert len({batch.partition_key for batch in batches}) == 3
    assert all(batch.status == STATUS_PENDING and batch.attempts == 0 for batch in batches)


def test_plan_batches_ignores_pending_follows(db_session: Session, identity) -> None:
    add_followers(db_session, identity, ["https://f.example/users/u"], cache=False)
    db_session.query(InboundFollow).update({"status": "pending"})
    db_session.commit()

    assert FollowerFanoutPlanner(db_session).plan_batches(identity, ACTIVITY) == 0


def test_plan_batches_rejects_non_positive_size(db_session: Session, identity) -> None:
    with pytest.raises(ValueError):
        FollowerFanoutPlanner(db_session).plan_batches(identity, ACTIVITY, batch_size=-1)


def test_claim_marks_processing_and_counts_attempt(db_session: Session, identity) -> None:
    queue = DeliveryQueue(db_session)
    queue.enqueue_item(identity, ACTIVITY, target_actor_url="https://a.example/users/x")
    db_session.commit()

    claimed = queue.claim_due(QueueItem)

    assert len(claimed) == 1
    item = claimed[0]
    assert item.status == STATUS_PROCESSING
    assert item.attempts == 1
    assert item.last_attempted_at is not None
    assert item.lease_expires_at is not None
    assert queue.claim_due(QueueItem) == []


def test_claim_skips_items_not_yet_due(db_session: Session, identity) -> None:
    queue = DeliveryQueue(db_session)
    item = queue.enqueue_item(identity, ACTIVITY, target_actor_url="https://a.example/users/x")
    item.next_attempt_at = utcnow() + timedelta(minutes=5)
    db_session.commit()

    assert queue.claim_due(QueueItem) == []
    assert len(queue.claim_due(QueueItem, now=utcnow() + timedelta(minutes=6))) == 1


def test_claim_respects_partition_and_limit(db_session: Session, identity) -> None:
    queue = DeliveryQueue(db_session, partitions=4)
    home = queue.partition_for(identity.id)
    for _ in range(3):
        queue.enqueue_item(identity, ACTIVITY, target_actor_url="https://a.example/users/x")
    db_session.commit()

    assert queue.claim_due(QueueItem, partition=(home + 1) % 4) == []
    assert len(queue.claim_due(QueueItem, partition=home, limit=2)) == 2
    assert len(queue.claim_due(QueueItem, partition=home)) == 1


def test_reschedule_applies_backoff(db_session: Session, identity) -> None:
    queue = DeliveryQueue(db_session)
    queue.enqueue_item(identity, ACTIVITY, target_actor_url="https://a.example/users/x")
    db_session.commit()
    item = queue.claim_due(QueueItem)[0]

    next_attempt = queue.reschedule(item, "HTTP 503")

    assert item.status == STATUS_PENDING
    assert item.last_error == "HTTP 503"
    assert item.lease_expires_at is None
    assert next_attempt == as_utc(item.last_attempted_at) + backoff_delay(1)


def test_mark_processed_is_terminal(db_session: Session, identity) -> None:
    queue = DeliveryQueue(db_session)
    queue.enqueue_item(identity, ACTIVITY, target_actor_url="https://a.example/users/x")
    db_session.commit()
    item = queue.claim_due(QueueItem)[0]

    queue.mark_processed(item)

    assert item.status == STATUS_PROCESSED
    assert queue.claim_due(QueueItem, now=utcnow() + timedelta(days=1)) == []


def test_expired_leases_are_released(db_session: Session, identity) -> None:
    queue = DeliveryQueue(db_session)
    queue.enqueue_item(identity, ACTIVITY, target_actor_url="https://a.example/users/x")
    db_session.commit()
    queue.claim_due(QueueItem)

    assert queue.release_expired_leases() == 0
    assert queue.release_expired_leases(now=utcnow() + timedelta(hours=1)) == 1
    assert len(queue.claim_due(QueueItem, now=utcnow() + timedelta(hours=1))) == 1


def test_depth_reports_status_and_partitions(db_session: Session, identity) -> None:
    queue = DeliveryQueue(db_session, partitions=2)
    queue.enqueue_item(identity, ACTIVITY, target_actor_url="https://a.example/users/x")
    queue.enqueue_batch(identity, ACTIVITY, ["https://b.example/users/y"], partition_key=1)
    db_session.commit()

    depth = queue.depth()

    assert depth["items"]["pending"] == 1
    assert depth["batches"]["pending"] == 1
    assert depth["batches"]["by_partition"] == {1: 1}

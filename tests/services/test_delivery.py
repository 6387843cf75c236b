"""Tests for the delivery worker and coordinator."""

from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

from herald.db.session import borrowed_session
from herald.models import FollowerBatch, QueueItem, RequestMetric
from herald.models.delivery import STATUS_PENDING, STATUS_PROCESSED
from herald.services.activities import PUBLIC_COLLECTION
from herald.services.blocklist import Blocklist
from herald.services.coordinator import DeliveryCoordinator
from herald.services.delivery import DeliveryWorker
from herald.services.publisher import submit_activity
from herald.services.queue import DeliveryQueue
from herald.services.signatures import SignatureCodec
from tests.conftest import REMOTE_BASE, RemoteServer, add_followers

NOTE = {"type": "Create", "object": {"type": "Note", "content": "hi"}, "to": [PUBLIC_COLLECTION]}


def _worker(db: Session, http, **options) -> DeliveryWorker:
    options.setdefault("chunk_pause_seconds", 0)
    return DeliveryWorker(db, http, **options)


def _followers(count: int, host: str = "f{i}.example") -> list[str]:
    return [f"https://{host.format(i=i)}/users/u{i}" for i in range(count)]


@pytest.mark.asyncio
async def test_batch_below_failure_threshold_is_processed(
    db_session: Session, identity, federation_http, remote: RemoteServer
) -> None:
    followers = _followers(10)
    add_followers(db_session, identity, followers)
    for url in followers[:3]:
        remote.post_status[f"{url}/inbox"] = 500
    submit_activity(db_session, dict(NOTE), identity)

    report = await _worker(db_session, federation_http).run_pass()

    batch = db_session.query(FollowerBatch).one()
    assert batch.status == STATUS_PROCESSED
    assert batch.delivered_count == 7
    assert batch.failed_count == 3
    assert batch.last_error == "3/10 deliveries failed"
    assert report.processed == 1
    assert report.failed_deliveries == 3


@pytest.mark.asyncio
async def test_batch_above_failure_threshold_is_retried(
    db_session: Session, identity, federation_http, remote: RemoteServer
) -> None:
    followers = _followers(10)
    add_followers(db_session, identity, followers)
    for url in followers[:6]:
        remote.post_status[f"{url}/inbox"] = 503
    submit_activity(db_session, dict(NOTE), identity)

    report = await _worker(db_session, federation_http).run_pass()

    batch = db_session.query(FollowerBatch).one()
    assert batch.status == STATUS_PENDING
    assert batch.attempts == 1
    assert batch.next_attempt_at is not None
    assert batch.lease_expires_at is None
    assert report.rescheduled == 1


@pytest.mark.asyncio
async def test_large_fanout_delivers_every_follower_once(
    db_session: Session, identity, federation_http, remote: RemoteServer
) -> None:
    followers = _followers(150, host="h{i}.example")
    add_followers(db_session, identity, followers)
    submit_activity(db_session, dict(NOTE), identity)
    assert db_session.query(FollowerBatch).count() == 2

    report = await _worker(db_session, federation_http, concurrency=5).run_pass()

    assert report.claimed_batches == 2
    assert report.deliveries == 150
    assert len(remote.posts()) == 150
    assert remote.fetches() == []
    metrics = db_session.query(RequestMetric).all()
    assert len(metrics) == 150
    assert all(metric.success for metric in metrics)
    statuses = {batch.status for batch in db_session.query(FollowerBatch).all()}
    assert statuses == {STATUS_PROCESSED}


@pytest.mark.asyncio
async def test_deliveries_are_signed(
    db_session: Session, identity, federation_http, remote: RemoteServer
) -> None:
    add_followers(db_session, identity, _followers(1))
    submit_activity(db_session, dict(NOTE), identity)

    await _worker(db_session, federation_http).run_pass()

    request = remote.posts()[0]

    async def _resolve(key_id: str) -> str | None:
        return identity.public_key_pem if key_id == identity.key_id else None

    assert await SignatureCodec().verify(
        "POST",
        request.url.raw_path.decode("ascii"),
        request.headers,
        request.content,
        _resolve,
    )


@pytest.mark.asyncio
async def test_blocked_follower_is_skipped_despite_cache(
    db_session: Session, identity, federation_http, remote: RemoteServer
) -> None:
    followers = ["https://good.example/users/a", "https://blocked.example/users/b"]
    add_followers(db_session, identity, followers)
    Blocklist(db_session).block("blocked.example")
    submit_activity(db_session, dict(NOTE), identity)

    await _worker(db_session, federation_http).run_pass()

    assert remote.posts("blocked.example") == []
    assert len(remote.posts("good.example")) == 1
    batch = db_session.query(FollowerBatch).one()
    assert batch.skipped_count == 1
    assert batch.status == STATUS_PROCESSED


@pytest.mark.asyncio
async def test_batch_with_only_blocked_followers_finishes(
    db_session: Session, identity, federation_http, remote: RemoteServer
) -> None:
    add_followers(db_session, identity, ["https://blocked.example/users/b"])
    Blocklist(db_session).block("blocked.example")
    submit_activity(db_session, dict(NOTE), identity)

    await _worker(db_session, federation_http).run_pass()

    batch = db_session.query(FollowerBatch).one()
    assert batch.status == STATUS_PROCESSED
    assert batch.last_error == "no deliverable recipients"
    assert remote.requests == []


@pytest.mark.asyncio
async def test_direct_item_resolves_and_delivers(
    db_session: Session, identity, federation_http, remote: RemoteServer, remote_actor
) -> None:
    submit_activity(
        db_session,
        {"type": "Create", "object": {"type": "Note"}, "to": [remote_actor["id"]]},
        identity,
    )

    await _worker(db_session, federation_http).run_pass()

    item = db_session.query(QueueItem).one()
    assert item.status == STATUS_PROCESSED
    assert item.last_error is None
    assert [str(r.url) for r in remote.posts()] == [remote_actor["inbox"]]


@pytest.mark.asyncio
async def test_failed_direct_item_is_rescheduled(
    db_session: Session, identity, federation_http, remote: RemoteServer, remote_actor
) -> None:
    remote.post_status[remote_actor["inbox"]] = 500
    submit_activity(
        db_session,
        {"type": "Create", "object": {"type": "Note"}, "to": [remote_actor["id"]]},
        identity,
    )

    await _worker(db_session, federation_http).run_pass()

    item = db_session.query(QueueItem).one()
    assert item.status == STATUS_PENDING
    assert item.attempts == 1
    assert item.last_error.startswith("HTTP 500")
    metric = db_session.query(RequestMetric).one()
    assert not metric.success
    assert metric.status_code == 500


@pytest.mark.asyncio
async def test_unresolvable_item_gives_up_after_max_attempts(
    db_session: Session, identity, federation_http, remote: RemoteServer
) -> None:
    queue = DeliveryQueue(db_session)
    item = queue.enqueue_item(
        identity, {"id": "x", "type": "Create"}, target_actor_url=f"{REMOTE_BASE}/users/gone"
    )
    db_session.commit()

    await _worker(db_session, federation_http, max_resolution_attempts=2).run_pass()
    assert item.status == STATUS_PENDING

    item.next_attempt_at = None
    db_session.commit()
    await _worker(db_session, federation_http, max_resolution_attempts=2).run_pass()

    assert item.status == STATUS_PROCESSED
    assert item.last_error == "recipient unresolvable"


@pytest.mark.asyncio
async def test_item_for_blocked_actor_is_dropped(
    db_session: Session, identity, federation_http, remote: RemoteServer
) -> None:
    queue = DeliveryQueue(db_session)
    item = queue.enqueue_item(
        identity, {"id": "x", "type": "Create"}, target_actor_url="https://blocked.example/u"
    )
    db_session.commit()
    Blocklist(db_session).block("blocked.example")

    await _worker(db_session, federation_http).run_pass()

    assert item.status == STATUS_PROCESSED
    assert "blocked" in item.last_error
    assert remote.requests == []


@pytest.mark.asyncio
async def test_unexpected_error_returns_unit_to_pending(
    db_session: Session, identity, federation_http, mocker
) -> None:
    add_followers(db_session, identity, _followers(2))
    submit_activity(db_session, dict(NOTE), identity)
    worker = _worker(db_session, federation_http)
    mocker.patch.object(worker.directory, "resolve_many", side_effect=RuntimeError("boom"))

    report = await worker.run_pass()

    batch = db_session.query(FollowerBatch).one()
    assert batch.status == STATUS_PENDING
    assert "boom" in batch.last_error
    assert report.rescheduled == 1


@pytest.mark.asyncio
async def test_coordinator_runs_every_partition(
    db_session: Session, identity, federation_http, remote: RemoteServer
) -> None:
    add_followers(db_session, identity, _followers(4))
    submit_activity(db_session, dict(NOTE), identity)
    coordinator = DeliveryCoordinator(
        federation_http,
        session_factory=lambda: borrowed_session(db_session),
        partitions=4,
        worker_options={"chunk_pause_seconds": 0},
    )

    report = await coordinator.run_once()

    assert report.claimed_batches == 1
    assert report.deliveries == 4
    assert len(remote.posts()) == 4

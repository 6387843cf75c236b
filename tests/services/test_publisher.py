"""Tests for outbound publishing and routing."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from herald.core.errors import ActivityValidationError
from herald.models import ActivityRecord, FollowerBatch, QueueItem
from herald.models.identity import IDENTITY_DISABLED
from herald.services.activities import PUBLIC_COLLECTION
from herald.services.publisher import (
    ROUTE_DIRECT,
    ROUTE_FOLLOWERS,
    ROUTE_NONE,
    ActivityPublisher,
    submit_activity,
)
from tests.conftest import add_followers

NOTE = {"type": "Note", "content": "hello"}


def test_publish_assigns_ids_and_persists_before_delivery(db_session: Session, identity) -> None:
    result = submit_activity(
        db_session, {"type": "Create", "object": dict(NOTE), "to": [PUBLIC_COLLECTION]}, identity
    )

    assert result.activity_id.startswith("https://herald.test/activities/")
    assert result.object_id.startswith("https://herald.test/objects/")
    record = db_session.query(ActivityRecord).filter_by(activity_id=result.activity_id).one()
    assert record.payload["actor"] == identity.actor_url
    assert record.payload["object"]["attributedTo"] == identity.actor_url
    assert record.payload["object"]["to"] == [PUBLIC_COLLECTION]
    assert record.payload["published"].endswith("Z")


def test_caller_supplied_ids_are_kept(db_session: Session, identity) -> None:
    activity = {
        "id": "https://herald.test/activities/fixed",
        "type": "Create",
        "object": {"id": "https://herald.test/objects/fixed", "type": "Note"},
    }
    result = submit_activity(db_session, activity, identity)

    assert result.activity_id == "https://herald.test/activities/fixed"
    assert result.object_id == "https://herald.test/objects/fixed"
    with pytest.raises(ActivityValidationError):
        submit_activity(db_session, activity, identity)


def test_public_activity_fans_out_to_followers(db_session: Session, identity) -> None:
    add_followers(db_session, identity, [f"https://f{i}.example/users/u" for i in range(3)])
    notified = []
    publisher = ActivityPublisher(db_session, notify=lambda: notified.append(True))

    result = publisher.publish(
        {"type": "Create", "object": dict(NOTE), "to": [PUBLIC_COLLECTION]}, identity
    )

    assert result.route == ROUTE_FOLLOWERS
    assert result.queued == 1
    assert db_session.query(FollowerBatch).count() == 1
    assert db_session.query(QueueItem).count() == 0
    assert notified == [True]


def test_followers_only_activity_fans_out(db_session: Session, identity) -> None:
    add_followers(db_session, identity, ["https://f.example/users/u"])
    result = ActivityPublisher(db_session).publish(
        {"type": "Create", "object": dict(NOTE), "to": [identity.followers_url]}, identity
    )
    assert result.route == ROUTE_FOLLOWERS


def test_direct_activity_queues_one_item_per_remote_recipient(
    db_session: Session, identity
) -> None:
    result = submit_activity(
        db_session,
        {
            "type": "Create",
            "object": dict(NOTE),
            "to": ["https://a.example/users/x", "https://herald.test/users/local"],
            "cc": ["https://b.example/users/y", "https://a.example/users/x"],
        },
        identity,
    )

    assert result.route == ROUTE_DIRECT
    assert result.queued == 2
    targets = sorted(item.target_actor_url for item in db_session.query(QueueItem).all())
    assert targets == ["https://a.example/users/x", "https://b.example/users/y"]
    assert db_session.query(FollowerBatch).count() == 0


def test_unaddressed_activity_is_stored_only(db_session: Session, identity) -> None:
    result = submit_activity(db_session, {"type": "Create", "object": dict(NOTE)}, identity)

    assert result.route == ROUTE_DIRECT
    assert result.queued == 0
    assert db_session.query(ActivityRecord).count() == 1


def test_broadcast_without_followers_queues_nothing(db_session: Session, identity) -> None:
    result = submit_activity(
        db_session, {"type": "Create", "object": dict(NOTE), "to": [PUBLIC_COLLECTION]}, identity
    )
    assert result.route == ROUTE_FOLLOWERS
    assert result.queued == 0


def test_missing_object_type_is_rejected(db_session: Session, identity) -> None:
    with pytest.raises(ActivityValidationError):
        submit_activity(db_session, {"type": "Create", "object": {"content": "x"}}, identity)
    assert db_session.query(ActivityRecord).count() == 0


def test_disabled_identity_cannot_publish(db_session: Session, identity) -> None:
    identity.status = IDENTITY_DISABLED
    db_session.commit()
    with pytest.raises(ActivityValidationError):
        submit_activity(db_session, {"type": "Create", "object": dict(NOTE)}, identity)


def test_wrapped_activity_keeps_its_attribution(db_session: Session, identity) -> None:
    follow = {
        "id": "https://remote.example/follows/1",
        "type": "Follow",
        "actor": "https://remote.example/users/bob",
        "object": identity.actor_url,
    }
    payload = ActivityPublisher(db_session).prepare({"type": "Accept", "object": follow}, identity)

    assert payload["object"] == follow
    assert "attributedTo" not in payload["object"]


def test_routing_failure_still_returns_ids(db_session: Session, identity, mocker) -> None:
    publisher = ActivityPublisher(db_session)
    mocker.patch.object(
        publisher.planner, "plan_batches", side_effect=OperationalError("stmt", {}, Exception())
    )

    result = publisher.publish(
        {"type": "Create", "object": dict(NOTE), "to": [PUBLIC_COLLECTION]}, identity
    )

    assert result.route == ROUTE_NONE
    assert result.queued == 0
    assert result.activity_id.startswith("https://herald.test/activities/")

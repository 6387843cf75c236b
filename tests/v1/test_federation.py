"""Tests for the server-to-server routes."""

from __future__ import annotations

from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from herald.core.security import create_access_token
from herald.models import InboundFollow, InboxItem, QueueItem
from herald.services.activities import PUBLIC_COLLECTION
from tests.conftest import REMOTE_BASE, signed_inbox_request

BOB = f"{REMOTE_BASE}/users/bob"


def test_inbox_accepts_signed_follow(
    client: TestClient, db_session: Session, identity, remote_signing_key
) -> None:
    follow = {
        "id": f"{BOB}/follows/9",
        "type": "Follow",
        "actor": BOB,
        "object": identity.actor_url,
    }
    body, headers = signed_inbox_request(follow, remote_signing_key)

    r = client.post("/inbox/alice", content=body, headers=headers)

    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"status": "accepted", "type": "Follow", "duplicate": False}
    assert db_session.query(InboundFollow).count() == 1
    assert db_session.query(QueueItem).one().activity["type"] == "Accept"


def test_inbox_rejects_unsigned_request(client: TestClient, db_session: Session, identity) -> None:
    r = client.post(
        "/inbox/alice",
        json={"type": "Create", "actor": BOB, "object": {"type": "Note"}},
    )
    assert r.status_code == status.HTTP_401_UNAUTHORIZED
    assert db_session.query(InboxItem).count() == 0


def test_inbox_rejects_non_ascii_digest(
    client: TestClient, db_session: Session, identity, remote_signing_key
) -> None:
    create = {"type": "Create", "actor": BOB, "object": {"type": "Note"}}
    body, headers = signed_inbox_request(create, remote_signing_key)
    sent: dict[str, str | bytes] = {**headers, "Digest": b"SHA-256=\xff\xff"}

    r = client.post("/inbox/alice", content=body, headers=sent)

    assert r.status_code == status.HTTP_401_UNAUTHORIZED
    assert db_session.query(InboxItem).count() == 0


def test_inbox_rejects_malformed_activity(client: TestClient, identity, remote_signing_key) -> None:
    body, headers = signed_inbox_request({"actor": BOB}, remote_signing_key)
    r = client.post("/inbox/alice", content=body, headers=headers)
    assert r.status_code == status.HTTP_400_BAD_REQUEST


def test_inbox_for_unknown_identity_is_404(client: TestClient) -> None:
    r = client.post("/inbox/nobody", json={"type": "Create", "actor": BOB})
    assert r.status_code == status.HTTP_404_NOT_FOUND


def test_outbox_accepts_owner_activity(
    client: TestClient, db_session: Session, identity, owner_headers
) -> None:
    r = client.post(
        "/outbox/alice",
        json={
            "type": "Create",
            "object": {"type": "Note", "content": "hello"},
            "to": [PUBLIC_COLLECTION],
            "summary": "kept verbatim",
        },
        headers=owner_headers,
    )

    assert r.status_code == status.HTTP_202_ACCEPTED
    data = r.json()
    assert data["activity_id"].startswith("https://herald.test/activities/")
    assert data["route"] == "followers"


def test_outbox_requires_object_type(client: TestClient, identity, owner_headers) -> None:
    r = client.post(
        "/outbox/alice",
        json={"type": "Create", "object": {"content": "no type"}},
        headers=owner_headers,
    )
    assert r.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_outbox_rejects_other_owner(client: TestClient, identity) -> None:
    headers = {"Authorization": f"Bearer {create_access_token('someone-else')}"}
    r = client.post("/outbox/alice", json={"type": "Create"}, headers=headers)
    assert r.status_code == status.HTTP_403_FORBIDDEN


def test_outbox_requires_token(client: TestClient, identity) -> None:
    r = client.post("/outbox/alice", json={"type": "Create"})
    assert r.status_code == status.HTTP_401_UNAUTHORIZED


def test_actor_document_exposes_public_key(client: TestClient, identity) -> None:
    r = client.get("/users/alice")

    assert r.status_code == status.HTTP_200_OK
    assert r.headers["content-type"].startswith("application/activity+json")
    data = r.json()
    assert data["id"] == identity.actor_url
    assert data["inbox"] == identity.inbox_url
    assert data["publicKey"]["id"] == f"{identity.actor_url}#main-key"
    assert data["publicKey"]["publicKeyPem"] == identity.public_key_pem


def test_actor_document_generates_missing_keys(
    client: TestClient, db_session: Session, make_identity
) -> None:
    bare = make_identity("carol", with_keys=False)
    r = client.get("/users/carol")

    assert r.status_code == status.HTTP_200_OK
    db_session.refresh(bare)
    assert r.json()["publicKey"]["publicKeyPem"] == bare.public_key_pem


def test_followers_collection_reports_count(client: TestClient, identity) -> None:
    r = client.get("/users/alice/followers")
    assert r.status_code == status.HTTP_200_OK
    assert r.json()["totalItems"] == 0


def test_webfinger_describes_local_account(client: TestClient, identity) -> None:
    r = client.get("/.well-known/webfinger", params={"resource": "acct:alice@herald.test"})

    assert r.status_code == status.HTTP_200_OK
    assert r.headers["content-type"].startswith("application/jrd+json")
    data = r.json()
    assert data["subject"] == "acct:alice@herald.test"
    links = [link for link in data["links"] if link["rel"] == "self"]
    assert links[0]["href"] == identity.actor_url


def test_webfinger_requires_resource(client: TestClient) -> None:
    r = client.get("/.well-known/webfinger")
    assert r.status_code == status.HTTP_400_BAD_REQUEST


def test_webfinger_rejects_malformed_resource(client: TestClient) -> None:
    r = client.get("/.well-known/webfinger", params={"resource": "not-an-account"})
    assert r.status_code == status.HTTP_400_BAD_REQUEST


def test_webfinger_unknown_or_foreign_account_is_404(client: TestClient, identity) -> None:
    for resource in ("acct:nobody@herald.test", "acct:alice@remote.example"):
        r = client.get("/.well-known/webfinger", params={"resource": resource})
        assert r.status_code == status.HTTP_404_NOT_FOUND

# tests/conftest.py
from __future__ import annotations

import json
import os
from collections.abc import Callable, Generator, Iterator
from dataclasses import dataclass, field
from datetime import timedelta
from itertools import count
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-herald")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("HERALD_BASE_URL", "https://herald.test")
os.environ.setdefault("HERALD_WORKER_ENABLED", "false")
os.environ.setdefault("HERALD_DELIVERY_CHUNK_PAUSE_SECONDS", "0")

from herald.api.v1.dependencies import get_http_client_dep
from herald.core.security import create_access_token
from herald.core.settings import settings
from herald.db.session import Base
from herald.db.session import get_db as app_get_session
from herald.db.time import utcnow
from herald.main import app as fastapi_app
from herald.models import InboundFollow, LocalIdentity, RemoteActorCacheEntry
from herald.services.http import FederationHttpClient
from herald.services.identities import register_identity
from herald.services.keys import SigningKey, generate_key_pair
from herald.services.signatures import SignatureCodec

TEST_DB_URL = "sqlite://"
REMOTE_BASE = "https://remote.example"

_HANDLE_COUNTER = count(1)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN on its own; take over so savepoints nest correctly.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    # Commits and rollbacks inside the code under test map onto savepoints of
    # the outer transaction, so a worker rollback cannot discard fixture rows.
    SessionLocal = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()

    try:
        yield session
    finally:
        session.close()

        if transaction.is_active:
            transaction.rollback()
        connection.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@dataclass
class RemoteServer:
    """In-process stand-in for the remote servers we federate with.

    GET requests are answered from ``documents`` (WebFinger queries from
    ``accounts``); POSTs are recorded and answered with the status configured
    for the URL (202 by default).
    """

    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    accounts: dict[str, str] = field(default_factory=dict)
    post_status: dict[str, int] = field(default_factory=dict)
    failing_hosts: set[str] = field(default_factory=set)
    requests: list[httpx.Request] = field(default_factory=list)

    def add_actor(
        self,
        actor_url: str,
        public_key_pem: str | None = None,
        inbox: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        document: dict[str, Any] = {
            "@context": "https://www.w3.org/ns/activitystreams",
            "id": actor_url,
            "type": "Person",
            "preferredUsername": actor_url.rsplit("/", 1)[-1],
            "inbox": inbox or f"{actor_url}/inbox",
            **extra,
        }
        if public_key_pem:
            document["publicKey"] = {
                "id": f"{actor_url}#main-key",
                "owner": actor_url,
                "publicKeyPem": public_key_pem,
            }
        self.documents[actor_url] = document
        return document

    def add_account(self, acct: str, actor_url: str) -> None:
        """Advertise ``actor_url`` for ``acct:user@domain`` through WebFinger."""
        self.accounts[acct] = actor_url

    def posts(self, host: str | None = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == "POST" and (host is None or request.url.host == host)
        ]

    def fetches(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.method == "GET"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host in self.failing_hosts:
            raise httpx.ConnectError("connection refused", request=request)
        url = str(request.url)
        if request.method == "GET" and request.url.path == "/.well-known/webfinger":
            resource = request.url.params.get("resource", "")
            actor_url = self.accounts.get(resource)
            if actor_url is None:
                return httpx.Response(404, json={"error": "not found"})
            link = {"rel": "self", "type": "application/activity+json", "href": actor_url}
            return httpx.Response(200, json={"subject": resource, "links": [link]})
        if request.method == "GET":
            document = self.documents.get(url)
            if document is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json=document)
        return httpx.Response(self.post_status.get(url, 202))


@pytest.fixture()
def remote() -> RemoteServer:
    return RemoteServer()


@pytest.fixture()
def federation_http(remote: RemoteServer) -> FederationHttpClient:
    return FederationHttpClient(transport=httpx.MockTransport(remote.handler))


@pytest.fixture(autouse=True)
def override_http_dependency(
    app: FastAPI, federation_http: FederationHttpClient
) -> Iterator[None]:
    app.dependency_overrides[get_http_client_dep] = lambda: federation_http
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_http_client_dep, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture(scope="session")
def key_pair() -> tuple[str, str]:
    """One RSA pair shared by local test identities."""
    return generate_key_pair()


@pytest.fixture(scope="session")
def remote_key_pair() -> tuple[str, str]:
    """RSA pair owned by the remote test actor."""
    return generate_key_pair()


@pytest.fixture()
def make_identity(
    db_session: Session, key_pair: tuple[str, str]
) -> Callable[..., LocalIdentity]:
    """Return a factory for registered identities with keys already provisioned."""

    def _make(handle: str | None = None, owner_id: str = "owner-1", with_keys: bool = True):
        identity = register_identity(
            db_session, handle or f"user{next(_HANDLE_COUNTER)}", owner_id, "Test User"
        )
        if with_keys:
            identity.private_key_pem, identity.public_key_pem = key_pair
            db_session.commit()
        return identity

    return _make


@pytest.fixture()
def identity(make_identity: Callable[..., LocalIdentity]) -> LocalIdentity:
    return make_identity("alice", owner_id="owner-alice")


@pytest.fixture()
def remote_actor(remote: RemoteServer, remote_key_pair: tuple[str, str]) -> dict[str, Any]:
    return remote.add_actor(f"{REMOTE_BASE}/users/bob", remote_key_pair[1])


@pytest.fixture()
def remote_signing_key(
    remote_actor: dict[str, Any], remote_key_pair: tuple[str, str]
) -> SigningKey:
    return SigningKey(remote_actor["publicKey"]["id"], remote_key_pair[0], remote_key_pair[1])


def add_followers(
    db: Session,
    identity: LocalIdentity,
    actor_urls: list[str],
    *,
    cache: bool = True,
) -> None:
    """Attach accepted followers, optionally with fresh cache entries pointing at their inboxes."""
    now = utcnow()
    for url in actor_urls:
        db.add(InboundFollow(local_identity_id=identity.id, follower_actor_url=url))
        if cache:
            db.add(
                RemoteActorCacheEntry(
                    actor_url=url,
                    document={"id": url, "inbox": f"{url}/inbox"},
                    inbox_url=f"{url}/inbox",
                    fetched_at=now,
                    expires_at=now + timedelta(hours=1),
                    hit_count=0,
                )
            )
    identity.follower_count += len(actor_urls)
    db.commit()


def signed_inbox_request(
    activity: dict[str, Any],
    key: SigningKey,
    url: str = "http://test/inbox/alice",
    codec: SignatureCodec | None = None,
) -> tuple[bytes, dict[str, str]]:
    """Return the body and headers a remote server would send to one of our inboxes."""
    body = json.dumps(activity).encode("utf-8")
    request = httpx.Request(
        "POST",
        url,
        content=body,
        headers={"Content-Type": "application/activity+json"},
    )
    (codec or SignatureCodec()).sign(request, key.private_key_pem, key.key_id)
    headers = {
        name: request.headers[name]
        for name in ("Content-Type", "Host", "Date", "Digest", "Signature")
    }
    return body, headers


@pytest.fixture()
def owner_headers(identity: LocalIdentity) -> dict[str, str]:
    """Authorization headers for the owner of ``identity``."""
    return {"Authorization": f"Bearer {create_access_token(identity.owner_id)}"}


@pytest.fixture()
def operator_headers() -> dict[str, str]:
    token = create_access_token("operator-1", {"role": settings.operator_role})
    return {"Authorization": f"Bearer {token}"}

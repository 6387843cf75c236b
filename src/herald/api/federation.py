"""Server-to-server routes: discovery, inboxes, outboxes and actor documents."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from herald.api.v1.dependencies import (
    ActiveIdentityDep,
    HttpClientDep,
    OwnedIdentityDep,
    SessionDep,
)
from herald.core.errors import ActivityValidationError, InboundSignatureError
from herald.schemas.activity import OutboxAccepted, OutboxActivity
from herald.services.http import ACTIVITY_CONTENT_TYPE
from herald.services.identities import actor_document
from herald.services.inbox import InboxProcessor
from herald.services.publisher import submit_activity
from herald.services.webfinger import (
    WEBFINGER_CONTENT_TYPE,
    WEBFINGER_PATH,
    webfinger_document,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["federation"])


@router.post("/inbox/{handle}")
async def receive_activity(
    identity: ActiveIdentityDep,
    request: Request,
    db: SessionDep,
    http: HttpClientDep,
) -> dict[str, Any]:
    """Accept a signed activity delivered by a remote server."""
    body = await request.body()
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"

    processor = InboxProcessor(db, http)
    try:
        outcome = await processor.receive(identity, request.method, path, request.headers, body)
    except ActivityValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except InboundSignatureError as exc:
        logger.info("Rejected inbound request for %s: %s", identity.handle, exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Signature verification failed",
        ) from exc

    return {"status": outcome.action, "type": outcome.kind, "duplicate": outcome.duplicate}


@router.post(
    "/outbox/{handle}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=OutboxAccepted,
)
def submit_to_outbox(
    payload: OutboxActivity,
    identity: OwnedIdentityDep,
    db: SessionDep,
) -> OutboxAccepted:
    """Accept a locally authored activity for delivery."""
    activity = payload.model_dump(exclude_none=True)
    try:
        result = submit_activity(db, activity, identity)
    except ActivityValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    return OutboxAccepted(
        activity_id=result.activity_id,
        object_id=result.object_id,
        route=result.route,
        queued=result.queued,
    )


@router.get("/users/{handle}")
def get_actor(identity: ActiveIdentityDep, db: SessionDep) -> JSONResponse:
    """Serve the identity document remote servers use to resolve this actor."""
    return JSONResponse(actor_document(db, identity), media_type=ACTIVITY_CONTENT_TYPE)


@router.get("/users/{handle}/followers")
def get_followers(identity: ActiveIdentityDep) -> JSONResponse:
    """Serve the follower collection summary."""
    return JSONResponse(
        {
            "@context": "https://www.w3.org/ns/activitystreams",
            "id": identity.followers_url,
            "type": "OrderedCollection",
            "totalItems": identity.follower_count,
        },
        media_type=ACTIVITY_CONTENT_TYPE,
    )


@router.get(WEBFINGER_PATH)
def webfinger(
    db: SessionDep,
    resource: Annotated[str | None, Query()] = None,
) -> JSONResponse:
    """Map ``acct:handle@domain`` (or a local actor URL) to the actor document."""
    if not resource:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="resource parameter is required"
        )
    try:
        document = webfinger_document(db, resource)
    except ActivityValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return JSONResponse(document, media_type=WEBFINGER_CONTENT_TYPE)

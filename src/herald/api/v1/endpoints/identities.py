"""Identity registration, relationships, account lookup and inbox polling."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy.exc import IntegrityError

from herald.api.v1.dependencies import (
    HttpClientDep,
    OperatorDep,
    OwnedIdentityDep,
    SessionDep,
)
from herald.core.errors import ActivityValidationError, DomainBlockedError, ResolutionError
from herald.schemas.activity import OutboxAccepted
from herald.schemas.identity import (
    AccountLookupResponse,
    FollowRequest,
    FollowResponse,
    IdentityCreate,
    IdentityResponse,
    InboxItemResponse,
    MoveRequest,
)
from herald.services.actors import ActorDirectory
from herald.services.follows import FollowService
from herald.services.identities import register_identity
from herald.services.inbox import inbox_feed
from herald.services.webfinger import lookup_account

router = APIRouter(prefix="/identities", tags=["identities"])

MAX_POLL_LIMIT = 200


@router.post("", status_code=status.HTTP_201_CREATED, response_model=IdentityResponse)
def create_identity(
    payload: IdentityCreate,
    db: SessionDep,
    _operator: OperatorDep,
) -> IdentityResponse:
    """Register the federated identity of a newly created account."""
    try:
        identity = register_identity(db, payload.handle, payload.owner_id, payload.display_name)
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Handle already registered"
        ) from exc
    return IdentityResponse.model_validate(identity)


@router.get("/{handle}", response_model=IdentityResponse)
def read_identity(identity: OwnedIdentityDep) -> IdentityResponse:
    return IdentityResponse.model_validate(identity)


@router.post(
    "/{handle}/follows",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=FollowResponse,
)
async def follow_actor(
    payload: FollowRequest,
    identity: OwnedIdentityDep,
    db: SessionDep,
    http: HttpClientDep,
) -> FollowResponse:
    """Start following a remote actor."""
    try:
        follow = await FollowService(db, http).follow(identity, payload.actor_url)
    except DomainBlockedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ResolutionError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return FollowResponse.model_validate(follow)


@router.delete("/{handle}/follows", status_code=status.HTTP_204_NO_CONTENT)
def unfollow_actor(
    identity: OwnedIdentityDep,
    db: SessionDep,
    actor_url: Annotated[str, Query(min_length=1)],
) -> None:
    """Stop following a remote actor."""
    if not FollowService(db).unfollow(identity, actor_url):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not following actor")


@router.post(
    "/{handle}/move",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=OutboxAccepted,
)
async def move_identity(
    payload: MoveRequest,
    identity: OwnedIdentityDep,
    db: SessionDep,
    http: HttpClientDep,
) -> OutboxAccepted:
    """Move this identity to another account and notify followers."""
    try:
        result = await FollowService(db, http).move(identity, payload.target)
    except DomainBlockedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ResolutionError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except ActivityValidationError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return OutboxAccepted(
        activity_id=result.activity_id,
        object_id=result.object_id,
        route=result.route,
        queued=result.queued,
    )


@router.get("/{handle}/inbox-items", response_model=list[InboxItemResponse])
def poll_inbox_items(
    identity: OwnedIdentityDep,
    db: SessionDep,
    since_id: Annotated[int, Query(ge=0)] = 0,
    limit: Annotated[int, Query(ge=1, le=MAX_POLL_LIMIT)] = 50,
) -> list[InboxItemResponse]:
    """Return inbox items stored after ``since_id``."""
    items = inbox_feed.poll(db, identity, since_id=since_id, limit=limit)
    return [InboxItemResponse.model_validate(item) for item in items]


@router.get("/{handle}/lookup", response_model=AccountLookupResponse)
async def lookup_remote_account(
    _identity: OwnedIdentityDep,
    db: SessionDep,
    http: HttpClientDep,
    resource: Annotated[str, Query(min_length=3, description="user@domain or acct:user@domain")],
) -> AccountLookupResponse:
    """Resolve an account handle to the actor URL to follow."""
    try:
        resolved = await lookup_account(ActorDirectory(db, http), resource)
    except ActivityValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except DomainBlockedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ResolutionError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return AccountLookupResponse(
        actor_url=resolved.actor_url,
        inbox=resolved.inbox,
        shared_inbox=resolved.shared_inbox,
        stale=resolved.stale,
    )

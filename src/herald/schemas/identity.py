"""Identity, relationship and inbox item schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class IdentityCreate(BaseModel):
    """Register the federated identity of an account."""

    handle: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    owner_id: str = Field(..., min_length=1, max_length=128)
    display_name: str | None = None


class IdentityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    handle: str
    owner_id: str
    actor_url: str
    inbox_url: str
    outbox_url: str
    follower_count: int
    status: str
    moved_to: str | None


class FollowRequest(BaseModel):
    actor_url: str = Field(..., min_length=1, description="Remote actor to follow")


class FollowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    remote_actor_url: str
    status: str
    follow_activity_id: str | None


class MoveRequest(BaseModel):
    target: str = Field(..., min_length=1, description="Actor URL of the new account")


class InboxItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sender_actor_url: str
    activity_id: str
    kind: str
    activity: dict[str, Any]
    content: dict[str, Any] | None
    received_at: datetime


class AccountLookupResponse(BaseModel):
    actor_url: str
    inbox: str
    shared_inbox: str | None
    stale: bool

"""Activity submission schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OutboxActivity(BaseModel):
    """Candidate activity posted to an outbox. Unknown fields are kept verbatim."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., min_length=1, description="Activity type, e.g. Create")
    object: dict[str, Any] | str | None = Field(default=None)
    to: list[str] | str | None = None
    cc: list[str] | str | None = None

    @field_validator("object")
    @classmethod
    def embedded_object_has_type(cls, value: dict[str, Any] | str | None) -> Any:
        if isinstance(value, dict) and not value.get("type"):
            raise ValueError("object.type is required")
        return value


class OutboxAccepted(BaseModel):
    """Ids assigned to an accepted activity."""

    activity_id: str
    object_id: str | None
    route: str
    queued: int

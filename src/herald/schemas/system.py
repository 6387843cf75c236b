"""Operator schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class BlockRequest(BaseModel):
    reason: str | None = None


class BlockedDomainResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    host: str
    status: str
    reason: str | None


class PassReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    partition: int | None
    released: int
    claimed_items: int
    claimed_batches: int
    processed: int
    rescheduled: int
    deliveries: int
    failed_deliveries: int
    skipped_recipients: int

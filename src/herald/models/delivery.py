"""SQLAlchemy models for the partitioned delivery queue."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from herald.db.session import Base
from herald.db.time import utcnow

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"


class QueueItem(Base):
    """Delivery of one activity to one remote actor."""

    __tablename__ = "delivery_queue"
    __table_args__ = (
        Index("ix_delivery_queue_claim", "status", "partition_key", "next_attempt_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    partition_key: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    local_identity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("local_identities.id", ondelete="CASCADE"), nullable=False
    )
    activity: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    target_actor_url: Mapped[str] = mapped_column(Text, nullable=False)
    # Pre-resolved endpoint; when empty the worker resolves the target actor.
    target_inbox: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class FollowerBatch(Base):
    """Delivery of one activity to a slice of an identity's followers."""

    __tablename__ = "follower_batches"
    __table_args__ = (
        Index("ix_follower_batches_claim", "status", "partition_key", "next_attempt_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    partition_key: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    local_identity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("local_identities.id", ondelete="CASCADE"), nullable=False
    )
    activity: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    follower_urls: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
